"""Aurora server: test telemetry store with live dashboard updates."""

__version__ = "1.0.0"
