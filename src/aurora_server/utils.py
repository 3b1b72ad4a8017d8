"""
Utility functions for Aurora server.

Time normalisation, identifiers and structured log events.
"""

import json
import logging
import uuid
from datetime import datetime, timedelta, UTC

from .errors import ValidationError

logger = logging.getLogger(__name__)

ISO_SUFFIX = "Z"


# --- Time utilities ---

def _format(dt):
    return dt.isoformat(timespec="milliseconds") + ISO_SUFFIX


def now_utc():
    """Return the current UTC time as a naive datetime."""
    return datetime.now(UTC).replace(tzinfo=None)


def now_utc_iso():
    """Return current UTC time as a fixed-width ISO 8601 string."""
    return _format(now_utc())


def parse_iso(dtstr):
    """Parse an ISO 8601 string into a naive UTC datetime."""
    if not isinstance(dtstr, str) or not dtstr:
        raise ValidationError(f"Invalid timestamp: {dtstr!r}")
    text = dtstr.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValidationError(f"Invalid timestamp: {dtstr!r}")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(UTC).replace(tzinfo=None)
    return parsed


def to_iso(value):
    """Normalise a datetime, ISO string or epoch milliseconds to the stored form.

    Stored timestamps always carry millisecond precision and a trailing Z so
    that string comparison in SQL orders them chronologically.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(UTC).replace(tzinfo=None)
        return _format(value)
    if isinstance(value, bool):
        raise ValidationError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return _format(datetime.fromtimestamp(value / 1000.0, UTC).replace(tzinfo=None))
    if isinstance(value, str):
        return _format(parse_iso(value))
    raise ValidationError(f"Invalid timestamp: {value!r}")


def to_epoch_ms(iso_value):
    """Epoch milliseconds of a stored timestamp."""
    return parse_iso(iso_value).replace(tzinfo=UTC).timestamp() * 1000


def iso_days_ago(days, now=None):
    """Return the stored-form timestamp for `now - days`."""
    base = now if now is not None else now_utc()
    if base.tzinfo is not None:
        base = base.astimezone(UTC).replace(tzinfo=None)
    return _format(base - timedelta(days=days))


def duration_ms(start_iso, end_iso):
    """Milliseconds between two stored timestamps, or None when either is missing."""
    if not start_iso or not end_iso:
        return None
    delta = parse_iso(end_iso) - parse_iso(start_iso)
    return max(0, int(delta.total_seconds() * 1000))


# --- Identifiers ---

def generate_id(prefix):
    """Return a unique identifier such as run_1f2e3d4c5b6a7988."""
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


# --- Structured logging ---

def log_event(event: str, **fields):
    """Log an event with timestamp."""
    record = {"event": event, **fields, "ts": now_utc_iso()}
    logger.info(json.dumps(record, default=str))
