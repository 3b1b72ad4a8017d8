"""
Error types for Aurora server.

Repositories and query helpers raise these; the HTTP and websocket layers
translate them into structured failure payloads.
"""


class AuroraError(Exception):
    """Base class for all Aurora server errors."""

    kind = "error"
    status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self):
        return {"success": False, "error": self.kind, "message": self.message}


class NotFoundError(AuroraError):
    """Raised when an update/delete/get target does not exist."""

    kind = "not_found"
    status = 404

    def __init__(self, entity: str, identifier):
        super().__init__(f"{entity} not found: {identifier}")
        self.entity = entity
        self.identifier = identifier


class ValidationError(AuroraError):
    """Raised for malformed filters, patches, payloads or configuration."""

    kind = "validation_error"
    status = 400


class PersistenceError(AuroraError):
    """Raised when the SQLite store fails."""

    kind = "persistence_error"
    status = 500


class ChannelError(AuroraError):
    """Raised when a real-time session cannot be written to."""

    kind = "channel_error"
    status = 500
