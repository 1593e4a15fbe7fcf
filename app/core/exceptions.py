"""
Domain error taxonomy.

Services raise these; the exception handlers registered in main.py render
them as ``{"message": ...}`` JSON bodies and the realtime gateway turns them
into ``error`` events.
"""
from typing import Any, List, Optional


class ChatAPIError(Exception):
    """Base class for all errors that map to an HTTP status."""

    status_code = 500
    default_message = "Something went wrong!"
    code = "INTERNAL_ERROR"

    def __init__(self, message: Optional[str] = None, errors: Optional[List[Any]] = None):
        self.message = message or self.default_message
        self.errors = errors
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {"message": self.message}
        if self.errors:
            body["errors"] = self.errors
        return body


class ValidationFailed(ChatAPIError):
    """Malformed input, detected before any mutation."""

    status_code = 400
    default_message = "Validation failed"
    code = "VALIDATION_ERROR"


class Conflict(ChatAPIError):
    """State conflict, such as a duplicate email or promoting an existing admin."""

    status_code = 400
    default_message = "Conflict"
    code = "CONFLICT"


class Forbidden(ChatAPIError):
    status_code = 403
    default_message = "Access denied"
    code = "FORBIDDEN"


class NotFound(ChatAPIError):
    """Entity absent, or not visible to the caller."""

    status_code = 404
    default_message = "Not found"
    code = "NOT_FOUND"


class PayloadTooLarge(ChatAPIError):
    status_code = 413
    default_message = "File too large"
    code = "PAYLOAD_TOO_LARGE"


class ServiceUnavailable(ChatAPIError):
    status_code = 503
    default_message = "Service temporarily unavailable"
    code = "SERVICE_UNAVAILABLE"
