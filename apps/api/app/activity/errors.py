from __future__ import annotations

from typing import Any


class ActivityError(Exception):
    """Base error for activity lifecycle and read-model failures."""

    status_code = 500
    code = "activity_error"

    def __init__(self, message: str, details: Any = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class ValidationError(ActivityError):
    """Raised when a required field is missing or invalid before a transition is attempted."""

    status_code = 422
    code = "activity_validation_failed"


class ConflictError(ActivityError):
    """Raised when a transition starts from a terminal state or duplicates an in-flight request."""

    status_code = 409
    code = "activity_conflict"


class NotFoundError(ActivityError):
    """Raised when the target record no longer exists in the backend of record."""

    status_code = 404
    code = "activity_not_found"


class TransportError(ActivityError):
    """Raised when the backend of record cannot be reached or answers with a server error."""

    status_code = 502
    code = "activity_backend_unavailable"
