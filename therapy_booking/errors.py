# therapy_booking/errors.py
from typing import Any, Dict, List, Optional


class BookingError(Exception):
    """Base class for every error raised by the booking core."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(BookingError):
    """Malformed time, date or enum input."""


class ConflictError(BookingError):
    """A window or session overlaps an existing one."""

    def __init__(self, message: str, conflicts: Optional[List[Dict[str, Any]]] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.conflicts = conflicts or []


class NotFoundError(BookingError):
    pass


class AuthorizationError(BookingError):
    """The actor may not perform the requested operation."""


class InvalidStateTransition(BookingError):
    def __init__(self, message: str, current_status: Any = None, event: Any = None):
        super().__init__(message, {"current_status": str(current_status), "event": str(event)})
        self.current_status = current_status
        self.event = event


class IntegrityError(BookingError):
    """Raised only by explicit audit chain verification."""

    def __init__(self, message: str, verification: Any = None):
        super().__init__(message)
        self.verification = verification
