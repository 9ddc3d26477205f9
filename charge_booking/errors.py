"""
Error kinds raised by the booking engine.

Every failed guard maps to exactly one of these; ``guard`` names the rule
that failed so a caller can decide what to change before trying again.
"""


class BookingError(Exception):
    """Base exception for all booking engine errors."""

    def __init__(self, message: str, guard: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.guard = guard

    def to_dict(self) -> dict[str, str | None]:
        return {"error": type(self).__name__, "guard": self.guard, "message": self.message}


class ValidationError(BookingError):
    """Malformed request: bad window, date string, offset or capacity."""


class NotFoundError(BookingError):
    """Booking or station does not exist."""


class AuthorizationError(BookingError):
    """Role, ownership, assignment or session token check failed."""


class ConflictError(BookingError):
    """A business rule rejected the transition."""


class StoreError(BookingError, RuntimeError):
    """The YAML store could not be read or written."""
