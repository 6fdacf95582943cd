"""Custom application exceptions."""


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code."""
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundException(AppException):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize with 404 status code."""
        super().__init__(message, status_code=404)


class UnauthorizedException(AppException):
    """Unauthorized access exception."""

    def __init__(self, message: str = "Unauthorized"):
        """Initialize with 401 status code."""
        super().__init__(message, status_code=401)


class ForbiddenException(AppException):
    """Forbidden access exception."""

    def __init__(self, message: str = "Forbidden"):
        """Initialize with 403 status code."""
        super().__init__(message, status_code=403)


class BadRequestException(AppException):
    """Bad request exception."""

    def __init__(self, message: str = "Bad request"):
        """Initialize with 400 status code."""
        super().__init__(message, status_code=400)


class ConflictException(AppException):
    """Conflict exception."""

    def __init__(self, message: str = "Conflict"):
        """Initialize with 409 status code."""
        super().__init__(message, status_code=409)


class SlotConflictException(ConflictException):
    """Requested slot is already held by an active appointment."""

    def __init__(
        self,
        message: str = "This time slot is already booked. Please select another time.",
        existing_appointment_id: int | None = None,
    ):
        """Initialize with the conflicting appointment, when known."""
        self.existing_appointment_id = existing_appointment_id
        super().__init__(message)


class ConcurrentModificationException(ConflictException):
    """Appointment kept changing underneath a transition."""

    def __init__(self, message: str = "Appointment was modified concurrently, please retry"):
        """Initialize with 409 status code."""
        super().__init__(message)


class InvalidTransitionException(BadRequestException):
    """Event is not legal from the appointment's current state."""

    def __init__(self, from_state: str, to_state: str, message: str | None = None):
        """Initialize with the rejected transition endpoints."""
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(message or f"Cannot change status from {from_state} to {to_state}")


class InvalidIntentException(BadRequestException):
    """Payment intent secret is malformed, forged, expired or for another appointment."""

    def __init__(self, message: str = "Invalid client secret"):
        """Initialize with 400 status code."""
        super().__init__(message)


class StorageFailureException(AppException):
    """Persistence layer could not complete the operation."""

    def __init__(self, message: str = "Storage is temporarily unavailable"):
        """Initialize with 503 status code."""
        super().__init__(message, status_code=503)
