class AppError(Exception):
    """Base class for all application exceptions."""
    def __init__(self, message: str, status_code: int = 500, details: dict = None):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class TimetableValidationError(AppError):
    """Raised when a command is malformed. Nothing has touched the store yet."""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message, status_code=422, details=details)


class ResourceNotFoundError(AppError):
    """Raised when a requested resource is not found."""
    def __init__(self, resource_type: str, resource_id: str):
        super().__init__(f"{resource_type} with id {resource_id} not found", status_code=404)
        self.resource_type = resource_type
        self.resource_id = resource_id


class InfeasibleScheduleError(AppError):
    """Raised when the generator cannot place every requirement unit.

    ``unplaced`` holds one fragment per requirement that still has units left,
    ``backtracks`` how much of the search budget was spent before giving up.
    """
    def __init__(self, message: str, unplaced: list | None = None, backtracks: int = 0, reason: str = "exhausted"):
        super().__init__(
            message,
            status_code=409,
            details={"reason": reason, "backtracks": backtracks},
        )
        self.unplaced = list(unplaced or [])
        self.backtracks = backtracks
        self.reason = reason


class GenerationCancelledError(AppError):
    """Raised when a caller cancels a generation run between placements."""
    def __init__(self, section_id: str, placed_units: int = 0):
        super().__init__(
            f"Timetable generation for section {section_id} was cancelled",
            status_code=409,
            details={"section_id": section_id, "placed_units": placed_units},
        )


class StoreFailure(AppError):
    """Raised when the entry store is unavailable. Callers may retry."""
    retryable = True

    def __init__(self, message: str, details: dict = None):
        super().__init__(message, status_code=503, details=details)


class ConcurrentBookingError(StoreFailure):
    """Raised when a commit loses a race on a section, teacher or room slot."""


class TimetableIntegrityError(AppError):
    """Raised when committed or staged entries break the no-double-booking rule."""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message, status_code=500, details=details)
