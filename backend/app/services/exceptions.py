"""Service-layer exceptions for the timeline engine.

These exceptions are used within services and DO NOT extend HTTPException.
Routes catch them and convert them to structured HTTP responses; Celery
tasks use ``is_retryable`` to decide whether a regeneration is retried.
"""

from typing import Any


class ServiceError(Exception):
    """Base class for all service-layer exceptions.

    Attributes:
        code: Machine-readable error code (e.g., "INVALID_TIME_RANGE").
        message: Human-readable error message.
        details: Optional additional context.
        status_code: Suggested HTTP status code for API responses.
        is_retryable: Whether the operation can be retried.
    """

    code: str = "SERVICE_ERROR"
    status_code: int = 500
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        is_retryable: bool | None = None,
    ) -> None:
        self.message = message
        self.details = details or {}
        if is_retryable is not None:
            self.is_retryable = is_retryable
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "is_retryable": self.is_retryable,
        }


class InvalidTimeRangeError(ServiceError):
    """Requested interval ends before it starts."""

    code = "INVALID_TIME_RANGE"
    status_code = 422


class SupabaseNotConfiguredError(ServiceError):
    """No Supabase credentials are configured."""

    code = "SUPABASE_NOT_CONFIGURED"
    status_code = 503

    def __init__(self) -> None:
        super().__init__("Supabase not configured")


class TimelineStorageError(ServiceError):
    """Reading or writing persisted timeline data failed."""

    code = "TIMELINE_STORAGE_ERROR"
    status_code = 503
    is_retryable = True


class DetectionEngineError(ServiceError):
    """The staypoint/trip detection collaborator failed."""

    code = "DETECTION_FAILED"
    status_code = 502
    is_retryable = True


class RegenerationTaskError(ServiceError):
    """Reading or writing regeneration tasks failed."""

    code = "REGENERATION_TASK_ERROR"
    status_code = 503
    is_retryable = True
