# calsync/core/exceptions.py
from typing import Any, Dict, Optional, Type

from fastapi import HTTPException, status

from calsync.core.constants import ErrorCategory, HealthOutcome


class BusinessException(Exception):
    """Base exception for business rule violations."""

    status_code = status.HTTP_400_BAD_REQUEST
    error_code = "business_error"

    def __init__(
        self, message: str, code: str = None, details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code or self.error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        """Convert this exception to an HTTPException"""
        return HTTPException(
            status_code=self.status_code,
            detail={
                "error": self.code,
                "message": self.message,
                **({"details": self.details} if self.details else {}),
            },
        )


# Resource-related exceptions
class ResourceNotFoundException(BusinessException):
    """Exception raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND
    error_code = "resource_not_found"


class ValidationException(BusinessException):
    """Exception raised when input validation fails."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    error_code = "validation_error"


class InvalidDefaultCalendarError(ValidationException):
    """The default booking calendar is not one of the selected calendars."""

    error_code = "invalid_default_calendar"


# Calendar provider exceptions
class CalendarProviderError(BusinessException):
    """
    Base class for failures reported by a calendar provider.

    ``category`` tells callers whether the failure is worth retrying and
    ``health_outcome`` how it counts towards integration health.
    """

    status_code = status.HTTP_502_BAD_GATEWAY
    error_code = "external_service_error"
    category = ErrorCategory.TRANSIENT

    def __init__(
        self,
        message: str,
        code: str = None,
        details: Optional[Dict[str, Any]] = None,
        provider: Optional[str] = None,
    ):
        super().__init__(message, code=code, details=details)
        self.provider = provider

    @property
    def health_outcome(self) -> HealthOutcome:
        if self.category in (ErrorCategory.PERMANENT, ErrorCategory.CONFIGURATION):
            return HealthOutcome.HARD_ERROR
        return HealthOutcome.TRANSIENT_ERROR


class UnauthorizedError(CalendarProviderError):
    """Credentials were rejected or revoked; re-authorization is required."""

    status_code = status.HTTP_401_UNAUTHORIZED
    error_code = "unauthorized"
    category = ErrorCategory.PERMANENT


class InsufficientPermissionError(UnauthorizedError):
    """The granted scope does not cover the requested operation."""

    status_code = status.HTTP_403_FORBIDDEN
    error_code = "insufficient_permission"


class RateLimitedError(CalendarProviderError):
    """The provider throttled the request."""

    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    error_code = "rate_limited"
    category = ErrorCategory.RATE_LIMITED

    def __init__(
        self,
        message: str,
        retry_after: Optional[int] = None,
        code: str = None,
        details: Optional[Dict[str, Any]] = None,
        provider: Optional[str] = None,
    ):
        super().__init__(message, code=code, details=details, provider=provider)
        self.retry_after = retry_after


class TransientError(CalendarProviderError):
    """Network failure or 5xx; likely to succeed on retry."""

    error_code = "transient_error"
    category = ErrorCategory.TRANSIENT


class ProviderTimeoutError(TransientError):
    """The provider did not answer within the configured timeout."""

    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    error_code = "service_timeout"


class RefreshFailedError(TransientError):
    """An unexpected fault escaped a token refresh."""

    error_code = "refresh_failed"

    @property
    def health_outcome(self) -> HealthOutcome:
        return HealthOutcome.HARD_ERROR


class ConfigurationError(CalendarProviderError):
    """Bad URL, missing calendar or rejected precondition; user-actionable."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    error_code = "configuration_error"
    category = ErrorCategory.CONFIGURATION


class NotFoundError(ConfigurationError):
    """The calendar or event does not exist on the provider."""

    status_code = status.HTTP_404_NOT_FOUND
    error_code = "not_found"


# Refresh coordination
class RefreshInProgressError(BusinessException):
    """Another refresh holds the lock; re-read persisted state shortly."""

    status_code = status.HTTP_409_CONFLICT
    error_code = "refresh_in_progress"
    category = ErrorCategory.REFRESH_IN_PROGRESS


class LockTimeoutError(RefreshInProgressError):
    """A blocking lock acquisition gave up waiting."""

    error_code = "lock_timeout"


# Map exception classes to HTTP status codes
EXCEPTION_STATUS_CODES: Dict[Type[BusinessException], int] = {
    ResourceNotFoundException: status.HTTP_404_NOT_FOUND,
    ValidationException: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidDefaultCalendarError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    UnauthorizedError: status.HTTP_401_UNAUTHORIZED,
    InsufficientPermissionError: status.HTTP_403_FORBIDDEN,
    RateLimitedError: status.HTTP_429_TOO_MANY_REQUESTS,
    TransientError: status.HTTP_502_BAD_GATEWAY,
    ProviderTimeoutError: status.HTTP_504_GATEWAY_TIMEOUT,
    RefreshFailedError: status.HTTP_502_BAD_GATEWAY,
    ConfigurationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    RefreshInProgressError: status.HTTP_409_CONFLICT,
    LockTimeoutError: status.HTTP_409_CONFLICT,
    CalendarProviderError: status.HTTP_502_BAD_GATEWAY,
    BusinessException: status.HTTP_400_BAD_REQUEST,
}
