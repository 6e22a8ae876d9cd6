"""Exceptions raised by bot services."""

from __future__ import annotations

from typing import Any, Optional


class ServiceError(Exception):
    """Base exception for service failures."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class APIError(ServiceError):
    """Raised when the Platform API answers with an error status."""

    def __init__(
        self,
        message: str,
        status_code: int,
        code: Optional[str] = None,
        retry_after: Optional[float] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.status_code = status_code
        self.code = code
        self.retry_after = retry_after


class NetworkError(ServiceError):
    """Raised when the Platform API cannot be reached.

    ``code`` mirrors the socket-level condition (``ECONNREFUSED``,
    ``ENOTFOUND``, ``ECONNABORTED``) so the error classifier can read it.
    """

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class ValidationError(ServiceError):
    """Raised when user input fails validation."""
    pass


class ResourceNotFoundError(ServiceError):
    """Raised when a Platform resource does not exist."""
    pass


class PermissionDeniedError(ServiceError):
    """Raised when the acting user may not perform an operation."""
    pass


class ConflictError(ServiceError):
    """Raised when an operation collides with existing state."""
    pass


class RateLimitError(ServiceError):
    """Raised when a subject exceeded its request budget."""

    def __init__(self, message: str, retry_after: float):
        super().__init__(message)
        self.retry_after = retry_after


class SessionExpiredError(ServiceError):
    """Raised when staged interaction state is no longer in the cache."""
    pass
