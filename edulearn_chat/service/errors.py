from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass defines an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - rate_limited (429)
    - quota_exceeded (429)
    - validation_error (400)
    - configuration_error (500)
    - server_error (500)

    ``detail`` entries are merged into the JSON error body, so they must use
    the client-facing key names (e.g. ``resetTime``).
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.headers = headers or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Request is malformed or carries no usable content."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class RateLimitedError(ServiceError):
    """Per-minute request budget exceeded (429, retryable after resetTime)."""
    status_code = 429
    error_code = "rate_limited"


class QuotaExceededError(ServiceError):
    """Daily token budget exhausted (429, not retryable until tomorrow)."""
    status_code = 429
    error_code = "quota_exceeded"


class ConfigurationError(ServiceError):
    """Server is missing required configuration (500)."""
    status_code = 500
    error_code = "configuration_error"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "RateLimitedError",
    "QuotaExceededError",
    "ConfigurationError",
    "ServerError",
]
