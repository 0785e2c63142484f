from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    rendered in the error envelope. Messages are written for external
    callers; internal detail belongs in logs, not in the message.
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
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class WeakPassword(ValidationError):
    """Password does not satisfy the configured policy (400)."""
    error_code = "weak_password"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentials(AuthenticationError):
    """Unknown email or wrong password; one message for both."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class DeviceMismatch(AuthenticationError):
    """Presented fingerprint does not match the account's bound device."""
    error_code = "device_mismatch"

    def __init__(
        self,
        message: str = "device not recognized; this account is locked to another device",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


class TokenExpired(AuthenticationError):
    error_code = "token_expired"

    def __init__(self, message: str = "token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenInvalid(AuthenticationError):
    error_code = "token_invalid"

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenReused(AuthenticationError):
    """A rotated refresh token was presented again; its family is revoked."""
    error_code = "token_reused"

    def __init__(
        self, message: str = "refresh token reuse detected; sign in again", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


Forbidden = ForbiddenError


class AccountSuspended(ForbiddenError):
    error_code = "account_suspended"

    def __init__(self, message: str = "account suspended", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountDeactivated(ForbiddenError):
    error_code = "account_deactivated"

    def __init__(self, message: str = "account deactivated", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountPending(ForbiddenError):
    error_code = "account_pending"

    def __init__(
        self, message: str = "account pending activation; verify your email", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict or invalid state transition (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class TooManyAttempts(RateLimitedError):
    error_code = "too_many_attempts"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "WeakPassword",
    "AuthenticationError",
    "InvalidCredentials",
    "DeviceMismatch",
    "TokenExpired",
    "TokenInvalid",
    "TokenReused",
    "ForbiddenError",
    "Forbidden",
    "AccountSuspended",
    "AccountDeactivated",
    "AccountPending",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "TooManyAttempts",
    "ServerError",
]
