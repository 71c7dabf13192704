from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on. Messages never say which credential factor
    failed.
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; both look identical to the caller."""
    error_code = "invalid_credentials"


class UserInactiveError(AuthenticationError):
    error_code = "user_inactive"


class UserNotFoundError(AuthenticationError):
    """Token subject no longer exists."""
    error_code = "user_not_found"


class TokenInvalidError(AuthenticationError):
    """Token is malformed, wrongly signed, revoked, or has the wrong type."""
    error_code = "token_invalid"


class TokenExpiredError(AuthenticationError):
    error_code = "token_expired"


class InvalidRefreshTokenError(AuthenticationError):
    """Refresh token does not match any active session."""
    error_code = "invalid_refresh_token"


class UserAlreadyExistsError(ServiceError):
    """Email or username already registered (409)."""
    status_code = 409
    error_code = "user_already_exists"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class RequestTimeoutError(ServiceError):
    """Request exceeded its processing deadline (504)."""
    status_code = 504
    error_code = "request_timeout"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "internal_error"


class HashingError(ServerError):
    """Password hashing backend failed."""


class InvalidHashFormatError(ServerError):
    """Stored password hash could not be parsed."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "UserInactiveError",
    "UserNotFoundError",
    "TokenInvalidError",
    "TokenExpiredError",
    "InvalidRefreshTokenError",
    "UserAlreadyExistsError",
    "ForbiddenError",
    "NotFoundError",
    "RateLimitedError",
    "RequestTimeoutError",
    "ServerError",
    "HashingError",
    "InvalidHashFormatError",
]
