from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on without parsing messages.
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

    def __init__(self, message: str, *, errors: Optional[list[str]] = None, **kwargs) -> None:
        detail = kwargs.pop("detail", None) or {}
        if errors:
            detail = {**detail, "errors": list(errors)}
        super().__init__(message, detail=detail, **kwargs)
        self.errors = list(errors or [])


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; the two are never distinguished."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidOrExpiredTokenError(AuthenticationError):
    """Refresh token failed verification, is unknown, revoked or already used."""
    error_code = "invalid_token"

    def __init__(self, message: str = "invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidOrExpiredCodeError(ServiceError):
    """Password reset code does not match an unused, unexpired code."""
    status_code = 400
    error_code = "invalid_or_expired_code"

    def __init__(self, message: str = "invalid or expired reset code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidCurrentPasswordError(ServiceError):
    status_code = 400
    error_code = "invalid_current_password"

    def __init__(self, message: str = "current password is incorrect", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountBannedError(ForbiddenError):
    error_code = "account_banned"

    def __init__(self, message: str = "account is banned", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class LastOwnerViolationError(ConflictError):
    """Operation would leave a workspace without any OWNER."""
    error_code = "last_owner_violation"

    def __init__(
        self, message: str = "workspace must keep at least one owner", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self, message: str = "rate limit exceeded", *, retry_after: int = 1, **kwargs
    ) -> None:
        detail = {**(kwargs.pop("detail", None) or {}), "retry_after": retry_after}
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after = retry_after


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidOrExpiredTokenError",
    "InvalidOrExpiredCodeError",
    "InvalidCurrentPasswordError",
    "ForbiddenError",
    "AccountBannedError",
    "NotFoundError",
    "ConflictError",
    "LastOwnerViolationError",
    "RateLimitedError",
]
