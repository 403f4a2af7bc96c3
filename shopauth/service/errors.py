from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients may branch on:

    - validation_error (422)
    - unauthorized (401) and its specific token/session codes
    - forbidden (403), csrf_* (403), account_locked (403)
    - conflict (409)
    - rate_limited (429)
    - service_unavailable (503)
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
    """Input failed validation (422)."""
    status_code = 422
    error_code = "validation_error"


class InvalidResetToken(ValidationError):
    error_code = "invalid_reset_token"

    def __init__(self, message: str = "invalid or expired reset token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentials(AuthenticationError):
    """Unknown identifier or wrong password; the two are indistinguishable."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpired(AuthenticationError):
    error_code = "token_expired"

    def __init__(self, message: str = "token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenInvalidSignature(AuthenticationError):
    error_code = "token_invalid"

    def __init__(self, message: str = "token invalid", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidRefreshToken(AuthenticationError):
    error_code = "invalid_refresh_token"

    def __init__(self, message: str = "invalid refresh token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionRevoked(AuthenticationError):
    error_code = "session_revoked"

    def __init__(self, message: str = "session revoked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenReuseDetected(AuthenticationError):
    """A rotated-out refresh token was presented; the session is now revoked."""
    error_code = "token_reuse_detected"

    def __init__(self, message: str = "refresh token reuse detected", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AuthorizationError(ServiceError):
    """Request authenticated but not permitted (403)."""
    status_code = 403
    error_code = "forbidden"


class CsrfTokenMissing(AuthorizationError):
    error_code = "csrf_token_missing"

    def __init__(self, message: str = "csrf token missing", **kwargs) -> None:
        super().__init__(message, **kwargs)


class CsrfTokenMismatch(AuthorizationError):
    error_code = "csrf_token_mismatch"

    def __init__(self, message: str = "csrf token mismatch", **kwargs) -> None:
        super().__init__(message, **kwargs)


class _RetryAfterError(ServiceError):
    def __init__(self, message: str, *, retry_after: int, **kwargs) -> None:
        self.retry_after = max(1, int(retry_after))
        detail = dict(kwargs.pop("detail", None) or {})
        detail.setdefault("retry_after", self.retry_after)
        super().__init__(message, detail=detail, **kwargs)


class RateLimitError(_RetryAfterError):
    """Request volume exceeded for an (action, identifier) window (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str = "rate limit exceeded", *, retry_after: int, **kwargs) -> None:
        super().__init__(message, retry_after=retry_after, **kwargs)


class AccountLockedError(_RetryAfterError):
    """Account is locked after repeated failures (403)."""
    status_code = 403
    error_code = "account_locked"

    def __init__(self, message: str = "account locked", *, retry_after: int, **kwargs) -> None:
        super().__init__(message, retry_after=retry_after, **kwargs)


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate registration (409)."""
    status_code = 409
    error_code = "conflict"


class ServiceUnavailable(ServiceError):
    """A dependency (shared store) is unreachable (503)."""
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidResetToken",
    "AuthenticationError",
    "InvalidCredentials",
    "TokenExpired",
    "TokenInvalidSignature",
    "InvalidRefreshToken",
    "SessionRevoked",
    "TokenReuseDetected",
    "AuthorizationError",
    "CsrfTokenMissing",
    "CsrfTokenMismatch",
    "RateLimitError",
    "AccountLockedError",
    "ConflictError",
    "ServiceUnavailable",
]
