from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

# Upper bound on any password field; strength rules apply a tighter limit
# but the hasher must never see unbounded input.
MAX_PASSWORD_FIELD_LENGTH = 1024

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "invalid_reset_token",
    "unauthorized",
    "invalid_credentials",
    "token_expired",
    "token_invalid",
    "invalid_refresh_token",
    "session_revoked",
    "token_reuse_detected",
    "forbidden",
    "csrf_token_missing",
    "csrf_token_mismatch",
    "account_locked",
    "not_found",
    "conflict",
    "rate_limited",
    "server_error",
    "service_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable, machine-readable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format shared by every response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi-override characters, then NFKC-normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class _EmailModel(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_email_field(cls, value: str) -> str:
        return _validate_email(value)


class RegisterRequest(_EmailModel):
    # Strength is enforced by the credential verifier so every violated rule
    # is reported together.
    password: str = Field(..., max_length=MAX_PASSWORD_FIELD_LENGTH)


class RegisterResponse(BaseModel):
    user_id: str
    email: str


class LoginRequest(_EmailModel):
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_FIELD_LENGTH)
    device_fingerprint: Optional[str] = Field(default=None, max_length=512)


class AuthResponse(BaseModel):
    user_id: str
    session_id: str
    session_expires_at: datetime
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    token_type: str = "Bearer"
    csrf_token: str
    new_device: bool = False


class TokenRefreshRequest(BaseModel):
    # Optional: browsers send the refresh cookie instead.
    refresh_token: Optional[str] = Field(default=None, max_length=256)


class PasswordResetRequest(_EmailModel):
    pass


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., max_length=MAX_PASSWORD_FIELD_LENGTH)


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""
    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_FIELD_LENGTH)
    new_password: str = Field(..., max_length=MAX_PASSWORD_FIELD_LENGTH)


class SessionInfo(BaseModel):
    session_id: str
    created_at: datetime
    expires_at: datetime
    current: bool = False


class SessionListResponse(BaseModel):
    items: List[SessionInfo]


class ProfileResponse(BaseModel):
    user_id: str
    email: str
    session_id: str
    failed_attempt_count: int = 0


class MessageResponse(BaseModel):
    message: str
