from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from shopauth.logging import get_logger

logger = get_logger(__name__)

_DURATION_PATTERN = re.compile(r"^\s*(\d+)\s*(ms|s|m|h|d)?\s*$", re.IGNORECASE)
_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, "d": 86400}

# Endpoints that cannot carry a session-bound CSRF token because the caller
# has no session yet (or only holds a SameSite=Strict refresh cookie).
DEFAULT_CSRF_EXEMPT_PATHS = (
    "/auth/login",
    "/auth/register",
    "/auth/refresh",
    "/auth/forgot-password",
    "/auth/reset-password",
)


def parse_duration(value: Any) -> int:
    """Parse ``900``, ``"900"``, ``"15m"``, ``"1h"`` or ``"7d"`` into seconds."""

    if isinstance(value, bool):
        raise ValueError("duration must be a number of seconds or a string like '15m'")
    if isinstance(value, (int, float)):
        seconds = int(value)
    elif isinstance(value, str):
        match = _DURATION_PATTERN.match(value)
        if not match:
            raise ValueError(f"invalid duration {value!r}; expected e.g. 900, 15m, 1h, 7d")
        amount, unit = match.groups()
        seconds = int(int(amount) * _DURATION_UNITS[(unit or "s").lower()])
    else:
        raise ValueError("duration must be a number of seconds or a string like '15m'")
    if seconds <= 0:
        raise ValueError("duration must be positive")
    return seconds


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Immutable runtime configuration, read once at process start."""

    # Token lifetimes (seconds)
    access_token_ttl: int = env_field(15 * 60, "ACCESS_TOKEN_TTL")
    refresh_token_ttl: int = env_field(7 * 86400, "REFRESH_TOKEN_TTL")
    # Request-volume throttles
    login_max_attempts: int = env_field(5, "LOGIN_MAX_ATTEMPTS", ge=1)
    login_window: int = env_field(15 * 60, "LOGIN_WINDOW")
    login_ip_max_attempts: int = env_field(
        20, "LOGIN_IP_MAX_ATTEMPTS", ge=1, description="Per client address, same window"
    )
    register_max_attempts: int = env_field(5, "REGISTER_MAX_ATTEMPTS", ge=1)
    register_window: int = env_field(3600, "REGISTER_WINDOW")
    refresh_max_attempts: int = env_field(10, "REFRESH_MAX_ATTEMPTS", ge=1)
    refresh_window: int = env_field(3600, "REFRESH_WINDOW")
    reset_max_attempts: int = env_field(5, "RESET_MAX_ATTEMPTS", ge=1)
    reset_window: int = env_field(3600, "RESET_WINDOW")
    # Cumulative account lockout
    account_lock_threshold: int = env_field(10, "ACCOUNT_LOCK_THRESHOLD", ge=1)
    account_lock_duration: int = env_field(3600, "ACCOUNT_LOCK_DURATION")
    # Password policy and hashing cost
    password_min_length: int = env_field(12, "PASSWORD_MIN_LENGTH", ge=8, le=128)
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_cost: int = env_field(
        64 * 1024, "PASSWORD_HASH_MEMORY_COST", ge=8 * 1024, description="KiB"
    )
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM", ge=1)
    password_reset_ttl: int = env_field(15 * 60, "PASSWORD_RESET_TTL")
    # Device history
    fingerprint_history_size: int = env_field(10, "FINGERPRINT_HISTORY_SIZE", ge=1, le=100)
    # Shared store
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    store_timeout_ms: int = env_field(500, "STORE_TIMEOUT_MS", ge=10, le=10_000)
    store_retry_backoff_ms: int = env_field(50, "STORE_RETRY_BACKOFF_MS", ge=0, le=5_000)
    # Signing keys
    jwt_private_key: str | None = env_field(None, "JWT_PRIVATE_KEY")
    jwt_private_key_path: str | None = env_field(None, "JWT_PRIVATE_KEY_PATH")
    jwt_public_key: str | None = env_field(None, "JWT_PUBLIC_KEY")
    jwt_public_key_path: str | None = env_field(None, "JWT_PUBLIC_KEY_PATH")
    jwt_issuer: str = env_field("shopauth", "JWT_ISSUER", min_length=1)
    jwt_audience: str = env_field("shop-api", "JWT_AUDIENCE", min_length=1)
    # HTTP surface
    csrf_exempt_paths: tuple[str, ...] = env_field(
        DEFAULT_CSRF_EXEMPT_PATHS,
        "CSRF_EXEMPT_PATHS",
        description="Comma separated, exact-match paths; reviewed allowlist",
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cors_allow_origins: tuple[str, ...] = env_field((), "CORS_ALLOW_ORIGINS")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allows ephemeral signing keys and runtime resets",
    )

    model_config = ConfigDict(extra="forbid", frozen=True)

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values and env_file_values[env_name] is not None:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "access_token_ttl",
        "refresh_token_ttl",
        "login_window",
        "register_window",
        "refresh_window",
        "reset_window",
        "account_lock_duration",
        "password_reset_ttl",
        mode="before",
    )
    @classmethod
    def _parse_durations(cls, value: Any) -> int:
        return parse_duration(value)

    @field_validator("csrf_exempt_paths", "cors_allow_origins", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return tuple(part.strip() for part in value.split(",") if part.strip())
        return value

    @field_validator("csrf_exempt_paths")
    @classmethod
    def _validate_exempt_paths(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        for path in value:
            if not path.startswith("/"):
                raise ValueError(f"CSRF exempt path must be absolute: {path!r}")
            if "*" in path:
                raise ValueError("CSRF exempt paths are exact matches; wildcards are not allowed")
        return value

    @model_validator(mode="after")
    def _check_relationships(self) -> "Settings":
        if self.access_token_ttl >= self.refresh_token_ttl:
            raise ValueError("ACCESS_TOKEN_TTL must be shorter than REFRESH_TOKEN_TTL")
        if not self.use_memory_store and not self.redis_url:
            raise ValueError("REDIS_URL is required unless USE_MEMORY_STORE is enabled")
        if self.jwt_private_key and self.jwt_private_key_path:
            raise ValueError("set only one of JWT_PRIVATE_KEY and JWT_PRIVATE_KEY_PATH")
        if self.jwt_public_key and self.jwt_public_key_path:
            raise ValueError("set only one of JWT_PUBLIC_KEY and JWT_PUBLIC_KEY_PATH")
        has_private = bool(self.jwt_private_key or self.jwt_private_key_path)
        if not has_private and not self.test_mode:
            raise ValueError(
                "JWT_PRIVATE_KEY or JWT_PRIVATE_KEY_PATH is required outside TEST_MODE"
            )
        return self

    def load_private_key_pem(self) -> str | None:
        if self.jwt_private_key:
            return self.jwt_private_key
        if self.jwt_private_key_path:
            return Path(self.jwt_private_key_path).read_text()
        return None

    def load_public_key_pem(self) -> str | None:
        if self.jwt_public_key:
            return self.jwt_public_key
        if self.jwt_public_key_path:
            return Path(self.jwt_public_key_path).read_text()
        return None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.info(
            "settings_loaded",
            use_memory_store=_settings_cache.use_memory_store,
            test_mode=_settings_cache.test_mode,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
