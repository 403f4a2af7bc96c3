from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from shopauth.config import Settings, get_settings, reset_settings_cache
from shopauth.logging import get_logger
from shopauth.service.auth import AuthService
from shopauth.service.notifications import PasswordResetNotifier
from shopauth.storage.common import Clock, ResilientStore, system_clock
from shopauth.storage.memory import MemoryCredentialRepository, MemoryStore
from shopauth.storage.redis_store import RedisStore
from shopauth.storage.repository import CredentialRepository

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        credentials: Optional[CredentialRepository] = None,
        notifier: Optional[PasswordResetNotifier] = None,
        clock: Clock = system_clock,
    ):
        self.settings = settings or get_settings()
        self.clock = clock
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        if self.settings.use_memory_store:
            backend = MemoryStore(clock=clock)
        else:
            backend = RedisStore(self.settings.redis_url)
            try:
                backend.verify_connection()
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error_type=type(exc).__name__,
                )
                raise RuntimeError(
                    "Redis is required for rate limits, lockouts and sessions; "
                    "start Redis or set USE_MEMORY_STORE=true for single-process development."
                ) from exc
        self.store = ResilientStore(
            backend,
            timeout_ms=self.settings.store_timeout_ms,
            backoff_ms=self.settings.store_retry_backoff_ms,
        )
        logger.info(
            "runtime_store_initialized",
            store_type="memory" if self.settings.use_memory_store else "redis",
        )

        # The credential store belongs to the account service; deployments
        # pass their adapter in, development falls back to process memory.
        self.credentials = credentials or MemoryCredentialRepository()
        self.auth = AuthService(
            self.settings,
            credentials=self.credentials,
            store=self.store,
            notifier=notifier,
            clock=clock,
        )

    async def close(self) -> None:
        await self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent a race during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(**overrides) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs.

    Keyword overrides (``credentials``, ``notifier``, ``clock``) are passed
    to the new :class:`Runtime`.
    """
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.store.inner, RedisStore):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.close())
            except RuntimeError:
                asyncio.run(runtime.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings, **overrides)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
