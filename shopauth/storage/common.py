"""Shared-store contract used by every component that keeps cross-request state.

Rate-limit counters, lockout markers, sessions, password-reset tokens and
fingerprint histories all live behind :class:`SharedStore`. Two backends
implement it: :class:`~shopauth.storage.redis_store.RedisStore` for
production and :class:`~shopauth.storage.memory.MemoryStore` for tests and
single-process development. Services never hold cross-request state in
process memory themselves.
"""

from __future__ import annotations

import asyncio
import enum
import time
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Set, Tuple

from shopauth.logging import get_logger
from shopauth.storage.errors import StoreUnavailable

logger = get_logger(__name__)

Clock = Callable[[], float]


def system_clock() -> float:
    return time.time()


class CasResult(str, enum.Enum):
    SWAPPED = "swapped"
    MISMATCH = "mismatch"
    MISSING = "missing"


class SharedStore(Protocol):
    async def incr_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """Increment a fixed-window counter; return ``(count, seconds_left)``.

        The TTL is set when the window opens and never extended.
        """

    async def create_hash(
        self,
        key: str,
        mapping: Mapping[str, str],
        ttl_seconds: int,
        *,
        index_key: Optional[str] = None,
    ) -> bool:
        """Write ``mapping`` only if ``key`` is absent.

        With ``index_key`` the last ``:`` segment of ``key`` is added to the
        set stored there, in the same atomic step.

        Repeating a write whose fields are already stored returns ``True``.
        """

    async def get_hash(self, key: str) -> Optional[Dict[str, str]]: ...

    async def compare_and_swap(
        self,
        key: str,
        expected: Mapping[str, str],
        updates: Mapping[str, str],
        *,
        ttl_seconds: Optional[int] = None,
    ) -> CasResult:
        """Apply ``updates`` only if every field in ``expected`` matches.

        A hash that already carries every update reports ``SWAPPED``, so a
        retry after a lost reply does not read as a conflict.
        """

    async def update_hash(self, key: str, updates: Mapping[str, str]) -> bool: ...

    async def record_failure(
        self,
        counter_key: str,
        lock_key: str,
        threshold: int,
        lock_seconds: int,
        counter_ttl: int,
    ) -> Tuple[bool, int]:
        """Count a failure and set ``lock_key`` once ``threshold`` is reached.

        Returns ``(locked, attempts)``; ``attempts`` is ``-1`` when the lock
        was already present. Reaching the threshold clears the counter.
        """

    async def exists(self, key: str) -> bool: ...

    async def ttl(self, key: str) -> int: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def pop(self, key: str) -> Optional[str]: ...

    async def delete(self, *keys: str) -> int: ...

    async def set_members(self, key: str) -> Set[str]: ...

    async def set_remove(self, key: str, member: str) -> None: ...

    async def push_bounded(
        self, key: str, value: str, max_len: int, ttl_seconds: Optional[int] = None
    ) -> None:
        """Move ``value`` to the head of a list capped at ``max_len`` entries."""

    async def list_range(self, key: str, limit: int) -> List[str]: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class ResilientStore:
    """Deadline and single-retry wrapper around a :class:`SharedStore`.

    Every call gets ``timeout_ms``; a timeout or transient backend error is
    retried once after ``backoff_ms``. A second failure raises
    :class:`StoreUnavailable`, which callers translate into fail-closed or
    fail-open behavior as appropriate.
    """

    def __init__(self, inner: SharedStore, *, timeout_ms: int = 500, backoff_ms: int = 50):
        self.inner = inner
        self.timeout = timeout_ms / 1000.0
        self.backoff = backoff_ms / 1000.0
        self._transient = (asyncio.TimeoutError, ConnectionError) + tuple(
            getattr(inner, "transient_errors", ())
        )

    async def _call(self, operation: str, factory: Callable[[], Awaitable]):
        last_error: Optional[BaseException] = None
        for attempt in (1, 2):
            try:
                return await asyncio.wait_for(factory(), timeout=self.timeout)
            except self._transient as exc:
                last_error = exc
                logger.warning(
                    "shared_store_call_failed",
                    operation=operation,
                    attempt=attempt,
                    error_type=type(exc).__name__,
                )
                if attempt == 1 and self.backoff:
                    await asyncio.sleep(self.backoff)
        raise StoreUnavailable(operation, last_error)

    async def incr_window(self, key, window_seconds):
        return await self._call("incr_window", lambda: self.inner.incr_window(key, window_seconds))

    async def create_hash(self, key, mapping, ttl_seconds, *, index_key=None):
        return await self._call(
            "create_hash",
            lambda: self.inner.create_hash(key, mapping, ttl_seconds, index_key=index_key),
        )

    async def get_hash(self, key):
        return await self._call("get_hash", lambda: self.inner.get_hash(key))

    async def compare_and_swap(self, key, expected, updates, *, ttl_seconds=None):
        return await self._call(
            "compare_and_swap",
            lambda: self.inner.compare_and_swap(key, expected, updates, ttl_seconds=ttl_seconds),
        )

    async def update_hash(self, key, updates):
        return await self._call("update_hash", lambda: self.inner.update_hash(key, updates))

    async def record_failure(self, counter_key, lock_key, threshold, lock_seconds, counter_ttl):
        return await self._call(
            "record_failure",
            lambda: self.inner.record_failure(
                counter_key, lock_key, threshold, lock_seconds, counter_ttl
            ),
        )

    async def exists(self, key):
        return await self._call("exists", lambda: self.inner.exists(key))

    async def ttl(self, key):
        return await self._call("ttl", lambda: self.inner.ttl(key))

    async def get(self, key):
        return await self._call("get", lambda: self.inner.get(key))

    async def set(self, key, value, ttl_seconds):
        return await self._call("set", lambda: self.inner.set(key, value, ttl_seconds))

    async def pop(self, key):
        return await self._call("pop", lambda: self.inner.pop(key))

    async def delete(self, *keys):
        return await self._call("delete", lambda: self.inner.delete(*keys))

    async def set_members(self, key):
        return await self._call("set_members", lambda: self.inner.set_members(key))

    async def set_remove(self, key, member):
        return await self._call("set_remove", lambda: self.inner.set_remove(key, member))

    async def push_bounded(self, key, value, max_len, ttl_seconds=None):
        return await self._call(
            "push_bounded", lambda: self.inner.push_bounded(key, value, max_len, ttl_seconds)
        )

    async def list_range(self, key, limit):
        return await self._call("list_range", lambda: self.inner.list_range(key, limit))

    async def ping(self):
        return await self._call("ping", self.inner.ping)

    async def close(self) -> None:
        await self.inner.close()


__all__ = ["CasResult", "Clock", "ResilientStore", "SharedStore", "system_clock"]
