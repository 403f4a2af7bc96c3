from __future__ import annotations

import math
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from shopauth.storage.common import CasResult, Clock, system_clock
from shopauth.storage.errors import ConstraintViolation
from shopauth.storage.models import CredentialRecord


class MemoryStore:
    """In-process :class:`~shopauth.storage.common.SharedStore`.

    Mirrors the Redis semantics closely enough for tests and single-worker
    development: per-key expiry driven by an injectable clock, and every
    compound operation runs under one lock so it is atomic with respect to
    other coroutines and threads in the same process.
    """

    def __init__(self, *, clock: Clock = system_clock):
        self._clock = clock
        self._lock = threading.RLock()
        self._values: Dict[str, Any] = {}
        self._expiry: Dict[str, float] = {}

    # -- internal helpers (caller holds the lock) ---------------------------

    def _purge(self, key: str) -> None:
        deadline = self._expiry.get(key)
        if deadline is not None and deadline <= self._clock():
            self._values.pop(key, None)
            self._expiry.pop(key, None)

    def _lookup(self, key: str) -> Any:
        self._purge(key)
        return self._values.get(key)

    def _expire(self, key: str, seconds: float) -> None:
        self._expiry[key] = self._clock() + seconds

    def _remaining(self, key: str) -> int:
        deadline = self._expiry.get(key)
        if deadline is None:
            return 0
        return max(0, math.ceil(deadline - self._clock()))

    # -- SharedStore --------------------------------------------------------

    async def incr_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        with self._lock:
            count = int(self._lookup(key) or 0) + 1
            self._values[key] = count
            if count == 1 or key not in self._expiry:
                self._expire(key, window_seconds)
            return count, self._remaining(key)

    async def create_hash(
        self,
        key: str,
        mapping: Mapping[str, str],
        ttl_seconds: int,
        *,
        index_key: Optional[str] = None,
    ) -> bool:
        with self._lock:
            existing = self._lookup(key)
            if existing is not None:
                # Identical content means this write already landed.
                return existing == dict(mapping)
            self._values[key] = dict(mapping)
            self._expire(key, ttl_seconds)
            if index_key:
                members = self._lookup(index_key) or set()
                members.add(key.rsplit(":", 1)[-1])
                self._values[index_key] = members
                if self._remaining(index_key) < ttl_seconds:
                    self._expire(index_key, ttl_seconds)
            return True

    async def get_hash(self, key: str) -> Optional[Dict[str, str]]:
        with self._lock:
            value = self._lookup(key)
            return dict(value) if value is not None else None

    async def compare_and_swap(
        self,
        key: str,
        expected: Mapping[str, str],
        updates: Mapping[str, str],
        *,
        ttl_seconds: Optional[int] = None,
    ) -> CasResult:
        with self._lock:
            current = self._lookup(key)
            if current is None:
                return CasResult.MISSING
            if any(current.get(field) != value for field, value in expected.items()):
                if updates and all(current.get(f) == v for f, v in updates.items()):
                    return CasResult.SWAPPED
                return CasResult.MISMATCH
            current.update(updates)
            if ttl_seconds:
                self._expire(key, ttl_seconds)
            return CasResult.SWAPPED

    async def update_hash(self, key: str, updates: Mapping[str, str]) -> bool:
        with self._lock:
            current = self._lookup(key)
            if current is None:
                return False
            current.update(updates)
            return True

    async def record_failure(
        self,
        counter_key: str,
        lock_key: str,
        threshold: int,
        lock_seconds: int,
        counter_ttl: int,
    ) -> Tuple[bool, int]:
        with self._lock:
            if self._lookup(lock_key) is not None:
                return True, -1
            attempts = int(self._lookup(counter_key) or 0) + 1
            self._values[counter_key] = attempts
            self._expire(counter_key, counter_ttl)
            if attempts >= threshold:
                self._values[lock_key] = "1"
                self._expire(lock_key, lock_seconds)
                self._values.pop(counter_key, None)
                self._expiry.pop(counter_key, None)
                return True, attempts
            return False, attempts

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._lookup(key) is not None

    async def ttl(self, key: str) -> int:
        with self._lock:
            if self._lookup(key) is None:
                return 0
            return self._remaining(key)

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._lookup(key)
            return value if isinstance(value, str) else None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._values[key] = value
            self._expire(key, ttl_seconds)

    async def pop(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._lookup(key)
            self._values.pop(key, None)
            self._expiry.pop(key, None)
            return value if isinstance(value, str) else None

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._lookup(key) is not None:
                    removed += 1
                self._values.pop(key, None)
                self._expiry.pop(key, None)
        return removed

    async def set_members(self, key: str) -> Set[str]:
        with self._lock:
            return set(self._lookup(key) or set())

    async def set_remove(self, key: str, member: str) -> None:
        with self._lock:
            members = self._lookup(key)
            if members:
                members.discard(member)

    async def push_bounded(
        self, key: str, value: str, max_len: int, ttl_seconds: Optional[int] = None
    ) -> None:
        with self._lock:
            items = [item for item in (self._lookup(key) or []) if item != value]
            items.insert(0, value)
            self._values[key] = items[:max_len]
            if ttl_seconds:
                self._expire(key, ttl_seconds)

    async def list_range(self, key: str, limit: int) -> List[str]:
        with self._lock:
            return list((self._lookup(key) or [])[:limit])

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
            self._expiry.clear()


class MemoryCredentialRepository:
    """In-process :class:`~shopauth.storage.repository.CredentialRepository`."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_user: Dict[str, CredentialRecord] = {}
        self._by_identifier: Dict[str, str] = {}

    async def get_by_identifier(self, identifier: str) -> Optional[CredentialRecord]:
        with self._lock:
            user_id = self._by_identifier.get(identifier)
            return self._by_user.get(user_id) if user_id else None

    async def get_by_user_id(self, user_id: str) -> Optional[CredentialRecord]:
        with self._lock:
            return self._by_user.get(user_id)

    async def create(self, identifier: str, password_hash: str) -> CredentialRecord:
        with self._lock:
            if identifier in self._by_identifier:
                raise ConstraintViolation("identifier already registered", {"field": "email"})
            record = CredentialRecord(
                user_id=str(uuid.uuid4()),
                identifier=identifier,
                password_hash=password_hash,
            )
            self._by_user[record.user_id] = record
            self._by_identifier[identifier] = record.user_id
            return record

    async def update_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._lock:
            record = self._by_user.get(user_id)
            if record is not None:
                record.password_hash = password_hash

    async def update_lockout(
        self,
        identifier: str,
        *,
        failed_attempt_count: int,
        locked_until: Optional[datetime],
    ) -> None:
        with self._lock:
            user_id = self._by_identifier.get(identifier)
            record = self._by_user.get(user_id) if user_id else None
            if record is None:
                return
            record.failed_attempt_count = failed_attempt_count
            record.locked_until = (
                locked_until.astimezone(timezone.utc) if locked_until else None
            )


__all__ = ["MemoryStore", "MemoryCredentialRepository"]
