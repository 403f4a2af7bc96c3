from __future__ import annotations

from typing import Dict, List, Mapping, Optional, Set, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from shopauth.storage.common import CasResult


class RedisStore:
    """Redis-backed :class:`~shopauth.storage.common.SharedStore`.

    Every compound operation is a single Lua script so concurrent workers
    can never interleave a read with another worker's write.
    """

    transient_errors = (RedisError,)

    # Fixed window: the TTL is only set when the window opens (or was lost).
    _INCR_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
local ttl = redis.call('PTTL', KEYS[1])
if count == 1 or ttl < 0 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

    # ARGV: ttl, index member, field1, value1, ...
    # A key already holding exactly these fields is a repeated write: 1.
    _CREATE_HASH_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  for i = 3, #ARGV, 2 do
    if redis.call('HGET', KEYS[1], ARGV[i]) ~= ARGV[i + 1] then
      return 0
    end
  end
  return 1
end
redis.call('HSET', KEYS[1], unpack(ARGV, 3))
redis.call('EXPIRE', KEYS[1], ARGV[1])
if KEYS[2] then
  redis.call('SADD', KEYS[2], ARGV[2])
  if redis.call('TTL', KEYS[2]) < tonumber(ARGV[1]) then
    redis.call('EXPIRE', KEYS[2], ARGV[1])
  end
end
return 1
"""

    # ARGV: n_expected, ttl (0 keeps current), expected pairs, update pairs
    # A hash already carrying every update is a repeated swap: 1.
    _CAS_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return -1
end
local n = tonumber(ARGV[1])
local idx = 3
local matched = true
for i = 1, n do
  if redis.call('HGET', KEYS[1], ARGV[idx]) ~= ARGV[idx + 1] then
    matched = false
  end
  idx = idx + 2
end
if not matched then
  if idx > #ARGV then
    return 0
  end
  for i = idx, #ARGV, 2 do
    if redis.call('HGET', KEYS[1], ARGV[i]) ~= ARGV[i + 1] then
      return 0
    end
  end
  return 1
end
if idx <= #ARGV then
  redis.call('HSET', KEYS[1], unpack(ARGV, idx))
end
local ttl = tonumber(ARGV[2])
if ttl > 0 then
  redis.call('EXPIRE', KEYS[1], ttl)
end
return 1
"""

    _UPDATE_HASH_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return 0
end
redis.call('HSET', KEYS[1], unpack(ARGV))
return 1
"""

    _RECORD_FAILURE_SCRIPT = """
-- Already locked: do not count further
if redis.call('EXISTS', KEYS[1]) == 1 then
  return {1, -1}
end

local attempts = redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[3])

if attempts >= tonumber(ARGV[1]) then
  redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
  redis.call('DEL', KEYS[2])
  return {1, attempts}
end

return {0, attempts}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._incr_window = self.client.register_script(self._INCR_WINDOW_SCRIPT)
        self._create_hash = self.client.register_script(self._CREATE_HASH_SCRIPT)
        self._cas = self.client.register_script(self._CAS_SCRIPT)
        self._update_hash = self.client.register_script(self._UPDATE_HASH_SCRIPT)
        self._record_failure = self.client.register_script(self._RECORD_FAILURE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity at startup."""
        # A short-lived sync client avoids binding the async pool to a
        # temporary event loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _flatten(mapping: Mapping[str, str]) -> List[str]:
        flat: List[str] = []
        for field, value in mapping.items():
            flat.extend((field, str(value)))
        return flat

    async def incr_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        count, ttl_ms = await self._incr_window(keys=[key], args=[int(window_seconds * 1000)])
        return int(count), max(1, -(-int(ttl_ms) // 1000))

    async def create_hash(
        self,
        key: str,
        mapping: Mapping[str, str],
        ttl_seconds: int,
        *,
        index_key: Optional[str] = None,
    ) -> bool:
        keys = [key] + ([index_key] if index_key else [])
        member = key.rsplit(":", 1)[-1]
        result = await self._create_hash(
            keys=keys, args=[int(ttl_seconds), member, *self._flatten(mapping)]
        )
        return bool(int(result))

    async def get_hash(self, key: str) -> Optional[Dict[str, str]]:
        data = await self.client.hgetall(key)
        return data or None

    async def compare_and_swap(
        self,
        key: str,
        expected: Mapping[str, str],
        updates: Mapping[str, str],
        *,
        ttl_seconds: Optional[int] = None,
    ) -> CasResult:
        args = [len(expected), int(ttl_seconds or 0), *self._flatten(expected), *self._flatten(updates)]
        result = int(await self._cas(keys=[key], args=args))
        if result == -1:
            return CasResult.MISSING
        return CasResult.SWAPPED if result == 1 else CasResult.MISMATCH

    async def update_hash(self, key: str, updates: Mapping[str, str]) -> bool:
        if not updates:
            return await self.exists(key)
        result = await self._update_hash(keys=[key], args=self._flatten(updates))
        return bool(int(result))

    async def record_failure(
        self,
        counter_key: str,
        lock_key: str,
        threshold: int,
        lock_seconds: int,
        counter_ttl: int,
    ) -> Tuple[bool, int]:
        result = await self._record_failure(
            keys=[lock_key, counter_key],
            args=[int(threshold), int(lock_seconds), int(counter_ttl)],
        )
        return bool(int(result[0])), int(result[1])

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def ttl(self, key: str) -> int:
        remaining = await self.client.ttl(key)
        # -2: missing, -1: no expiry
        return max(0, int(remaining))

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=int(ttl_seconds))

    async def pop(self, key: str) -> Optional[str]:
        return await self.client.getdel(key)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def set_members(self, key: str) -> Set[str]:
        return set(await self.client.smembers(key))

    async def set_remove(self, key: str, member: str) -> None:
        await self.client.srem(key, member)

    async def push_bounded(
        self, key: str, value: str, max_len: int, ttl_seconds: Optional[int] = None
    ) -> None:
        pipe = self.client.pipeline(transaction=True)
        pipe.lrem(key, 0, value)
        pipe.lpush(key, value)
        pipe.ltrim(key, 0, max_len - 1)
        if ttl_seconds:
            pipe.expire(key, int(ttl_seconds))
        await pipe.execute()

    async def list_range(self, key: str, limit: int) -> List[str]:
        return list(await self.client.lrange(key, 0, limit - 1))

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()


__all__ = ["RedisStore"]
