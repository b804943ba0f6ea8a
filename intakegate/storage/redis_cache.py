from __future__ import annotations

import functools
import json
import secrets
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import TimeoutError as RedisTimeoutError

from intakegate.storage.errors import CacheTimeout

# (allowed, current bucket count, previous bucket count)
WindowCounts = Tuple[bool, int, int]


def _translate_timeouts(func):
    """Surface socket timeouts from either client as ``CacheTimeout``."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except RedisTimeoutError as exc:
            raise CacheTimeout("cache did not answer in time") from exc

    return wrapper


class RedisCache:
    """Redis wrapper for progress documents, per-session locks, rate windows and recovery tokens."""

    # Sliding window over two fixed buckets: the previous bucket's count is
    # weighted by how much of it still overlaps the window.
    _SLIDING_WINDOW_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
local previous = tonumber(redis.call('GET', KEYS[2]) or '0')
local weight = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])
local ttl = tonumber(ARGV[3])

if previous * weight + current + 1 > limit then
  return {0, current, previous}
end

current = redis.call('INCR', KEYS[1])
redis.call('EXPIRE', KEYS[1], ttl)
return {1, current, previous}
"""

    # Only the holder of the lock token may release it
    _RELEASE_LOCK_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    _COUNTER_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
return {count, redis.call('TTL', KEYS[1])}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)
        self._release_lock = self.client.register_script(self._RELEASE_LOCK_SCRIPT)
        self._counter = self.client.register_script(self._COUNTER_SCRIPT)

    @staticmethod
    def progress_key(session_id: str) -> str:
        return f"session:progress:{session_id}"

    @staticmethod
    def lock_key(session_id: str) -> str:
        return f"session:lock:{session_id}"

    @staticmethod
    def recovery_key(token_hash: str) -> str:
        return f"recovery:{token_hash}"

    @staticmethod
    def recovery_counter_key(subject_digest: str) -> str:
        return f"recovery:requests:{subject_digest}"

    @staticmethod
    def _decode_progress(raw: Optional[str]) -> Optional[Tuple[int, Dict[str, Any]]]:
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            return int(data["version"]), dict(data["progress"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            # Unreadable entries count as a miss; the store is authoritative
            return None

    @staticmethod
    def _encode_progress(version: int, progress: Dict[str, Any]) -> str:
        return json.dumps({"version": version, "progress": progress}, separators=(",", ":"))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a temporary loop
        sync_client = Redis.from_url(
            self.redis_url, decode_responses=True, socket_timeout=self.socket_timeout
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @_translate_timeouts
    async def get_progress(self, session_id: str) -> Optional[Tuple[int, Dict[str, Any]]]:
        return self._decode_progress(await self.client.get(self.progress_key(session_id)))

    @_translate_timeouts
    async def set_progress(
        self, session_id: str, version: int, progress: Dict[str, Any], ttl_seconds: int
    ) -> None:
        await self.client.set(
            self.progress_key(session_id),
            self._encode_progress(version, progress),
            ex=max(1, ttl_seconds),
        )

    @_translate_timeouts
    async def delete_progress(self, session_id: str) -> None:
        await self.client.delete(self.progress_key(session_id))

    @_translate_timeouts
    async def acquire_session_lock(self, session_id: str, ttl_ms: int) -> Optional[str]:
        token = secrets.token_hex(16)
        acquired = await self.client.set(self.lock_key(session_id), token, nx=True, px=ttl_ms)
        return token if acquired else None

    @_translate_timeouts
    async def release_session_lock(self, session_id: str, token: str) -> bool:
        released = await self._release_lock(keys=[self.lock_key(session_id)], args=[token])
        return bool(int(released))

    @_translate_timeouts
    async def sliding_window_hit(
        self,
        current_key: str,
        previous_key: str,
        *,
        previous_weight: float,
        limit: int,
        ttl_seconds: int,
    ) -> WindowCounts:
        allowed, current, previous = await self._sliding_window(
            keys=[current_key, previous_key],
            args=[repr(previous_weight), limit, max(1, ttl_seconds)],
        )
        return bool(int(allowed)), int(current), int(previous)

    @_translate_timeouts
    async def store_recovery_token(self, token_hash: str, session_id: str, ttl_seconds: int) -> None:
        await self.client.set(self.recovery_key(token_hash), session_id, ex=max(1, ttl_seconds))

    @_translate_timeouts
    async def pop_recovery_token(self, token_hash: str) -> Optional[str]:
        """Atomically read and delete a recovery token so it can be redeemed once."""
        return await self.client.getdel(self.recovery_key(token_hash))

    @_translate_timeouts
    async def incr_recovery_requests(
        self, subject_digest: str, window_seconds: int
    ) -> Tuple[int, int]:
        """Count a recovery request; returns the count and seconds left in the window."""
        count, ttl = await self._counter(
            keys=[self.recovery_counter_key(subject_digest)], args=[max(1, window_seconds)]
        )
        return int(count), max(1, int(ttl))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()


class _SyncClientAdapter:
    """Adapter that wraps a sync Redis client with async method signatures.

    Lets tests inspect keys with ``await cache.client.get(...)`` whichever
    cache flavour the runtime picked.
    """

    def __init__(self, sync_client: Redis):
        self._sync = sync_client

    async def get(self, key: str) -> Optional[str]:
        return self._sync.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        return self._sync.set(key, value, ex=ex)

    async def delete(self, key: str) -> int:
        return self._sync.delete(key)

    async def exists(self, key: str) -> int:
        return self._sync.exists(key)

    async def ttl(self, key: str) -> int:
        return self._sync.ttl(key)


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes the same async methods as ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.client = _SyncClientAdapter(self._sync_client)
        self._sliding_window = self._sync_client.register_script(
            RedisCache._SLIDING_WINDOW_SCRIPT
        )
        self._release_lock = self._sync_client.register_script(RedisCache._RELEASE_LOCK_SCRIPT)
        self._counter = self._sync_client.register_script(RedisCache._COUNTER_SCRIPT)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    @_translate_timeouts
    async def get_progress(self, session_id: str) -> Optional[Tuple[int, Dict[str, Any]]]:
        return RedisCache._decode_progress(
            self._sync_client.get(RedisCache.progress_key(session_id))
        )

    @_translate_timeouts
    async def set_progress(
        self, session_id: str, version: int, progress: Dict[str, Any], ttl_seconds: int
    ) -> None:
        self._sync_client.set(
            RedisCache.progress_key(session_id),
            RedisCache._encode_progress(version, progress),
            ex=max(1, ttl_seconds),
        )

    @_translate_timeouts
    async def delete_progress(self, session_id: str) -> None:
        self._sync_client.delete(RedisCache.progress_key(session_id))

    @_translate_timeouts
    async def acquire_session_lock(self, session_id: str, ttl_ms: int) -> Optional[str]:
        token = secrets.token_hex(16)
        acquired = self._sync_client.set(
            RedisCache.lock_key(session_id), token, nx=True, px=ttl_ms
        )
        return token if acquired else None

    @_translate_timeouts
    async def release_session_lock(self, session_id: str, token: str) -> bool:
        released = self._release_lock(keys=[RedisCache.lock_key(session_id)], args=[token])
        return bool(int(released))

    @_translate_timeouts
    async def sliding_window_hit(
        self,
        current_key: str,
        previous_key: str,
        *,
        previous_weight: float,
        limit: int,
        ttl_seconds: int,
    ) -> WindowCounts:
        allowed, current, previous = self._sliding_window(
            keys=[current_key, previous_key],
            args=[repr(previous_weight), limit, max(1, ttl_seconds)],
        )
        return bool(int(allowed)), int(current), int(previous)

    @_translate_timeouts
    async def store_recovery_token(self, token_hash: str, session_id: str, ttl_seconds: int) -> None:
        self._sync_client.set(
            RedisCache.recovery_key(token_hash), session_id, ex=max(1, ttl_seconds)
        )

    @_translate_timeouts
    async def pop_recovery_token(self, token_hash: str) -> Optional[str]:
        return self._sync_client.getdel(RedisCache.recovery_key(token_hash))

    @_translate_timeouts
    async def incr_recovery_requests(
        self, subject_digest: str, window_seconds: int
    ) -> Tuple[int, int]:
        count, ttl = self._counter(
            keys=[RedisCache.recovery_counter_key(subject_digest)],
            args=[max(1, window_seconds)],
        )
        return int(count), max(1, int(ttl))

    async def close(self) -> None:
        self._sync_client.close()
