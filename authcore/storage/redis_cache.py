from __future__ import annotations

import hashlib
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for fixed-window rate limit counters."""

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds

    # Atomic increment; the window's expiry is set only by the first hit so
    # later hits never extend it.
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local window_ms = tonumber(ARGV[1])

local count = redis.call('INCR', key)
if count == 1 then
  redis.call('PEXPIRE', key, window_ms)
end
local ttl = redis.call('PTTL', key)
if ttl < 0 then
  redis.call('PEXPIRE', key, window_ms)
  ttl = window_ms
end
return {count, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Short-lived synchronous client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash identifier components so delimiters in them cannot collide."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def hit_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """Record one attempt; returns (attempt_count, window_ttl_ms)."""

        count, ttl_ms = await self._fixed_window(
            keys=[self._normalize_rate_key(key)],
            args=[int(window_seconds * 1000)],
        )
        return int(count), int(ttl_ms)

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis client behind the same awaitable interface.

    Used where no long-lived event loop exists (pytest, scripts) so the
    connection is never bound to a loop that has since closed.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT,
    ):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self._sync_client.register_script(
            RedisCache._FIXED_WINDOW_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def hit_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        count, ttl_ms = self._fixed_window(
            keys=[RedisCache._normalize_rate_key(key)],
            args=[int(window_seconds * 1000)],
        )
        return int(count), int(ttl_ms)

    async def close(self) -> None:
        self._sync_client.close()
