from __future__ import annotations

import hashlib
import time
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for chat rate limits and token counters."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Fixed-window request counter: rejected hits are not counted
    _FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])

local current = tonumber(redis.call('GET', key) or '0')
if current >= limit then
  local ttl = redis.call('PTTL', key)
  if ttl < 0 then
    redis.call('PEXPIRE', key, window_ms)
    ttl = window_ms
  end
  return {0, current, ttl}
end

local count = redis.call('INCR', key)
local ttl = redis.call('PTTL', key)
if ttl < 0 then
  redis.call('PEXPIRE', key, window_ms)
  ttl = window_ms
end
return {1, count, ttl}
"""

    # Monotonic counter whose window starts at the first increment
    _COUNTER_SCRIPT = """
local key = KEYS[1]
local amount = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])

local total = redis.call('INCRBY', key, amount)
local ttl = redis.call('PTTL', key)
if ttl < 0 then
  redis.call('PEXPIRE', key, window_ms)
  ttl = window_ms
end
return {total, ttl}
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
        self._counter = self.client.register_script(self._COUNTER_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_key(namespace: str, key: str) -> str:
        """Hash key components so user ids cannot inject delimiters."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"{namespace}:{digest}"

    async def hit_window(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        """Count one request against a fixed window.

        Returns:
            (allowed, count in window, reset timestamp in epoch milliseconds)
        """
        safe_key = self._normalize_key("rate", key)
        allowed, count, ttl_ms = await self._fixed_window(
            keys=[safe_key], args=[limit, window_seconds * 1000]
        )
        now_ms = int(time.time() * 1000)
        return bool(int(allowed)), int(count), now_ms + max(0, int(ttl_ms))

    async def incr_counter(self, key: str, amount: int, window_seconds: int) -> int:
        safe_key = self._normalize_key("counter", key)
        total, _ttl = await self._counter(
            keys=[safe_key], args=[max(0, int(amount)), window_seconds * 1000]
        )
        return int(total)

    async def get_counter(self, key: str) -> int:
        value: Optional[str] = await self.client.get(self._normalize_key("counter", key))
        return int(value) if value else 0

    async def close(self) -> None:
        await self.client.aclose()
