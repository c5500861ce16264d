from __future__ import annotations

import hashlib
import time
from typing import Optional, Sequence, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

RateLimitResult = Union[bool, Tuple[bool, int, int]]

# refill then take one token, atomically; returns {allowed, tokens, reset_after}
_TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])
if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

tokens = math.min(capacity, tokens + math.max(0, now - last) * refill_rate)

if tokens < 1 then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((1 - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - 1
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
redis.call('EXPIRE', key, math.max(math.ceil(capacity / refill_rate), 1))
return {1, tokens, 0}
"""


def rate_key(key: str) -> str:
    """Hash caller-supplied keys (client IPs) into a fixed-width Redis key."""
    return "vib3:rate:" + hashlib.sha256(key.encode()).hexdigest()


def csrf_key(session_id: str) -> str:
    return f"vib3:csrf:{session_id}"


def _bucket_args(limit: int, window_seconds: int) -> list:
    return [time.time(), float(limit) / float(window_seconds), limit]


def _bucket_result(raw: Sequence, return_remaining: bool) -> RateLimitResult:
    allowed, tokens, reset_after = raw
    allowed = bool(int(allowed))
    if not return_remaining:
        return allowed
    return allowed, max(0, int(float(tokens))), int(reset_after or 0)


class RedisCache:
    """Async Redis access for CSRF tokens and the per-IP API token bucket."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(_TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        # short-lived sync client so the async pool is not bound to a startup loop
        client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            client.ping()
        finally:
            client.close()

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, return_remaining: bool = False
    ) -> RateLimitResult:
        """Take one token from the bucket for ``key``.

        The bucket holds ``limit`` tokens and refills fully over
        ``window_seconds``. With ``return_remaining`` the result is
        ``(allowed, remaining, reset_seconds)``.
        """
        raw = await self._token_bucket(
            keys=[rate_key(key)], args=_bucket_args(limit, window_seconds)
        )
        return _bucket_result(raw, return_remaining)

    async def set_csrf_token(self, session_id: str, token: str, ttl_seconds: int) -> None:
        await self.client.set(csrf_key(session_id), token, ex=max(1, ttl_seconds))

    async def get_csrf_token(self, session_id: str) -> Optional[str]:
        return await self.client.get(csrf_key(session_id))

    async def delete_csrf_token(self, session_id: str) -> None:
        await self.client.delete(csrf_key(session_id))

    async def close(self) -> None:
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Same awaitable surface as ``RedisCache`` over a blocking client.

    Used under TEST_MODE so per-test event loops never own the connection pool.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self._sync_client.register_script(_TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, return_remaining: bool = False
    ) -> RateLimitResult:
        raw = self._token_bucket(keys=[rate_key(key)], args=_bucket_args(limit, window_seconds))
        return _bucket_result(raw, return_remaining)

    async def set_csrf_token(self, session_id: str, token: str, ttl_seconds: int) -> None:
        self._sync_client.set(csrf_key(session_id), token, ex=max(1, ttl_seconds))

    async def get_csrf_token(self, session_id: str) -> Optional[str]:
        return self._sync_client.get(csrf_key(session_id))

    async def delete_csrf_token(self, session_id: str) -> None:
        self._sync_client.delete(csrf_key(session_id))

    async def close(self) -> None:
        self._sync_client.close()
