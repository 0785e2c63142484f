from __future__ import annotations

import hashlib
import time
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

# Atomic refill + consume; returns {allowed, tokens_left, reset_after_seconds}
_TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

RateLimitResult = Union[bool, Tuple[bool, int, int]]


def _normalize_rate_key(key: str) -> str:
    """Hash rate-limit subjects so client-supplied values cannot collide on delimiters."""
    return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"


def _unpack(result, return_remaining: bool) -> RateLimitResult:
    allowed, tokens, reset_after = result
    allowed_bool = bool(int(allowed))
    if return_remaining:
        return (allowed_bool, max(0, int(tokens)), int(reset_after) if reset_after else 0)
    return allowed_bool


class RedisCache:
    """Async Redis wrapper backing login and registration rate limits."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(_TOKEN_BUCKET_SCRIPT)
        self._socket_timeout = socket_timeout

    def verify_connection(self) -> None:
        """Assert Redis connectivity with a short-lived sync client."""
        probe = Redis.from_url(
            self.redis_url,
            socket_timeout=self._socket_timeout,
            socket_connect_timeout=self._socket_timeout,
        )
        try:
            probe.ping()
        finally:
            probe.close()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateLimitResult:
        refill_rate = float(limit) / float(window_seconds)
        result = await self._token_bucket(
            keys=[_normalize_rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return _unpack(result, return_remaining)

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis client exposing the async interface of RedisCache.

    Used in TEST_MODE so the client is not bound to whichever event loop the
    test client happens to run on.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(_TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateLimitResult:
        refill_rate = float(limit) / float(window_seconds)
        result = self._token_bucket(
            keys=[_normalize_rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return _unpack(result, return_remaining)

    async def close(self) -> None:
        self.client.close()
