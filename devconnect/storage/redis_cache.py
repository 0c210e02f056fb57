from __future__ import annotations

import hashlib
import json
import time
from typing import Any, AsyncIterator, Optional, Tuple, Union

import redis.asyncio as aioredis


class RedisSubscription:
    """Pattern subscription over a dedicated pub/sub connection.

    The ``PSUBSCRIBE`` is issued by :meth:`RedisCache.psubscribe` before this
    object is returned, so nothing published afterwards is missed.
    """

    def __init__(self, pubsub: aioredis.client.PubSub, pattern: str):
        self._pubsub = pubsub
        self.pattern = pattern

    def __aiter__(self) -> AsyncIterator[Tuple[str, str]]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Tuple[str, str]]:
        async for raw in self._pubsub.listen():
            if raw.get("type") != "pmessage":
                continue
            yield raw["channel"], raw["data"]

    async def close(self) -> None:
        await self._pubsub.punsubscribe(self.pattern)
        await self._pubsub.aclose()


class RedisCache:
    """Thin Redis wrapper for the session registry, rate limits, profile cache
    and the chat pub/sub channel."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic refill + consume
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
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    # key/value
    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, *, ex: Optional[int] = None) -> None:
        await self.client.set(key, value, ex=ex)

    async def delete(self, key: str) -> int:
        return await self.client.delete(key)

    async def get_json(self, key: str) -> Optional[Any]:
        cached = await self.client.get(key)
        if not cached:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None

    async def set_json(self, key: str, value: Any, *, ex: Optional[int] = None) -> None:
        await self.client.set(key, json.dumps(value, default=str), ex=ex)

    # rate limits
    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate keys so client-supplied components cannot collide."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Check rate limit using a Redis-backed token bucket."""

        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, 1],
        )

        allowed_bool = bool(int(allowed))
        remaining = max(0, int(float(tokens)))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    # pub/sub
    async def publish(self, channel: str, data: str) -> int:
        return await self.client.publish(channel, data)

    async def psubscribe(self, pattern: str) -> RedisSubscription:
        pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        await pubsub.psubscribe(pattern)
        return RedisSubscription(pubsub, pattern)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
