from __future__ import annotations

import asyncio
import fnmatch
import json
import threading
import time
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Union

from devconnect.logging import get_logger

logger = get_logger(__name__)


class MemorySubscription:
    """Pattern subscription fed by :meth:`MemoryCache.publish`."""

    def __init__(self, cache: "MemoryCache", pattern: str) -> None:
        self._cache = cache
        self.pattern = pattern
        self.loop = asyncio.get_running_loop()
        self.queue: asyncio.Queue[Tuple[str, str]] = asyncio.Queue()

    def __aiter__(self) -> AsyncIterator[Tuple[str, str]]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Tuple[str, str]]:
        while True:
            yield await self.queue.get()

    def deliver(self, channel: str, data: str) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self.loop:
            self.queue.put_nowait((channel, data))
        elif not self.loop.is_closed():
            self.loop.call_soon_threadsafe(self.queue.put_nowait, (channel, data))
        else:
            logger.debug("subscription_loop_closed", pattern=self.pattern, channel=channel)

    async def close(self) -> None:
        self._cache._unsubscribe(self)


class MemoryCache:
    """In-process stand-in for :class:`RedisCache`.

    Used under ``TEST_MODE`` or ``ALLOW_REDIS_FALLBACK_DEV``. Keys expire
    lazily on read. Publish is delivered to subscribers on whichever event
    loop created them, so requests served from other threads still reach the
    realtime gateway.
    """

    def __init__(self, *, clock=time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._values: Dict[str, Tuple[str, Optional[float]]] = {}
        self._rate_limits: Dict[str, Tuple[float, float]] = {}
        self._subscriptions: List[MemorySubscription] = []

    def verify_connection(self) -> None:
        return None

    def _live_value(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._values.pop(key, None)
            return None
        return value

    # key/value
    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live_value(key)

    async def set(self, key: str, value: str, *, ex: Optional[int] = None) -> None:
        expires_at = self._clock() + ex if ex else None
        with self._lock:
            self._values[key] = (value, expires_at)

    async def delete(self, key: str) -> int:
        with self._lock:
            existed = self._live_value(key) is not None
            self._values.pop(key, None)
        return int(existed)

    async def get_json(self, key: str) -> Optional[Any]:
        cached = await self.get(key)
        if not cached:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None

    async def set_json(self, key: str, value: Any, *, ex: Optional[int] = None) -> None:
        await self.set(key, json.dumps(value, default=str), ex=ex)

    # rate limits
    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
    ) -> Union[bool, Tuple[bool, int, int]]:
        now = self._clock()
        refill_rate = float(limit) / float(window_seconds)
        with self._lock:
            tokens, last_ts = self._rate_limits.get(key, (float(limit), now))
            elapsed = max(0.0, now - last_ts)
            tokens = min(float(limit), tokens + elapsed * refill_rate)
            allowed = tokens >= 1
            if allowed:
                tokens -= 1
            self._rate_limits[key] = (tokens, now)
        reset_seconds = (
            int((1 - tokens) / refill_rate) if not allowed and refill_rate > 0 else 0
        )
        if return_remaining:
            return (allowed, int(tokens), reset_seconds)
        return allowed

    # pub/sub
    async def publish(self, channel: str, data: str) -> int:
        with self._lock:
            targets = [
                sub
                for sub in self._subscriptions
                if fnmatch.fnmatchcase(channel, sub.pattern)
            ]
        for sub in targets:
            sub.deliver(channel, data)
        return len(targets)

    async def psubscribe(self, pattern: str) -> MemorySubscription:
        subscription = MemorySubscription(self, pattern)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: MemorySubscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    async def close(self) -> None:
        with self._lock:
            self._subscriptions.clear()
            self._values.clear()
