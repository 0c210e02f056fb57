from __future__ import annotations

import asyncio
import threading
from typing import Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from devconnect.config import get_settings, reset_settings_cache
from devconnect.logging import get_logger
from devconnect.service.auth import AuthService, RequestAuthenticator
from devconnect.service.chat import ChatService
from devconnect.service.fanout import FanoutChannel
from devconnect.service.posts import PostService
from devconnect.service.realtime import RealtimeGateway
from devconnect.service.sessions import SessionRegistry
from devconnect.service.social import SocialService
from devconnect.service.tokens import TokenIssuer
from devconnect.service.users import UserService
from devconnect.storage.memory import MemoryStore
from devconnect.storage.memory_cache import MemoryCache
from devconnect.storage.postgres import PostgresStore
from devconnect.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        cache: Union[RedisCache, MemoryCache, None] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                candidate = RedisCache(self.settings.redis_url)
                candidate.verify_connection()
                cache = candidate
            except Exception as exc:
                redis_error = exc

        if cache is None:
            if (
                not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for sessions, rate limits and chat fan-out; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; sessions, rate limits "
                    "and chat fan-out are process-local."
                ),
                mode=fallback_mode,
            )
            cache = MemoryCache()
        self.cache = cache
        self.redis_enabled = isinstance(cache, RedisCache)

        self.sessions = SessionRegistry(self.cache)
        self.tokens = TokenIssuer(self.settings, self.sessions)
        self.authenticator = RequestAuthenticator(self.tokens, self.sessions)
        self.auth = AuthService(self.store, self.tokens, self.sessions, self.settings)
        self.fanout = FanoutChannel(self.cache)
        self.chat = ChatService(
            self.store,
            self.fanout,
            page_size=self.settings.messages_page_size,
            max_page_size=self.settings.max_page_size,
        )
        self.posts = PostService(self.store, page_size=self.settings.posts_page_size)
        self.users = UserService(
            self.store, self.cache, ttl_seconds=self.settings.profile_cache_ttl_seconds
        )
        self.social = SocialService(
            self.store, self.users, suggestions_limit=self.settings.suggestions_limit
        )
        self.gateway = RealtimeGateway(self.tokens, self.chat, self.fanout)

        logger.info(
            "runtime_initialized",
            redis_enabled=self.redis_enabled,
            token_ttl_seconds=self.settings.token_ttl_seconds,
        )

    async def close(self) -> None:
        try:
            await self.gateway.stop()
        finally:
            try:
                await self.cache.close()
            finally:
                if isinstance(self.store, PostgresStore):
                    self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the first check avoids the lock once the
    runtime exists, the second prevents two threads creating it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
) -> Tuple[bool, int, int]:
    """Token-bucket rate limit through whichever cache the runtime holds.

    Args:
        runtime: Runtime instance with cache
        key: Rate limit key
        limit: Maximum requests per window; zero or less disables the limit
        window_seconds: Window duration in seconds

    Returns:
        ``(allowed, remaining, reset_seconds)``
    """
    if limit <= 0:
        return (True, 0, 0)
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    return await runtime.cache.check_rate_limit(
        key, limit, window_seconds, return_remaining=True
    )
