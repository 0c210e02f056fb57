from __future__ import annotations

from typing import Optional, Protocol

from devconnect.logging import get_logger

logger = get_logger(__name__)


class KeyValueCache(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, *, ex: Optional[int] = None) -> None: ...

    async def delete(self, key: str) -> int: ...


def session_key(user_id: str) -> str:
    return f"user:{user_id}:token"


class SessionRegistry:
    """One live token per user, held in the cache under ``user:<id>:token``.

    Writing a new token overwrites the previous one, which is what makes a
    second login invalidate the first. Entries expire with the token.
    """

    def __init__(self, cache: KeyValueCache) -> None:
        self.cache = cache

    async def set(self, user_id: str, token: str, ttl_seconds: int) -> None:
        await self.cache.set(session_key(user_id), token, ex=max(1, int(ttl_seconds)))

    async def get(self, user_id: str) -> Optional[str]:
        return await self.cache.get(session_key(user_id))

    async def delete(self, user_id: str) -> None:
        removed = await self.cache.delete(session_key(user_id))
        if not removed:
            logger.debug("session_delete_missing", user_id=user_id)
