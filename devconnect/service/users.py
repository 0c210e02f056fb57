from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

from devconnect.logging import get_logger
from devconnect.service.errors import NotFoundError
from devconnect.storage.models import User

logger = get_logger(__name__)


class UserStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...


class JsonCache(Protocol):
    async def get_json(self, key: str) -> Optional[Any]: ...

    async def set_json(self, key: str, value: Any, *, ex: Optional[int] = None) -> None: ...

    async def delete(self, key: str) -> int: ...


def profile_key(user_id: str) -> str:
    return f"user:{user_id}:profile"


def public_profile(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "avatarUrl": user.avatar_url,
        "followers": sorted(user.followers),
        "following": sorted(user.following),
        "createdAt": user.created_at.isoformat(),
    }


class UserService:
    """Public profiles, cached for ``ttl_seconds`` under ``user:<id>:profile``."""

    def __init__(self, store: UserStore, cache: JsonCache, *, ttl_seconds: int = 3600) -> None:
        self.store = store
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    async def get_profile(self, user_id: str) -> Dict[str, Any]:
        cached = await self.cache.get_json(profile_key(user_id))
        if cached:
            return cached
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        profile = public_profile(user)
        await self.cache.set_json(profile_key(user_id), profile, ex=self.ttl_seconds)
        return profile

    async def evict(self, *user_ids: str) -> None:
        for user_id in user_ids:
            try:
                await self.cache.delete(profile_key(user_id))
            except Exception as exc:
                # stale profile lives until its TTL
                logger.warning("profile_evict_failed", user_id=user_id, error=str(exc))
