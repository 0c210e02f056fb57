from __future__ import annotations

import uuid
from typing import Any, Dict, Iterable, List, Optional, Protocol

from devconnect.logging import get_logger
from devconnect.service.errors import NotFoundError, ValidationError
from devconnect.service.tokens import Identity
from devconnect.service.users import UserService
from devconnect.storage.errors import MissingReference
from devconnect.storage.models import User

logger = get_logger(__name__)


class SocialStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_users(self, user_ids: Iterable[str]) -> List[User]: ...

    def list_suggestions(self, user_id: str, limit: int = 10) -> List[User]: ...

    def add_follow(self, follower_id: str, followee_id: str) -> bool: ...

    def remove_follow(self, follower_id: str, followee_id: str) -> bool: ...

    def reconcile_follow_graph(self) -> int: ...


def is_valid_user_id(value: Optional[str]) -> bool:
    if not value or value == "undefined":
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def user_summary(user: User) -> Dict[str, Any]:
    return {"id": user.id, "username": user.username, "email": user.email}


class SocialService:
    """Follow graph. Both sides of an edge are written by one store call."""

    def __init__(
        self,
        store: SocialStore,
        profiles: UserService,
        *,
        suggestions_limit: int = 10,
    ) -> None:
        self.store = store
        self.profiles = profiles
        self.suggestions_limit = suggestions_limit

    def _require_target(self, user_id: str, action: str) -> User:
        if not is_valid_user_id(user_id):
            raise ValidationError(f"Error {action} user", error="Invalid user ID")
        target = self.store.get_user(user_id)
        if not target:
            raise NotFoundError("User not found")
        return target

    def _require_self(self, identity: Identity) -> User:
        me = self.store.get_user(identity.id)
        if not me:
            raise NotFoundError("Current user not found")
        return me

    async def follow(self, identity: Identity, user_id: str) -> None:
        target = self._require_target(user_id, "following")
        me = self._require_self(identity)
        if target.id == me.id:
            raise ValidationError("You cannot follow yourself.")
        try:
            added = self.store.add_follow(me.id, target.id)
        except MissingReference as exc:
            raise NotFoundError("User not found", error=exc.message)
        if not added:
            raise ValidationError("You are already following this user.")
        await self.profiles.evict(me.id, target.id)
        logger.info("user_followed", follower_id=me.id, followee_id=target.id)

    async def unfollow(self, identity: Identity, user_id: str) -> None:
        target = self._require_target(user_id, "unfollowing")
        me = self._require_self(identity)
        if not self.store.remove_follow(me.id, target.id):
            raise ValidationError("You are not following this user.")
        await self.profiles.evict(me.id, target.id)
        logger.info("user_unfollowed", follower_id=me.id, followee_id=target.id)

    def followers(self, identity: Identity) -> List[Dict[str, Any]]:
        me = self._require_self(identity)
        return [user_summary(u) for u in self.store.get_users(sorted(me.followers))]

    def following(self, identity: Identity) -> List[Dict[str, Any]]:
        me = self._require_self(identity)
        return [user_summary(u) for u in self.store.get_users(sorted(me.following))]

    def suggestions(self, identity: Identity) -> List[Dict[str, Any]]:
        self._require_self(identity)
        users = self.store.list_suggestions(identity.id, limit=self.suggestions_limit)
        return [user_summary(u) for u in users]

    def reconcile(self) -> int:
        return self.store.reconcile_follow_graph()
