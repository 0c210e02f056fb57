from __future__ import annotations

import threading
import uuid
from typing import Dict, Iterable, List, Optional, Sequence

from devconnect.logging import get_logger
from devconnect.storage.errors import (
    ConstraintViolation,
    DuplicateEntry,
    MissingReference,
)
from devconnect.storage.models import (
    Chat,
    Comment,
    Message,
    Post,
    Reply,
    User,
    utcnow,
)


class MemoryStore:
    """In-process backing store used by the test suite and local development.

    Every mutating operation runs under a single re-entrant lock so toggles,
    set-adds and the two-sided follow update are atomic with respect to
    concurrent requests.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.chats: Dict[str, Chat] = {}
        # chat id -> messages in insertion order
        self.chat_messages: Dict[str, List[Message]] = {}
        self.messages: Dict[str, Message] = {}
        self.posts: Dict[str, Post] = {}
        self._post_order: List[str] = []
        # RLock so helpers can re-acquire inside an outer operation
        self._data_lock = threading.RLock()

    # user / auth
    def create_user(
        self,
        username: str,
        email: str,
        *,
        avatar_url: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            for existing in self.users.values():
                if existing.email == email:
                    raise DuplicateEntry("email already exists", {"field": "email"})
                if existing.username == username:
                    raise DuplicateEntry(
                        "username already exists", {"field": "username"}
                    )
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                avatar_url=avatar_url,
            )
            self.users[user.id] = user
            return user

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise MissingReference(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def find_user(
        self, *, username: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[User]:
        """Return the first user whose username or email matches."""
        with self._data_lock:
            for user in self.users.values():
                if (username and user.username == username) or (
                    email and user.email == email
                ):
                    return user
            return None

    def get_users(self, user_ids: Iterable[str]) -> List[User]:
        with self._data_lock:
            return [self.users[uid] for uid in user_ids if uid in self.users]

    def list_suggestions(self, user_id: str, limit: int = 10) -> List[User]:
        with self._data_lock:
            me = self.users.get(user_id)
            following = me.following if me else set()
            return [
                u
                for u in self.users.values()
                if u.id != user_id and u.id not in following
            ][:limit]

    # social graph
    def add_follow(self, follower_id: str, followee_id: str) -> bool:
        """Record ``follower -> followee`` on both sides; False if already present."""
        if follower_id == followee_id:
            raise ConstraintViolation("cannot follow self", {"user_id": follower_id})
        with self._data_lock:
            follower = self.users.get(follower_id)
            followee = self.users.get(followee_id)
            if not follower or not followee:
                raise MissingReference(
                    "follow target missing",
                    {"follower_id": follower_id, "followee_id": followee_id},
                )
            if followee_id in follower.following and follower_id in followee.followers:
                return False
            follower.following.add(followee_id)
            followee.followers.add(follower_id)
            return True

    def remove_follow(self, follower_id: str, followee_id: str) -> bool:
        with self._data_lock:
            follower = self.users.get(follower_id)
            followee = self.users.get(followee_id)
            if not follower or followee_id not in follower.following:
                return False
            follower.following.discard(followee_id)
            if followee:
                followee.followers.discard(follower_id)
            return True

    def reconcile_follow_graph(self) -> int:
        """Make followers/following mutually consistent. Returns edges repaired."""
        repaired = 0
        with self._data_lock:
            for user in self.users.values():
                for target_id in list(user.following):
                    target = self.users.get(target_id)
                    if target is None or target_id == user.id:
                        user.following.discard(target_id)
                        repaired += 1
                    elif user.id not in target.followers:
                        target.followers.add(user.id)
                        repaired += 1
                for source_id in list(user.followers):
                    source = self.users.get(source_id)
                    if source is None or source_id == user.id:
                        user.followers.discard(source_id)
                        repaired += 1
                    elif user.id not in source.following:
                        source.following.add(user.id)
                        repaired += 1
        if repaired:
            self.logger.info("follow_graph_reconciled", repaired=repaired)
        return repaired

    # chat
    def create_chat(
        self,
        participants: Sequence[str],
        *,
        is_group: bool = False,
        group_name: Optional[str] = None,
    ) -> Chat:
        with self._data_lock:
            missing = [uid for uid in participants if uid not in self.users]
            if missing:
                raise MissingReference("chat participant missing", {"user_ids": missing})
            chat = Chat(
                id=str(uuid.uuid4()),
                participants=list(dict.fromkeys(participants)),
                is_group=is_group,
                group_name=group_name,
            )
            self.chats[chat.id] = chat
            self.chat_messages[chat.id] = []
            return chat

    def get_chat(self, chat_id: str) -> Optional[Chat]:
        with self._data_lock:
            return self.chats.get(chat_id)

    def list_chats_for_user(self, user_id: str) -> List[Chat]:
        with self._data_lock:
            chats = [c for c in self.chats.values() if user_id in c.participants]
        chats.sort(key=lambda c: c.updated_at, reverse=True)
        return chats

    def set_last_message(self, chat_id: str, message_id: str) -> None:
        with self._data_lock:
            chat = self.chats.get(chat_id)
            if not chat:
                raise MissingReference("chat not found", {"chat_id": chat_id})
            chat.last_message_id = message_id
            chat.updated_at = utcnow()

    def reconcile_chat_pointers(self) -> int:
        """Point every chat's ``last_message_id`` at its newest message."""
        repaired = 0
        with self._data_lock:
            for chat_id, chat in self.chats.items():
                msgs = self.chat_messages.get(chat_id) or []
                newest = msgs[-1] if msgs else None
                expected = newest.id if newest else None
                if chat.last_message_id != expected:
                    chat.last_message_id = expected
                    if newest:
                        chat.updated_at = newest.created_at
                    repaired += 1
        if repaired:
            self.logger.info("chat_pointers_reconciled", repaired=repaired)
        return repaired

    def create_message(self, chat_id: str, sender_id: str, text: str) -> Message:
        with self._data_lock:
            if chat_id not in self.chats:
                raise MissingReference("chat not found", {"chat_id": chat_id})
            msg = Message(
                id=str(uuid.uuid4()),
                chat_id=chat_id,
                sender_id=sender_id,
                text=text,
                read_by=[sender_id],
            )
            self.chat_messages.setdefault(chat_id, []).append(msg)
            self.messages[msg.id] = msg
            return msg

    def get_message(self, message_id: str) -> Optional[Message]:
        with self._data_lock:
            return self.messages.get(message_id)

    def list_messages(self, chat_id: str, *, skip: int = 0, limit: int = 20) -> List[Message]:
        """Messages of ``chat_id`` newest first, after skipping ``skip``."""
        with self._data_lock:
            msgs = list(reversed(self.chat_messages.get(chat_id, [])))
        return msgs[skip : skip + limit]

    def add_message_reader(self, message_id: str, user_id: str) -> Optional[Message]:
        with self._data_lock:
            msg = self.messages.get(message_id)
            if not msg:
                return None
            if user_id not in msg.read_by:
                msg.read_by.append(user_id)
            return msg

    # posts
    def create_post(
        self,
        user_id: str,
        content: str,
        *,
        code_snippet: Optional[Dict[str, str]] = None,
        images: Optional[List[str]] = None,
    ) -> Post:
        with self._data_lock:
            if user_id not in self.users:
                raise MissingReference("post author missing", {"user_id": user_id})
            post = Post(
                id=str(uuid.uuid4()),
                user_id=user_id,
                content=content,
                code_snippet=code_snippet,
                images=list(images or []),
            )
            self.posts[post.id] = post
            self._post_order.append(post.id)
            return post

    def get_post(self, post_id: str) -> Optional[Post]:
        with self._data_lock:
            return self.posts.get(post_id)

    def list_posts(
        self, *, skip: int = 0, limit: int = 10, user_id: Optional[str] = None
    ) -> List[Post]:
        with self._data_lock:
            ordered = [self.posts[pid] for pid in reversed(self._post_order)]
        if user_id:
            ordered = [p for p in ordered if p.user_id == user_id]
        return ordered[skip : skip + limit]

    def delete_post(self, post_id: str) -> bool:
        with self._data_lock:
            if self.posts.pop(post_id, None) is None:
                return False
            self._post_order.remove(post_id)
            return True

    def toggle_post_like(self, post_id: str, user_id: str) -> Optional[tuple[Post, bool]]:
        """Flip ``user_id``'s like on a post. Returns ``(post, liked)``."""
        with self._data_lock:
            post = self.posts.get(post_id)
            if not post:
                return None
            if user_id in post.likes:
                post.likes = [uid for uid in post.likes if uid != user_id]
                liked = False
            else:
                post.likes.append(user_id)
                liked = True
            post.updated_at = utcnow()
            return post, liked

    def add_comment(self, post_id: str, user_id: str, text: str) -> Optional[Post]:
        with self._data_lock:
            post = self.posts.get(post_id)
            if not post:
                return None
            post.comments.append(Comment(id=str(uuid.uuid4()), user_id=user_id, text=text))
            post.updated_at = utcnow()
            return post

    def delete_comment(self, post_id: str, comment_id: str) -> Optional[Post]:
        with self._data_lock:
            post = self.posts.get(post_id)
            if not post:
                return None
            post.comments = [c for c in post.comments if c.id != comment_id]
            post.updated_at = utcnow()
            return post

    def add_reply(
        self, post_id: str, comment_id: str, user_id: str, text: str
    ) -> Optional[Post]:
        with self._data_lock:
            post = self.posts.get(post_id)
            comment = post.find_comment(comment_id) if post else None
            if not comment:
                return None
            comment.replies.append(Reply(id=str(uuid.uuid4()), user_id=user_id, text=text))
            post.updated_at = utcnow()
            return post

    def toggle_comment_like(
        self, post_id: str, comment_id: str, user_id: str
    ) -> Optional[tuple[Post, bool]]:
        with self._data_lock:
            post = self.posts.get(post_id)
            comment = post.find_comment(comment_id) if post else None
            if not comment:
                return None
            if user_id in comment.likes:
                comment.likes = [uid for uid in comment.likes if uid != user_id]
                liked = False
            else:
                comment.likes.append(user_id)
                liked = True
            return post, liked

    def verify_connection(self) -> None:
        return None
