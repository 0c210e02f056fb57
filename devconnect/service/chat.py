from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from devconnect.logging import get_logger
from devconnect.service.errors import (
    AuthorizationError,
    DependencyError,
    NotFoundError,
    ValidationError,
)
from devconnect.service.fanout import (
    FanoutChannel,
    MessageRead,
    NewMessage,
    message_payload,
)
from devconnect.service.tokens import Identity
from devconnect.storage.errors import MissingReference
from devconnect.storage.models import Chat, Message, User

logger = get_logger(__name__)


class ConversationStore(Protocol):
    def get_users(self, user_ids: Iterable[str]) -> List[User]: ...

    def create_chat(
        self,
        participants: Sequence[str],
        *,
        is_group: bool = False,
        group_name: Optional[str] = None,
    ) -> Chat: ...

    def get_chat(self, chat_id: str) -> Optional[Chat]: ...

    def list_chats_for_user(self, user_id: str) -> List[Chat]: ...

    def set_last_message(self, chat_id: str, message_id: str) -> None: ...

    def reconcile_chat_pointers(self) -> int: ...

    def create_message(self, chat_id: str, sender_id: str, text: str) -> Message: ...

    def get_message(self, message_id: str) -> Optional[Message]: ...

    def list_messages(
        self, chat_id: str, *, skip: int = 0, limit: int = 20
    ) -> List[Message]: ...

    def add_message_reader(self, message_id: str, user_id: str) -> Optional[Message]: ...


def participant_summary(user: User) -> Dict[str, Any]:
    return {"id": user.id, "username": user.username, "avatarUrl": user.avatar_url}


class ChatService:
    """Conversations and the message delivery pipeline.

    A sent message is persisted, the conversation's last-message pointer is
    advanced, then a ``new-message`` event is published on ``chat:<id>``. The
    two writes are sequential; a pointer left stale by a failure between them
    is repaired by :meth:`reconcile`.
    """

    def __init__(
        self,
        store: ConversationStore,
        fanout: FanoutChannel,
        *,
        page_size: int = 20,
        max_page_size: int = 100,
    ) -> None:
        self.store = store
        self.fanout = fanout
        self.page_size = page_size
        self.max_page_size = max_page_size

    def _require_chat(self, chat_id: str) -> Chat:
        chat = self.store.get_chat(chat_id)
        if not chat:
            raise NotFoundError("Chat not found")
        return chat

    def _require_participant(self, chat_id: str, user_id: str) -> Chat:
        chat = self._require_chat(chat_id)
        if user_id not in chat.participants:
            raise AuthorizationError("Not a participant of this chat")
        return chat

    def is_participant(self, chat_id: str, user_id: str) -> bool:
        chat = self.store.get_chat(chat_id)
        return bool(chat and user_id in chat.participants)

    def create_chat(
        self,
        identity: Identity,
        participants: Optional[Sequence[str]],
        *,
        is_group: bool = False,
        group_name: Optional[str] = None,
    ) -> Chat:
        members = [str(p) for p in (participants or []) if p]
        if identity.id not in members:
            members.insert(0, identity.id)
        members = list(dict.fromkeys(members))
        if len(members) < 2:
            raise ValidationError("A chat needs at least one other participant")
        if is_group and not (group_name or "").strip():
            raise ValidationError("Group name is required for group chats")
        found = {u.id for u in self.store.get_users(members)}
        missing = [m for m in members if m not in found]
        if missing:
            raise NotFoundError("Participant not found", error=", ".join(missing))
        try:
            chat = self.store.create_chat(
                members,
                is_group=is_group,
                group_name=group_name if is_group else None,
            )
        except MissingReference as exc:
            raise NotFoundError("Participant not found", error=exc.message)
        logger.info("chat_created", chat_id=chat.id, participants=len(members))
        return chat

    async def send_message(self, identity: Identity, chat_id: str, text: Optional[str]) -> Message:
        if not text or not text.strip():
            raise ValidationError("Message text is required")
        self._require_participant(chat_id, identity.id)
        try:
            message = self.store.create_message(chat_id, identity.id, text)
            self.store.set_last_message(chat_id, message.id)
            await self.fanout.publish(chat_id, NewMessage(message=message_payload(message)))
        except Exception as exc:
            logger.error(
                "send_message_failed",
                chat_id=chat_id,
                user_id=identity.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise DependencyError("Failed to send message", error=str(exc)) from exc
        return message

    def list_messages(
        self,
        identity: Identity,
        chat_id: str,
        *,
        page: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Message]:
        """One page of history, oldest first within the page."""
        self._require_participant(chat_id, identity.id)
        page = page if page and page > 0 else 1
        limit = min(limit, self.max_page_size) if limit and limit > 0 else self.page_size
        skip = (page - 1) * limit
        newest_first = self.store.list_messages(chat_id, skip=skip, limit=limit)
        return list(reversed(newest_first))

    def list_chats(self, identity: Identity) -> List[Dict[str, Any]]:
        chats = self.store.list_chats_for_user(identity.id)
        user_ids = {uid for chat in chats for uid in chat.participants}
        users = {u.id: u for u in self.store.get_users(sorted(user_ids))}
        results: List[Dict[str, Any]] = []
        for chat in chats:
            last = (
                self.store.get_message(chat.last_message_id)
                if chat.last_message_id
                else None
            )
            results.append(
                {
                    "id": chat.id,
                    "participants": [
                        participant_summary(users[uid])
                        for uid in chat.participants
                        if uid in users
                    ],
                    "isGroup": chat.is_group,
                    "groupName": chat.group_name,
                    "lastMessage": message_payload(last) if last else None,
                    "createdAt": chat.created_at.isoformat(),
                    "updatedAt": chat.updated_at.isoformat(),
                }
            )
        return results

    async def mark_read(self, identity: Identity, chat_id: str, message_id: str) -> Message:
        """Record a read receipt and notify the conversation.

        A failed publish is logged and does not fail the request.
        """
        message = self.store.get_message(message_id)
        if not message or message.chat_id != chat_id:
            raise NotFoundError("Message not found")
        self._require_participant(chat_id, identity.id)
        updated = self.store.add_message_reader(message_id, identity.id)
        if updated is None:
            raise NotFoundError("Message not found")
        try:
            await self.fanout.publish(
                chat_id,
                MessageRead(
                    message_id=message_id,
                    reader_id=identity.id,
                    read_by=updated.read_by,
                ),
            )
        except Exception as exc:
            logger.warning(
                "read_receipt_publish_failed",
                chat_id=chat_id,
                message_id=message_id,
                error=str(exc),
            )
        return updated

    def reconcile(self) -> int:
        return self.store.reconcile_chat_pointers()
