from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional, Protocol, Tuple, Union

from devconnect.logging import get_logger
from devconnect.storage.models import Message

logger = get_logger(__name__)

CHANNEL_PREFIX = "chat:"
NEW_MESSAGE = "new-message"
MESSAGE_READ = "message-read"


@dataclass
class NewMessage:
    message: Dict[str, Any]

    event_type = NEW_MESSAGE

    def to_wire(self) -> Dict[str, Any]:
        return {"eventType": self.event_type, **self.message}


@dataclass
class MessageRead:
    message_id: str
    reader_id: str
    read_by: list

    event_type = MESSAGE_READ

    def to_wire(self) -> Dict[str, Any]:
        return {
            "eventType": self.event_type,
            "messageId": self.message_id,
            "readerId": self.reader_id,
            "readBy": list(self.read_by),
        }


ChatEvent = Union[NewMessage, MessageRead]


def message_payload(message: Message) -> Dict[str, Any]:
    """Client-facing shape of a message, shared by HTTP responses and events."""
    return {
        "id": message.id,
        "chatId": message.chat_id,
        "sender": message.sender_id,
        "text": message.text,
        "readBy": list(message.read_by),
        "createdAt": message.created_at.isoformat(),
    }


def encode_event(event: ChatEvent) -> str:
    return json.dumps(event.to_wire(), default=str)


def decode_event(raw: str) -> Optional[ChatEvent]:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("fanout_payload_invalid")
        return None
    if not isinstance(data, dict):
        return None
    kind = data.pop("eventType", None)
    if kind == NEW_MESSAGE:
        return NewMessage(message=data)
    if kind == MESSAGE_READ:
        return MessageRead(
            message_id=str(data.get("messageId")),
            reader_id=str(data.get("readerId")),
            read_by=list(data.get("readBy") or []),
        )
    logger.warning("fanout_event_unknown", event_type=kind)
    return None


def channel_for(chat_id: str) -> str:
    return f"{CHANNEL_PREFIX}{chat_id}"


class PubSubBus(Protocol):
    async def publish(self, channel: str, data: str) -> int: ...

    async def psubscribe(self, pattern: str) -> Any: ...


class FanoutSubscription:
    """Async iterator of ``(chat_id, event)`` pairs from a pattern subscription."""

    def __init__(self, raw: Any) -> None:
        self._raw = raw

    def __aiter__(self) -> AsyncIterator[Tuple[str, ChatEvent]]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Tuple[str, ChatEvent]]:
        async for channel, data in self._raw:
            if not channel.startswith(CHANNEL_PREFIX):
                continue
            event = decode_event(data)
            if event is None:
                continue
            yield channel[len(CHANNEL_PREFIX) :], event

    async def close(self) -> None:
        await self._raw.close()


class FanoutChannel:
    """Publish/subscribe channel decoupling message persistence from delivery.

    Delivery is best effort and at most once: nothing is buffered for
    subscribers that are not connected when an event is published.
    """

    def __init__(self, bus: PubSubBus) -> None:
        self.bus = bus

    async def publish(self, chat_id: str, event: ChatEvent) -> int:
        receivers = await self.bus.publish(channel_for(chat_id), encode_event(event))
        logger.debug(
            "fanout_published",
            chat_id=chat_id,
            event_type=event.event_type,
            receivers=receivers,
        )
        return receivers

    async def subscribe(self, pattern: str = f"{CHANNEL_PREFIX}*") -> FanoutSubscription:
        return FanoutSubscription(await self.bus.psubscribe(pattern))
