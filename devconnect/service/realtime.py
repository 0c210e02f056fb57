from __future__ import annotations

import asyncio
import uuid
from typing import Any, Dict, Optional, Protocol, Set

from devconnect.logging import get_logger
from devconnect.service.chat import ChatService
from devconnect.service.errors import InvalidCredential, ServiceError
from devconnect.service.fanout import (
    ChatEvent,
    FanoutChannel,
    FanoutSubscription,
    MessageRead,
    NewMessage,
    message_payload,
)
from devconnect.service.tokens import Identity, TokenIssuer, TokenVerificationError

logger = get_logger(__name__)


class Transport(Protocol):
    async def send_json(self, data: Any) -> None: ...


class Connection:
    """A live realtime client tagged with the user it authenticated as."""

    def __init__(self, transport: Transport, identity: Identity) -> None:
        self.id = str(uuid.uuid4())
        self.transport = transport
        self.identity = identity
        self.rooms: Set[str] = set()

    @property
    def user_id(self) -> str:
        return self.identity.id

    async def send(self, event: str, data: Any) -> None:
        await self.transport.send_json({"event": event, "data": data})


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


def chat_room(chat_id: str) -> str:
    return f"chat:{chat_id}"


class RealtimeGateway:
    """Rooms of realtime connections fed by the chat fan-out channel.

    One pattern subscription to ``chat:*`` is opened by :meth:`start`; every
    event is relayed to the connections that joined that chat's room. Room
    membership is process-local and is not persisted.
    """

    def __init__(
        self,
        tokens: TokenIssuer,
        chat: ChatService,
        fanout: FanoutChannel,
        *,
        send_timeout: float = 5.0,
        resubscribe_delay: float = 0.5,
        max_resubscribe_delay: float = 30.0,
    ) -> None:
        self.tokens = tokens
        self.chat = chat
        self.fanout = fanout
        self.send_timeout = send_timeout
        self.resubscribe_delay = resubscribe_delay
        self.max_resubscribe_delay = max_resubscribe_delay
        self.rooms: Dict[str, Set[Connection]] = {}
        self._subscription: Optional[FanoutSubscription] = None
        self._relay_task: Optional[asyncio.Task] = None

    # lifecycle
    async def start(self) -> None:
        if self._relay_task is not None:
            return
        # subscribe before the relay task exists so no publish is missed
        self._subscription = await self.fanout.subscribe()
        self._relay_task = asyncio.create_task(self._relay())
        logger.info("realtime_gateway_started")

    async def stop(self) -> None:
        task, self._relay_task = self._relay_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as exc:
                logger.error("realtime_relay_crashed", error_type=type(exc).__name__, error=str(exc))
        await self._drop_subscription()
        self.rooms.clear()
        logger.info("realtime_gateway_stopped")

    async def _drop_subscription(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is None:
            return
        try:
            await subscription.close()
        except Exception as exc:
            logger.warning("realtime_subscription_close_failed", error=str(exc))

    async def _relay(self) -> None:
        """Relay fan-out events to rooms, resubscribing with backoff when the bus fails."""
        delay = self.resubscribe_delay
        while True:
            if self._subscription is None:
                try:
                    self._subscription = await self.fanout.subscribe()
                    logger.info("realtime_resubscribed")
                except Exception as exc:
                    logger.error("realtime_resubscribe_failed", error=str(exc), retry_in=delay)
                    await asyncio.sleep(delay)
                    delay = min(delay * 2, self.max_resubscribe_delay)
                    continue
            try:
                async for chat_id, event in self._subscription:
                    delay = self.resubscribe_delay
                    try:
                        await self.deliver(chat_id, event)
                    except Exception as exc:
                        logger.error(
                            "realtime_relay_failed",
                            chat_id=chat_id,
                            event_type=event.event_type,
                            error=str(exc),
                        )
                logger.warning("realtime_subscription_ended")
            except Exception as exc:
                logger.error(
                    "realtime_subscription_lost",
                    error_type=type(exc).__name__,
                    error=str(exc),
                    retry_in=delay,
                )
            await self._drop_subscription()
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.max_resubscribe_delay)

    # connections
    def authenticate(self, token: Optional[str]) -> Identity:
        """Verify a handshake token by signature and expiry only."""
        if not token:
            raise InvalidCredential(message="Unauthorized")
        try:
            claims = self.tokens.verify(token)
        except TokenVerificationError as exc:
            raise InvalidCredential(error=str(exc), message="Unauthorized")
        return self.tokens.identity_from_claims(claims)

    def connect(self, transport: Transport, identity: Identity) -> Connection:
        conn = Connection(transport, identity)
        logger.info("realtime_connected", connection_id=conn.id, user_id=identity.id)
        return conn

    def disconnect(self, conn: Connection) -> None:
        for room in list(conn.rooms):
            self._leave(conn, room)
        logger.info("realtime_disconnected", connection_id=conn.id, user_id=conn.user_id)

    def _join(self, conn: Connection, room: str) -> None:
        self.rooms.setdefault(room, set()).add(conn)
        conn.rooms.add(room)

    def _leave(self, conn: Connection, room: str) -> None:
        members = self.rooms.get(room)
        if members is not None:
            members.discard(conn)
            if not members:
                self.rooms.pop(room, None)
        conn.rooms.discard(room)

    async def broadcast(
        self,
        room: str,
        event: str,
        data: Any,
        *,
        exclude: Optional[Connection] = None,
    ) -> int:
        delivered = 0
        for conn in list(self.rooms.get(room, ())):
            if conn is exclude:
                continue
            try:
                # a stalled client must not hold up the relay for every room
                await asyncio.wait_for(conn.send(event, data), timeout=self.send_timeout)
                delivered += 1
            except Exception as exc:
                logger.warning(
                    "realtime_send_failed",
                    connection_id=conn.id,
                    room=room,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                self.disconnect(conn)
        return delivered

    async def deliver(self, chat_id: str, event: ChatEvent) -> int:
        if isinstance(event, NewMessage):
            data: Dict[str, Any] = event.message
        elif isinstance(event, MessageRead):
            data = {
                "messageId": event.message_id,
                "readerId": event.reader_id,
                "readBy": event.read_by,
            }
        else:
            return 0
        return await self.broadcast(chat_room(chat_id), event.event_type, data)

    # client events
    async def handle(self, conn: Connection, event: Optional[str], data: Any) -> None:
        try:
            if event == "join-user-room":
                await self._on_join_user_room(conn, data)
            elif event == "join-chat":
                await self._on_join_chat(conn, data)
            elif event == "typing-start":
                await self._on_typing(conn, data)
            elif event == "send-message":
                await self._on_send_message(conn, data)
            else:
                await conn.send("error", {"message": f"Unknown event: {event}"})
        except ServiceError as exc:
            await conn.send(
                "error",
                {"event": event, "message": exc.message, "code": exc.error_code},
            )

    @staticmethod
    def _field(data: Any, key: str) -> Optional[str]:
        if isinstance(data, dict):
            value = data.get(key)
        else:
            value = data
        return str(value) if value else None

    async def _on_join_user_room(self, conn: Connection, data: Any) -> None:
        user_id = self._field(data, "userId")
        if user_id != conn.user_id:
            await conn.send("error", {"event": "join-user-room", "message": "Forbidden"})
            return
        self._join(conn, user_room(user_id))
        await conn.send("joined", {"room": user_room(user_id)})

    async def _on_join_chat(self, conn: Connection, data: Any) -> None:
        chat_id = self._field(data, "chatId")
        if not chat_id or not self.chat.is_participant(chat_id, conn.user_id):
            await conn.send("error", {"event": "join-chat", "message": "Forbidden"})
            return
        self._join(conn, chat_room(chat_id))
        await conn.send("joined", {"room": chat_room(chat_id)})

    async def _on_typing(self, conn: Connection, data: Any) -> None:
        chat_id = self._field(data, "chatId")
        if not chat_id or chat_room(chat_id) not in conn.rooms:
            return
        await self.broadcast(
            chat_room(chat_id),
            "user-typing",
            {"userId": conn.user_id, "chatId": chat_id},
            exclude=conn,
        )

    async def _on_send_message(self, conn: Connection, data: Any) -> None:
        chat_id = self._field(data, "chatId")
        text = data.get("text") if isinstance(data, dict) else None
        if not chat_id:
            await conn.send("error", {"event": "send-message", "message": "chatId is required"})
            return
        message = await self.chat.send_message(conn.identity, chat_id, text)
        await conn.send("message-sent", message_payload(message))
