"""Tests for ChatService: conversations, paging and the send/publish pipeline."""

import pytest

from devconnect.service.chat import ChatService
from devconnect.service.errors import (
    AuthorizationError,
    DependencyError,
    NotFoundError,
    ValidationError,
)
from devconnect.service.fanout import FanoutChannel, MessageRead, NewMessage, decode_event
from devconnect.service.tokens import Identity
from devconnect.storage.memory import MemoryStore


class RecordingStore(MemoryStore):
    """MemoryStore that remembers the paging arguments it was asked for."""

    def __init__(self):
        super().__init__()
        self.page_calls = []

    def list_messages(self, chat_id, *, skip=0, limit=20):
        self.page_calls.append((chat_id, skip, limit))
        return super().list_messages(chat_id, skip=skip, limit=limit)


class RecordingBus:
    def __init__(self):
        self.published = []

    async def publish(self, channel, data):
        self.published.append((channel, data))
        return 1

    async def psubscribe(self, pattern):
        raise NotImplementedError


class FailingBus:
    async def publish(self, channel, data):
        raise ConnectionError("bus unavailable")

    async def psubscribe(self, pattern):
        raise ConnectionError("bus unavailable")


def _identity(user):
    return Identity(id=user.id, username=user.username)


@pytest.fixture
def store():
    return RecordingStore()


@pytest.fixture
def bus():
    return RecordingBus()


@pytest.fixture
def people(store):
    alice = store.create_user("alice", "alice@example.com")
    bob = store.create_user("bob", "bob@example.com")
    carol = store.create_user("carol", "carol@example.com")
    return alice, bob, carol


@pytest.fixture
def chat_service(store, bus):
    return ChatService(store, FanoutChannel(bus), page_size=20, max_page_size=100)


class TestCreateChat:
    def test_creator_is_added_to_participants(self, chat_service, people):
        alice, bob, _ = people

        chat = chat_service.create_chat(_identity(alice), [bob.id])

        assert chat.participants == [alice.id, bob.id]
        assert not chat.is_group

    def test_needs_another_participant(self, chat_service, people):
        alice, _, _ = people

        with pytest.raises(ValidationError):
            chat_service.create_chat(_identity(alice), [alice.id])

    def test_group_requires_name(self, chat_service, people):
        alice, bob, carol = people

        with pytest.raises(ValidationError, match="Group name"):
            chat_service.create_chat(_identity(alice), [bob.id, carol.id], is_group=True)

    def test_unknown_participant(self, chat_service, people):
        alice, _, _ = people

        with pytest.raises(NotFoundError):
            chat_service.create_chat(_identity(alice), ["no-such-user"])


class TestSendMessage:
    async def test_persists_advances_pointer_and_publishes(self, chat_service, store, bus, people):
        alice, bob, _ = people
        chat = chat_service.create_chat(_identity(alice), [bob.id])

        message = await chat_service.send_message(_identity(alice), chat.id, "hello bob")

        assert message.read_by == [alice.id]
        assert store.get_chat(chat.id).last_message_id == message.id
        assert len(bus.published) == 1
        channel, raw = bus.published[0]
        assert channel == f"chat:{chat.id}"
        event = decode_event(raw)
        assert isinstance(event, NewMessage)
        assert event.message["id"] == message.id
        assert event.message["text"] == "hello bob"
        assert event.message["sender"] == alice.id

    async def test_empty_text_rejected(self, chat_service, people):
        alice, bob, _ = people
        chat = chat_service.create_chat(_identity(alice), [bob.id])

        with pytest.raises(ValidationError):
            await chat_service.send_message(_identity(alice), chat.id, "   ")

    async def test_non_participant_forbidden(self, chat_service, people):
        alice, bob, carol = people
        chat = chat_service.create_chat(_identity(alice), [bob.id])

        with pytest.raises(AuthorizationError):
            await chat_service.send_message(_identity(carol), chat.id, "let me in")

    async def test_unknown_chat(self, chat_service, people):
        alice, _, _ = people

        with pytest.raises(NotFoundError):
            await chat_service.send_message(_identity(alice), "missing", "hi")

    async def test_publish_failure_reports_error_but_keeps_message(self, store, people):
        alice, bob, _ = people
        service = ChatService(store, FanoutChannel(FailingBus()))
        chat = service.create_chat(_identity(alice), [bob.id])

        with pytest.raises(DependencyError) as exc_info:
            await service.send_message(_identity(alice), chat.id, "lost in transit")

        assert exc_info.value.status_code == 500
        assert exc_info.value.message == "Failed to send message"
        assert "bus unavailable" in exc_info.value.error
        persisted = store.list_messages(chat.id)
        assert [m.text for m in persisted] == ["lost in transit"]
        assert store.get_chat(chat.id).last_message_id == persisted[0].id


class TestListMessages:
    async def test_page_translates_to_skip_and_comes_back_oldest_first(
        self, chat_service, store, people
    ):
        alice, bob, _ = people
        chat = chat_service.create_chat(_identity(alice), [bob.id])
        for i in range(12):
            await chat_service.send_message(_identity(alice), chat.id, f"m{i}")

        page = chat_service.list_messages(_identity(bob), chat.id, page=2, limit=5)

        assert store.page_calls[-1] == (chat.id, 5, 5)
        # newest first overall: m11..m7 on page 1, m6..m2 on page 2
        assert [m.text for m in page] == ["m2", "m3", "m4", "m5", "m6"]

    def test_defaults_and_cap(self, chat_service, store, people):
        alice, bob, _ = people
        chat = chat_service.create_chat(_identity(alice), [bob.id])

        chat_service.list_messages(_identity(alice), chat.id)
        assert store.page_calls[-1] == (chat.id, 0, 20)

        chat_service.list_messages(_identity(alice), chat.id, page=3, limit=1000)
        assert store.page_calls[-1] == (chat.id, 200, 100)

    def test_non_participant_forbidden(self, chat_service, people):
        alice, bob, carol = people
        chat = chat_service.create_chat(_identity(alice), [bob.id])

        with pytest.raises(AuthorizationError):
            chat_service.list_messages(_identity(carol), chat.id)


class TestListChats:
    async def test_populates_participants_and_last_message(self, chat_service, people):
        alice, bob, carol = people
        older = chat_service.create_chat(_identity(alice), [carol.id])
        newer = chat_service.create_chat(_identity(alice), [bob.id])
        await chat_service.send_message(_identity(bob), newer.id, "latest")

        chats = chat_service.list_chats(_identity(alice))

        assert [c["id"] for c in chats] == [newer.id, older.id]
        assert [p["username"] for p in chats[0]["participants"]] == ["alice", "bob"]
        assert chats[0]["lastMessage"]["text"] == "latest"
        assert chats[1]["lastMessage"] is None


class TestMarkRead:
    async def test_records_reader_once_and_publishes(self, chat_service, bus, people):
        alice, bob, _ = people
        chat = chat_service.create_chat(_identity(alice), [bob.id])
        message = await chat_service.send_message(_identity(alice), chat.id, "read me")

        await chat_service.mark_read(_identity(bob), chat.id, message.id)
        updated = await chat_service.mark_read(_identity(bob), chat.id, message.id)

        assert updated.read_by == [alice.id, bob.id]
        event = decode_event(bus.published[-1][1])
        assert isinstance(event, MessageRead)
        assert event.reader_id == bob.id
        assert event.read_by == [alice.id, bob.id]

    async def test_publish_failure_does_not_fail_receipt(self, store, people):
        alice, bob, _ = people
        chat = store.create_chat([alice.id, bob.id])
        message = store.create_message(chat.id, alice.id, "hi")
        service = ChatService(store, FanoutChannel(FailingBus()))

        updated = await service.mark_read(_identity(bob), chat.id, message.id)

        assert bob.id in updated.read_by

    async def test_message_from_other_chat_not_found(self, chat_service, people):
        alice, bob, carol = people
        first = chat_service.create_chat(_identity(alice), [bob.id])
        second = chat_service.create_chat(_identity(alice), [carol.id])
        message = await chat_service.send_message(_identity(alice), first.id, "hi")

        with pytest.raises(NotFoundError):
            await chat_service.mark_read(_identity(alice), second.id, message.id)

    async def test_non_participant_forbidden(self, chat_service, people):
        alice, bob, carol = people
        chat = chat_service.create_chat(_identity(alice), [bob.id])
        message = await chat_service.send_message(_identity(alice), chat.id, "hi")

        with pytest.raises(AuthorizationError):
            await chat_service.mark_read(_identity(carol), chat.id, message.id)


class TestReconcile:
    def test_repairs_stale_last_message_pointer(self, chat_service, store, people):
        alice, bob, _ = people
        chat = store.create_chat([alice.id, bob.id])
        message = store.create_message(chat.id, alice.id, "orphaned")

        assert chat_service.reconcile() == 1
        assert store.get_chat(chat.id).last_message_id == message.id
        assert chat_service.reconcile() == 0
