"""Unit tests for the realtime gateway relay, room broadcast and shutdown."""

import asyncio

import pytest

from devconnect.service.fanout import FanoutChannel, MessageRead
from devconnect.service.realtime import RealtimeGateway, chat_room
from devconnect.service.runtime import get_runtime
from devconnect.service.tokens import Identity
from devconnect.storage.memory_cache import MemoryCache

ALICE = Identity(id="8b0c2f4e-0000-4000-8000-000000000001", username="alice")
BOB = Identity(id="8b0c2f4e-0000-4000-8000-000000000002", username="bob")


class RecordingTransport:
    def __init__(self):
        self.sent = []

    async def send_json(self, data):
        self.sent.append(data)


class StalledTransport:
    async def send_json(self, data):
        await asyncio.Event().wait()


class BrokenSubscription:
    """Pattern subscription whose connection drops on the first read."""

    def __init__(self):
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        raise ConnectionError("connection reset by peer")

    async def close(self):
        self.closed = True


class FlakyBus:
    """Hands out broken subscriptions ``failures`` times, then working ones."""

    def __init__(self, failures=1):
        self.cache = MemoryCache()
        self.failures = failures
        self.subscribe_calls = 0
        self.broken = []

    async def publish(self, channel, data):
        return await self.cache.publish(channel, data)

    async def psubscribe(self, pattern):
        self.subscribe_calls += 1
        if self.subscribe_calls <= self.failures:
            sub = BrokenSubscription()
            self.broken.append(sub)
            return sub
        return await self.cache.psubscribe(pattern)


async def _eventually(predicate, attempts=200):
    for _ in range(attempts):
        if await predicate():
            return True
        await asyncio.sleep(0.01)
    return False


class TestRelay:
    async def test_resubscribes_after_subscription_error(self):
        bus = FlakyBus(failures=1)
        gateway = RealtimeGateway(None, None, FanoutChannel(bus), resubscribe_delay=0.01)
        await gateway.start()
        transport = RecordingTransport()
        gateway._join(gateway.connect(transport, ALICE), chat_room("c1"))
        event = MessageRead(message_id="m1", reader_id=BOB.id, read_by=[ALICE.id, BOB.id])

        async def published():
            return await gateway.fanout.publish("c1", event) > 0

        async def delivered():
            return bool(transport.sent)

        assert await _eventually(published)
        assert await _eventually(delivered)
        assert transport.sent == [
            {
                "event": "message-read",
                "data": {
                    "messageId": "m1",
                    "readerId": BOB.id,
                    "readBy": [ALICE.id, BOB.id],
                },
            }
        ]
        assert bus.subscribe_calls == 2
        assert bus.broken[0].closed is True

        await gateway.stop()
        assert gateway.rooms == {}

    async def test_stop_succeeds_while_bus_keeps_failing(self):
        bus = FlakyBus(failures=10_000)
        gateway = RealtimeGateway(None, None, FanoutChannel(bus), resubscribe_delay=0.01)
        await gateway.start()

        async def retried():
            return bus.subscribe_calls >= 3

        assert await _eventually(retried)
        await gateway.stop()

        assert gateway._relay_task is None
        assert all(sub.closed for sub in bus.broken)

    async def test_runtime_close_releases_cache_when_gateway_stop_fails(self, monkeypatch):
        runtime = get_runtime()
        closed = []

        async def failing_stop():
            raise RuntimeError("relay crashed")

        async def record_close():
            closed.append("cache")

        monkeypatch.setattr(runtime.gateway, "stop", failing_stop)
        monkeypatch.setattr(runtime.cache, "close", record_close)

        with pytest.raises(RuntimeError):
            await runtime.close()
        assert closed == ["cache"]


class TestBroadcast:
    async def test_stalled_client_is_dropped_without_blocking_others(self):
        gateway = RealtimeGateway(
            None, None, FanoutChannel(MemoryCache()), send_timeout=0.05
        )
        room = chat_room("c1")
        stalled = gateway.connect(StalledTransport(), ALICE)
        healthy_transport = RecordingTransport()
        healthy = gateway.connect(healthy_transport, BOB)
        gateway._join(stalled, room)
        gateway._join(healthy, room)

        delivered = await asyncio.wait_for(
            gateway.broadcast(room, "user-typing", {"userId": ALICE.id, "chatId": "c1"}),
            timeout=2,
        )

        assert delivered == 1
        assert healthy_transport.sent == [
            {"event": "user-typing", "data": {"userId": ALICE.id, "chatId": "c1"}}
        ]
        assert gateway.rooms[room] == {healthy}
        assert stalled.rooms == set()

    async def test_failing_send_disconnects_only_that_client(self):
        class ClosedTransport:
            async def send_json(self, data):
                raise ConnectionError("socket closed")

        gateway = RealtimeGateway(None, None, FanoutChannel(MemoryCache()))
        room = chat_room("c1")
        closed = gateway.connect(ClosedTransport(), ALICE)
        gateway._join(closed, room)

        assert await gateway.broadcast(room, "user-typing", {"chatId": "c1"}) == 0
        assert room not in gateway.rooms
