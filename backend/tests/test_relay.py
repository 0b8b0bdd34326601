"""Tests for cross-node message relay."""
import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from agentlink.agents.history import PUBLIC_SCOPE, HistoryLog, private_scope
from agentlink.agents.relay import REASSIGNED_CLOSE_CODE, MessageRelay
from agentlink.agents.schemas import ReassignPayload, Role
from agentlink.agents.sessions import LocalSessionTable
from agentlink.bus import BusMessage
from agentlink.config import BusSettings
from agentlink.errors import DeliveryFailure

SCRIPT = "<script>x</script>"


@pytest.fixture
def history(store):
    return HistoryLog(store)


@pytest.fixture
def sessions():
    return LocalSessionTable()


@pytest.fixture
def relay(bus, sessions, history, clock):
    return MessageRelay(bus, sessions, history, BusSettings(), clock=clock)


async def _wait_for(predicate, timeout: float = 1.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout)


class TestPublish:
    @pytest.mark.asyncio
    async def test_broadcast_wire_payload(self, relay, bus):
        channel = await bus.subscribe(["broadcast-channel"])
        await relay.publish_broadcast("hello", "sender-1")
        assert json.loads((await channel.get()).data) == {"content": "hello"}

    @pytest.mark.asyncio
    async def test_broadcast_is_logged_publicly(self, relay, history):
        await relay.publish_broadcast(SCRIPT, "sender-1")
        [entry] = await history.read(PUBLIC_SCOPE, 10)
        assert entry.type == "public"
        assert entry.content == SCRIPT
        assert entry.senderId == "sender-1"

    @pytest.mark.asyncio
    async def test_targeted_wire_payload(self, relay, bus, clock):
        channel = await bus.subscribe(["targeted-channel"])
        await relay.publish_targeted("psst", "a-id", "Agent A", "b-id")
        assert json.loads((await channel.get()).data) == {
            "type": "private",
            "recipientId": "b-id",
            "senderId": "a-id",
            "senderName": "Agent A",
            "content": "psst",
            "timestamp": clock.now,
        }

    @pytest.mark.asyncio
    async def test_targeted_is_logged_for_both_parties(self, relay, history):
        await relay.publish_targeted("psst", "a-id", "Agent A", "b-id")
        for identity in ("a-id", "b-id"):
            [entry] = await history.read(private_scope(identity), 10)
            assert entry.recipientId == "b-id"
            assert entry.senderName == "Agent A"

    @pytest.mark.asyncio
    async def test_publish_failure_is_dropped(self, relay, bus, history):
        bus.publish = AsyncMock(side_effect=DeliveryFailure("timeout", "broadcast-channel"))
        message = await relay.publish_broadcast("hello", "sender-1")
        assert message.content == "hello"
        assert len(await history.read(PUBLIC_SCOPE, 10)) == 1


class TestDispatch:
    @pytest.mark.asyncio
    async def test_broadcast_reaches_every_local_session(self, relay, sessions, make_socket):
        a, b = make_socket(), make_socket()
        sessions.attach("a-id", a, Role.A)
        sessions.attach("b-id", b, Role.B)

        data = json.dumps({"content": SCRIPT})
        assert await relay.dispatch(BusMessage("broadcast-channel", data)) == 2
        assert a.sent == b.sent == [{"type": "broadcast", "content": SCRIPT}]

    @pytest.mark.asyncio
    async def test_targeted_without_local_recipient_is_dropped(self, relay, sessions, make_socket):
        bystander = make_socket()
        sessions.attach("a-id", bystander, Role.A)
        data = json.dumps({
            "type": "private", "recipientId": "elsewhere", "senderId": "a-id",
            "senderName": "Agent A", "content": "hi", "timestamp": 1,
        })
        assert await relay.dispatch(BusMessage("targeted-channel", data)) == 0
        assert bystander.sent == []

    @pytest.mark.asyncio
    async def test_targeted_reaches_only_recipient(self, relay, sessions, make_socket):
        a, b = make_socket(), make_socket()
        sessions.attach("a-id", a, Role.A)
        sessions.attach("b-id", b, Role.B)
        data = json.dumps({
            "type": "private", "recipientId": "b-id", "senderId": "a-id",
            "senderName": "Agent A", "content": "hi", "timestamp": 1,
        })
        assert await relay.dispatch(BusMessage("targeted-channel", data)) == 1
        assert a.sent == []
        assert b.sent[0]["type"] == "private"
        assert b.sent[0]["senderName"] == "Agent A"

    @pytest.mark.asyncio
    async def test_presence_reaches_every_local_session(self, relay, sessions, make_socket):
        ws = make_socket()
        sessions.attach("a-id", ws, Role.A)
        data = json.dumps({"agentType": "b", "agentName": "Agent B", "status": "OFFLINE", "timestamp": 5})
        assert await relay.dispatch(BusMessage("presence-channel", data)) == 1
        assert ws.sent == [{
            "type": "presence", "agentType": "b", "agentName": "Agent B", "status": "OFFLINE", "timestamp": 5,
        }]

    @pytest.mark.asyncio
    async def test_reassign_closes_superseded_session(self, relay, sessions, make_socket):
        old = make_socket()
        sessions.attach("old-id", old, Role.A)
        event = ReassignPayload(agentType=Role.A, oldId="old-id", newId="new-id", agentName="Agent A", timestamp=9)

        assert await relay.dispatch(BusMessage("reassign-channel", event.model_dump_json())) == 1
        assert old.sent[0]["type"] == "reassign"
        assert old.sent[0]["newId"] == "new-id"
        assert old.closed[0] == REASSIGNED_CLOSE_CODE
        assert "old-id" not in sessions

    @pytest.mark.asyncio
    async def test_reassign_for_other_node_is_ignored(self, relay, sessions, make_socket):
        ws = make_socket()
        sessions.attach("new-id", ws, Role.A)
        event = ReassignPayload(agentType=Role.A, oldId="old-id", newId="new-id", agentName="Agent A")
        assert await relay.dispatch(BusMessage("reassign-channel", event.model_dump_json())) == 0
        assert ws.closed is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("channel", ["broadcast-channel", "targeted-channel", "presence-channel"])
    async def test_malformed_payload_is_dropped(self, relay, sessions, make_socket, channel):
        ws = make_socket()
        sessions.attach("a-id", ws, Role.A)
        assert await relay.dispatch(BusMessage(channel, "{not json")) == 0
        assert await relay.dispatch(BusMessage(channel, json.dumps({"unexpected": True}))) == 0
        assert ws.sent == []


class TestSubscriberLoop:
    @pytest.mark.asyncio
    async def test_messages_cross_nodes(self, bus, store, clock, make_socket):
        node_sessions = [LocalSessionTable(), LocalSessionTable()]
        relays = [
            MessageRelay(bus, table, HistoryLog(store), BusSettings(), clock=clock)
            for table in node_sessions
        ]
        tasks = [asyncio.create_task(r.run()) for r in relays]
        try:
            await asyncio.wait_for(asyncio.gather(*(r.ready.wait() for r in relays)), 1.0)
            a, b = make_socket(), make_socket()
            node_sessions[0].attach("a-id", a, Role.A)
            node_sessions[1].attach("b-id", b, Role.B)

            await relays[0].publish_broadcast(SCRIPT, "a-id")
            await relays[0].publish_targeted("only for b", "a-id", "Agent A", "b-id")

            await _wait_for(lambda: len(b.sent) == 2 and len(a.sent) == 1)
            assert a.sent == [{"type": "broadcast", "content": SCRIPT}]
            assert b.sent[0] == {"type": "broadcast", "content": SCRIPT}
            assert b.sent[1]["content"] == "only for b"
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    @pytest.mark.asyncio
    async def test_resubscribes_after_bus_loss(self, bus, sessions, history, clock):
        relay = MessageRelay(bus, sessions, history, BusSettings(reconnect_delay_seconds=0.01), clock=clock)
        real_subscribe = bus.subscribe
        bus.subscribe = AsyncMock(side_effect=[DeliveryFailure("down", "bus"), await real_subscribe(["x"])])
        task = asyncio.create_task(relay.run())
        try:
            await asyncio.wait_for(relay.ready.wait(), 1.0)
            assert bus.subscribe.await_count == 2
        finally:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    @pytest.mark.asyncio
    async def test_dispatch_error_does_not_stop_loop(self, bus, sessions, history, clock):
        relay = MessageRelay(bus, sessions, history, BusSettings(), clock=clock)
        relay.dispatch = AsyncMock(side_effect=[RuntimeError("boom"), 1])
        task = asyncio.create_task(relay.run())
        try:
            await asyncio.wait_for(relay.ready.wait(), 1.0)
            await bus.publish("broadcast-channel", json.dumps({"content": "first"}))
            await bus.publish("broadcast-channel", json.dumps({"content": "second"}))

            await _wait_for(lambda: relay.dispatch.await_count == 2)
            assert relay.dispatch.await_args.args[0].data == json.dumps({"content": "second"})
            assert not task.done()
        finally:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    @pytest.mark.asyncio
    async def test_resubscribes_after_unexpected_error(self, bus, sessions, history, clock):
        relay = MessageRelay(bus, sessions, history, BusSettings(reconnect_delay_seconds=0.01), clock=clock)
        real_subscribe = bus.subscribe
        bus.subscribe = AsyncMock(side_effect=[RuntimeError("boom"), await real_subscribe(["x"])])
        task = asyncio.create_task(relay.run())
        try:
            await asyncio.wait_for(relay.ready.wait(), 1.0)
            assert bus.subscribe.await_count == 2
            assert not task.done()
        finally:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
