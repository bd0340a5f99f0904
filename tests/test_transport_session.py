"""Tests for services.transport.transport_session against in-memory transports."""

import asyncio
import dataclasses
import json
import logging

import pytest

from models.lifecycle_models import MessageState
from models.wire_protocol import EventNames, encode_frame
from services.transport.base import AckTimeoutError, TransportError
from services.transport.transport_session import ConnectionState, TransportSession
from utils.settings import TransportSettings


class FakeTransport:
    """Transport whose inbound frames are pushed by the test.

    Items in the inbox are raw frames; an Exception is raised from
    `receive()` to simulate a dropped link and None ends the stream.
    """

    def __init__(self, name, *, fail=False, auto_ack=None, fail_sends=False):
        self.name = name
        self.fail = fail
        self.auto_ack = auto_ack
        self.fail_sends = fail_sends
        self.inbox = asyncio.Queue()
        self.sent = []
        self.opened_with = None
        self.closed = False

    async def open(self, session_id):
        if self.fail:
            raise TransportError(f"{self.name} down")
        self.opened_with = session_id

    async def send(self, raw):
        if self.fail_sends:
            raise TransportError("send failed")
        frame = json.loads(raw)
        self.sent.append(frame)
        if self.auto_ack is not None and "ack" in frame:
            self.push(EventNames.ACK, self.auto_ack, ack=frame["ack"])

    def push(self, event, data=None, ack=None):
        self.inbox.put_nowait(encode_frame(event, data, ack))

    def push_raw(self, raw):
        self.inbox.put_nowait(raw)

    def drop(self):
        self.inbox.put_nowait(TransportError("link lost"))

    async def receive(self):
        while True:
            item = await self.inbox.get()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def close(self):
        self.closed = True

    def events(self):
        return [frame["event"] for frame in self.sent]


class FakeFactory:
    """Hands out planned transports per name; unplanned names fail to open."""

    def __init__(self, **plans):
        self.plans = {name: list(transports) for name, transports in plans.items()}
        self.created = []

    def __call__(self, name):
        planned = self.plans.get(name)
        transport = planned.pop(0) if planned else FakeTransport(name, fail=True)
        self.created.append(transport)
        return transport


async def settle(rounds=20):
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def transport_settings():
    return TransportSettings(
        server_url="http://chat.test",
        reconnect_attempts=3,
        reconnect_delay=0.01,
        reconnect_delay_max=0.02,
        connect_timeout=1.0,
        ack_timeout=0.5,
        heartbeat_interval=60.0,
        health_interval=60.0,
    )


@pytest.fixture
def make_session(make_coordinator, transport_settings):
    def _make(factory, ids=(), states=None, **overrides):
        settings = dataclasses.replace(transport_settings, **overrides)
        return TransportSession(
            make_coordinator(ids=ids),
            settings,
            transport_factory=factory,
            on_state_change=states.append if states is not None else None,
        )

    return _make


@pytest.mark.asyncio
class TestNegotiation:

    async def test_prefers_websocket(self, make_session):
        ws = FakeTransport("websocket")
        session = make_session(FakeFactory(websocket=[ws]))
        await session.connect()
        assert session.is_connected
        assert session.transport_name == "websocket"
        assert ws.opened_with == session.session_id
        await session.disconnect()

    async def test_falls_back_to_polling(self, make_session):
        poll = FakeTransport("polling")
        session = make_session(FakeFactory(websocket=[FakeTransport("websocket", fail=True)], polling=[poll]))
        await session.connect()
        assert session.transport_name == "polling"
        assert session.state is ConnectionState.CONNECTED
        await session.disconnect()

    async def test_gives_up_after_configured_attempts(self, make_session):
        states = []
        factory = FakeFactory()
        session = make_session(factory, states=states)
        with pytest.raises(TransportError, match="Failed to connect after 3 attempts"):
            await session.connect()
        assert session.state is ConnectionState.FAILED
        assert "polling down" in session.last_error
        assert len(factory.created) == 6
        assert states[0] is ConnectionState.CONNECTING
        assert states[-1] is ConnectionState.FAILED
        await session.disconnect()

    async def test_connect_timeout(self, make_session):
        session = make_session(FakeFactory(), connect_timeout=0.05, reconnect_attempts=100, reconnect_delay=1.0)
        with pytest.raises(TransportError, match="Connection timeout"):
            await session.connect()
        await session.disconnect()

    async def test_second_connect_is_noop(self, make_session):
        factory = FakeFactory(websocket=[FakeTransport("websocket")])
        session = make_session(factory)
        await session.connect()
        await session.connect()
        assert len(factory.created) == 1
        await session.disconnect()


@pytest.mark.asyncio
class TestInboundFrames:

    async def test_chat_events_reach_handlers(self, make_session, handler_set, recorder, names):
        ws = FakeTransport("websocket")
        session = make_session(FakeFactory(websocket=[ws]), ids=["m1"])
        await session.connect()
        lifecycle = session.coordinator.create_message("Hello", "gpt-4o-mini")
        session.coordinator.register_handlers("m1", handler_set)

        ws.push(EventNames.CHAT_THINKING, {"messageId": "m1"})
        ws.push(EventNames.CHAT_GENERATING, {"messageId": "m1"})
        ws.push(EventNames.CHAT_TOKEN, {"messageId": "m1", "token": "Hi"})
        ws.push(EventNames.CHAT_COMPLETE, {"messageId": "m1", "conversationId": "c1", "metadata": {"tokens": 1}})
        await settle()

        assert names(recorder) == ["thinking", "generating", "token", "complete"]
        assert lifecycle.state is MessageState.COMPLETE
        assert lifecycle.conversation_id == "c1"
        await session.disconnect()

    async def test_conversation_created_is_applied(self, make_session, handler_set, recorder):
        ws = FakeTransport("websocket")
        session = make_session(FakeFactory(websocket=[ws]), ids=["m1"])
        await session.connect()
        lifecycle = session.coordinator.create_message("Hello", "gpt-4o-mini")
        session.coordinator.register_handlers("m1", handler_set)

        ws.push(EventNames.CONVERSATION_CREATED, {"conversationId": "c42"})
        await settle()

        assert lifecycle.conversation_id == "c42"
        recorder.conversation_created.assert_called_once()
        await session.disconnect()

    async def test_malformed_message_id_is_logged(self, make_session, handler_set, recorder, caplog):
        caplog.set_level(logging.DEBUG, logger="services.transport.transport_session")
        ws = FakeTransport("websocket")
        session = make_session(FakeFactory(websocket=[ws]), ids=["m1"])
        await session.connect()
        session.coordinator.create_message("Hello", "gpt-4o-mini")
        session.coordinator.register_handlers("m1", handler_set)

        ws.push(EventNames.CHAT_THINKING, {"messageId": "m1"})
        await settle()

        assert "chat:thinking frame carries a malformed message id 'm1'" in caplog.text
        recorder.thinking.assert_called_once()
        await session.disconnect()

    async def test_malformed_frames_are_dropped(self, make_session, caplog):
        ws = FakeTransport("websocket")
        session = make_session(FakeFactory(websocket=[ws]))
        await session.connect()

        ws.push_raw("not json")
        ws.push(EventNames.CHAT_TOKEN, {"token": "missing id"})
        ws.push("chat:unknown", {"messageId": "m1"})
        await settle()

        assert session.is_connected
        assert "Dropping malformed frame" in caplog.text
        assert "Dropping chat:token frame" in caplog.text
        assert "Dropping chat:unknown frame" in caplog.text
        await session.disconnect()

    async def test_pong_refreshes_heartbeat(self, make_session):
        ws = FakeTransport("websocket")
        session = make_session(FakeFactory(websocket=[ws]))
        await session.connect()
        session.last_heartbeat = 0.0
        ws.push(EventNames.PONG)
        await settle()
        assert session.last_heartbeat > 0.0
        await session.disconnect()

    async def test_heartbeat_sends_ping(self, make_session):
        ws = FakeTransport("websocket")
        session = make_session(FakeFactory(websocket=[ws]), heartbeat_interval=0.02)
        await session.connect()
        await asyncio.sleep(0.08)
        assert EventNames.PING in ws.events()
        await session.disconnect()


@pytest.mark.asyncio
class TestReconnect:

    async def test_queued_events_replay_on_reconnect(self, make_session):
        first, second = FakeTransport("websocket"), FakeTransport("websocket")
        session = make_session(FakeFactory(websocket=[first, second]), ids=["m1"])
        await session.connect()

        first.push(EventNames.CHAT_THINKING, {"messageId": "m1"})
        await settle()
        assert session.coordinator.reconciler.queued_count("m1") == 1

        lifecycle = session.coordinator.create_message("Hello", "gpt-4o-mini")
        first.drop()
        await settle()

        assert session.is_connected
        assert session._transport is second
        assert first.closed
        assert lifecycle.state is MessageState.THINKING
        assert session.coordinator.reconciler.queued_count() == 0
        await session.disconnect()

    async def test_handlers_survive_transport_loss(self, make_session, handler_set, recorder, names):
        first, second = FakeTransport("websocket"), FakeTransport("websocket")
        states = []
        session = make_session(FakeFactory(websocket=[first, second]), ids=["m1"], states=states)
        await session.connect()
        session.coordinator.create_message("Hello", "gpt-4o-mini")
        session.coordinator.register_handlers("m1", handler_set)
        first.push(EventNames.CHAT_THINKING, {"messageId": "m1"})
        await settle()

        first.inbox.put_nowait(None)
        await settle()
        second.push(EventNames.CHAT_GENERATING, {"messageId": "m1"})
        second.push(EventNames.CHAT_TOKEN, {"messageId": "m1", "token": "x"})
        await settle()

        assert names(recorder) == ["thinking", "generating", "token"]
        assert ConnectionState.RECONNECTING in states
        assert states[-1] is ConnectionState.CONNECTED
        await session.disconnect()


@pytest.mark.asyncio
class TestAcks:

    async def test_ack_round_trip(self, make_session):
        ws = FakeTransport("websocket", auto_ack={"accepted": True, "messageId": "m1"})
        session = make_session(FakeFactory(websocket=[ws]))
        await session.connect()

        ack = await session.send(EventNames.CHAT_CANCEL, {"messageId": "m1"}, ack_timeout=1.0)

        assert ack == {"accepted": True, "messageId": "m1"}
        assert ws.sent[-1]["ack"] == 1
        assert session.snapshot()["pending_acks"] == 0
        await session.disconnect()

    async def test_ack_timeout(self, make_session):
        ws = FakeTransport("websocket")
        session = make_session(FakeFactory(websocket=[ws]))
        await session.connect()

        with pytest.raises(AckTimeoutError):
            await session.send(EventNames.CHAT_MESSAGE, {"messageId": "m1"}, ack_timeout=0.05)
        assert session.snapshot()["pending_acks"] == 0
        await session.disconnect()

    async def test_fire_and_forget_send(self, make_session):
        ws = FakeTransport("websocket")
        session = make_session(FakeFactory(websocket=[ws]))
        await session.connect()
        assert await session.send(EventNames.PING) is None
        assert ws.sent == [{"event": "ping"}]
        await session.disconnect()


@pytest.mark.asyncio
class TestDisconnect:

    async def test_disconnect_releases_everything(self, make_session, handler_set, recorder, timers):
        ws = FakeTransport("websocket")
        states = []
        session = make_session(FakeFactory(websocket=[ws]), ids=["m1"], states=states)
        await session.connect()
        session.coordinator.create_message("Hello", "gpt-4o-mini")
        session.coordinator.register_handlers("m1", handler_set)

        await session.disconnect()

        assert ws.closed
        assert states == [ConnectionState.CONNECTING, ConnectionState.CONNECTED, ConnectionState.DISCONNECTED]
        assert len(session.coordinator.registry) == 0
        assert len(session.coordinator.handlers) == 0
        assert len(timers) == 0
        recorder.error.assert_not_called()

    async def test_snapshot(self, make_session):
        ws = FakeTransport("websocket")
        session = make_session(FakeFactory(websocket=[ws]))
        await session.connect()
        snapshot = session.snapshot()
        assert snapshot["state"] == "connected"
        assert snapshot["transport"] == "websocket"
        assert snapshot["session_id"] == session.session_id
        assert "registry" in snapshot["coordinator"]
        await session.disconnect()
