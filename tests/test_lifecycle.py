"""Tests for connection lifecycle — open/close, heartbeat, receive loop, listener."""

from __future__ import annotations

import asyncio
import json

import pytest
from fastapi.websockets import WebSocketState

from sightline.core.config import SessionConfig
from sightline.core.metrics import metrics
from sightline.session.context import ContextStore
from sightline.session.machine import Session, SessionState
from sightline.transport.websocket import WebSocketTransport

from conftest import FakeProvider, FakeWebSocket, frame


def _new_session(store, provider, settings=None) -> Session:
    return Session(
        FakeWebSocket(),
        store,
        provider,
        settings or SessionConfig(heartbeat_interval=3600.0),
        send_timeout=1.0,
    )


# ── Open / close ─────────────────────────────────────────────────


class TestOpenClose:
    @pytest.mark.asyncio
    async def test_open_creates_context(self, session, store):
        assert session.state is SessionState.OPEN
        assert session.connection_id in store
        assert session.ws.client_state == WebSocketState.CONNECTED

    @pytest.mark.asyncio
    async def test_close_deletes_context_and_closes_socket(self, session, store):
        assert await session.close("Bye") is True

        assert session.state is SessionState.CLOSED
        assert session.close_reason == "Bye"
        assert session.connection_id not in store
        assert session.ws.closed_with == (1000, "Bye")

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, session, store):
        closed_before = metrics.counter("sessions.closed", labels={"reason": "First"})

        assert await session.close("First") is True
        assert await session.close("Second") is False

        assert session.close_reason == "First"
        assert metrics.counter("sessions.closed", labels={"reason": "First"}) == closed_before + 1
        assert metrics.counter("sessions.closed", labels={"reason": "Second"}) == 0
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_close_without_close_frame(self, session):
        await session.close("Client closed", send_close=False)
        assert session.ws.closed_with is None

    @pytest.mark.asyncio
    async def test_send_after_close_is_dropped(self, session):
        from sightline.transport.protocol import OutboundEvent

        await session.close("Bye")
        assert await session.send(OutboundEvent.ack("m1")) is False
        assert session.ws.sent == []

    @pytest.mark.asyncio
    async def test_close_cancels_heartbeat(self, session):
        task = session._heartbeat_task
        await session.close("Bye")
        await asyncio.sleep(0)
        assert task.cancelled() or task.done()


# ── Heartbeat ────────────────────────────────────────────────────


class TestHeartbeat:
    @pytest.mark.asyncio
    async def test_recent_ping_keeps_session(self, session, clock):
        clock.advance(30)
        await session.handle_frame(frame("ping", "p1"))
        clock.advance(44)

        assert await session.check_liveness() is True
        assert session.is_open

    @pytest.mark.asyncio
    async def test_silence_past_timeout_closes(self, session, clock, store):
        clock.advance(46)

        assert await session.check_liveness() is False
        assert session.state is SessionState.CLOSED
        assert session.close_reason == "Ping timeout"
        assert session.connection_id not in store
        assert session.ws.closed_with == (1000, "Ping timeout")

    @pytest.mark.asyncio
    async def test_timeout_races_disconnect(self, session, clock, store):
        clock.advance(46)
        await asyncio.gather(
            session.check_liveness(),
            session.close("Client closed", send_close=False),
        )
        assert session.state is SessionState.CLOSED
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_transport_gone_closes_quietly(self, session, store):
        session.ws.client_state = WebSocketState.DISCONNECTED

        assert await session.check_liveness() is False
        assert session.close_reason == "Transport closed"
        assert session.ws.closed_with is None
        assert session.connection_id not in store

    @pytest.mark.asyncio
    async def test_heartbeat_loop_times_out(self, provider):
        store = ContextStore()
        settings = SessionConfig(heartbeat_interval=0.01, heartbeat_timeout=0.03)
        session = _new_session(store, provider, settings)
        await session.open()

        for _ in range(100):
            if session.state is SessionState.CLOSED:
                break
            await asyncio.sleep(0.01)

        assert session.close_reason == "Ping timeout"
        assert len(store) == 0


# ── Receive loop ─────────────────────────────────────────────────


class TestRun:
    @pytest.mark.asyncio
    async def test_run_until_client_disconnects(self, store, provider):
        session = _new_session(store, provider)
        session.ws.push(frame("ping", "p1"))
        session.ws.disconnect()

        await session.run()

        assert session.ws.contents("ack") == ["pong"]
        assert session.state is SessionState.CLOSED
        assert session.close_reason == "Client closed"
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_binary_frames_are_decoded(self, store, provider):
        session = _new_session(store, provider)
        session.ws.push(json.dumps({"type": "ping", "messageId": "b1"}).encode())
        session.ws.disconnect()

        await session.run()

        assert session.ws.events()[0]["messageId"] == "b1"

    @pytest.mark.asyncio
    async def test_transport_error_closes(self, store, provider):
        class _BrokenSocket(FakeWebSocket):
            async def receive(self):
                raise RuntimeError("socket reset")

        session = Session(
            _BrokenSocket(), store, provider, SessionConfig(heartbeat_interval=3600.0)
        )
        await session.run()

        assert session.close_reason == "Transport error"
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_bad_frame_does_not_end_connection(self, store, provider):
        session = _new_session(store, provider)
        session.ws.push("garbage")
        session.ws.push(frame("ping", "p2"))
        session.ws.disconnect()

        await session.run()

        assert [e["type"] for e in session.ws.events()] == ["error", "ack"]
        assert session.close_reason == "Client closed"


# ── Listener ─────────────────────────────────────────────────────


class TestWebSocketTransport:
    @pytest.mark.asyncio
    async def test_handle_connection_runs_session(self, store, provider):
        transport = WebSocketTransport(store, provider, SessionConfig(heartbeat_interval=3600.0))
        await transport.start()
        ws = FakeWebSocket()
        ws.push(frame("ping", "p1"))
        ws.disconnect()

        session = await transport.handle_connection(ws)

        assert ws.contents("ack") == ["pong"]
        assert session.state is SessionState.CLOSED
        assert transport.get_session(session.connection_id) is None
        status = await transport.get_status()
        assert status == {
            "transport": "websocket",
            "running": True,
            "connections": 0,
            "contexts": 0,
        }

    @pytest.mark.asyncio
    async def test_connections_get_separate_contexts(self, store):
        transport = WebSocketTransport(store, FakeProvider(), SessionConfig(heartbeat_interval=3600.0))
        a, b = FakeWebSocket(), FakeWebSocket()
        task_a = asyncio.create_task(transport.handle_connection(a))
        task_b = asyncio.create_task(transport.handle_connection(b))
        await asyncio.sleep(0.01)

        assert len(store) == 2
        assert (await transport.get_status())["connections"] == 2

        a.disconnect()
        await task_a
        assert len(store) == 1

        b.disconnect()
        await task_b
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_stop_closes_live_sessions(self, store, provider):
        transport = WebSocketTransport(store, provider, SessionConfig(heartbeat_interval=3600.0))
        await transport.start()
        ws = FakeWebSocket()
        task = asyncio.create_task(transport.handle_connection(ws))
        await asyncio.sleep(0.01)

        await transport.stop()
        session = await asyncio.wait_for(task, timeout=1.0)

        assert not transport.is_running
        assert ws.closed_with == (1001, "Server shutdown")
        assert session.close_reason == "Server shutdown"
        assert len(store) == 0
