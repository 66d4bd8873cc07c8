"""
Shared fakes for Sightline tests.

FakeWebSocket mimics the bits of Starlette's WebSocket that Session uses
(accept / receive / send_text / close and the two state fields). FakeProvider
scripts upstream answers and failures without any network.
"""

from __future__ import annotations

import asyncio
import base64
import json

import pytest
import pytest_asyncio
from fastapi.websockets import WebSocketState

from sightline.core.config import SessionConfig
from sightline.providers.base import InferenceProvider
from sightline.session.context import ContextStore
from sightline.session.machine import Session

AUDIO_BYTES = b"\x1aE\xdf\xa3fake-webm"
AUDIO_B64 = base64.b64encode(AUDIO_BYTES).decode()
IMAGE_B64 = base64.b64encode(b"\xff\xd8\xfffake-jpeg").decode()


def sse_body(*deltas: str, done: bool = True) -> list[str]:
    """Chat-completion event stream, one event per chunk."""
    chunks = [
        "data: " + json.dumps({"choices": [{"index": 0, "delta": {"content": d}}]}) + "\n\n"
        for d in deltas
    ]
    if done:
        chunks.append("data: [DONE]\n\n")
    return chunks


def frame(msg_type: str, message_id: str = "m1", **payload) -> str:
    return json.dumps({"type": msg_type, "payload": payload, "messageId": message_id})


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeWebSocket:
    def __init__(self):
        self.client_state = WebSocketState.CONNECTING
        self.application_state = WebSocketState.CONNECTING
        self.sent: list[dict] = []
        self.closed_with: tuple[int, str | None] | None = None
        self._inbound: asyncio.Queue = asyncio.Queue()

    async def accept(self):
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED

    def push(self, raw: str | bytes) -> None:
        key = "bytes" if isinstance(raw, bytes) else "text"
        self._inbound.put_nowait({"type": "websocket.receive", key: raw})

    def disconnect(self, code: int = 1000) -> None:
        self._inbound.put_nowait({"type": "websocket.disconnect", "code": code})

    async def receive(self) -> dict:
        message = await self._inbound.get()
        if message["type"] == "websocket.disconnect":
            self.client_state = WebSocketState.DISCONNECTED
        return message

    async def send_text(self, data: str) -> None:
        if self.application_state != WebSocketState.CONNECTED:
            raise RuntimeError("Cannot send once closed")
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.application_state = WebSocketState.DISCONNECTED
        self.closed_with = (code, reason)
        # The client answers a close frame with its own
        self.disconnect(code)

    def events(self, msg_type: str | None = None) -> list[dict]:
        return [e for e in self.sent if msg_type is None or e["type"] == msg_type]

    def contents(self, msg_type: str) -> list[str]:
        return [e["payload"]["content"] for e in self.events(msg_type)]


class FakeProvider(InferenceProvider):
    def __init__(self):
        self.transcript = "why is this failing?"
        self.analysis = "The terminal shows a KeyError in config.py."
        self.chat_reply = "Sure thing."
        self.stream_chunks: list[str | bytes] = sse_body("Hel", "lo")
        self.config_error: Exception | None = None
        self.transcribe_error: Exception | None = None
        self.vision_error: Exception | None = None
        self.chat_error: Exception | None = None
        self.stream_error: Exception | None = None
        # Set to an unset Event to hold transcribe() until the test releases it
        self.transcribe_gate: asyncio.Event | None = None
        self.calls: list[tuple] = []

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    def ensure_configured(self) -> None:
        if self.config_error:
            raise self.config_error

    async def transcribe(self, audio_data: bytes, mime_type: str) -> str:
        self.ensure_configured()
        self.calls.append(("transcribe", audio_data, mime_type))
        if self.transcribe_gate is not None:
            await self.transcribe_gate.wait()
        if self.transcribe_error:
            raise self.transcribe_error
        return self.transcript

    async def complete_chat(self, messages: list[dict]) -> str:
        self.ensure_configured()
        self.calls.append(("complete_chat", messages))
        if self.chat_error:
            raise self.chat_error
        return self.chat_reply

    async def stream_chat(self, messages: list[dict]):
        self.ensure_configured()
        self.calls.append(("stream_chat", messages))
        for chunk in self.stream_chunks:
            yield chunk
        if self.stream_error:
            raise self.stream_error

    async def analyze_image(self, image_data_uri: str, prompt: str) -> str:
        self.ensure_configured()
        self.calls.append(("analyze_image", image_data_uri, prompt))
        if self.vision_error:
            raise self.vision_error
        return self.analysis

    def call_names(self) -> list[str]:
        return [c[0] for c in self.calls]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> ContextStore:
    return ContextStore(max_history=10, clock=clock)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def session_settings() -> SessionConfig:
    # Long interval: tests drive check_liveness() by hand
    return SessionConfig(heartbeat_interval=3600.0, heartbeat_timeout=45.0)


@pytest_asyncio.fixture
async def session(store, provider, session_settings):
    """An open Session on a FakeWebSocket, closed again after the test."""
    ws = FakeWebSocket()
    sess = Session(
        ws,
        store,
        provider,
        session_settings,
        send_timeout=1.0,
        default_audio_mime="audio/webm",
    )
    await sess.open()
    yield sess
    await sess.drain()
    await sess.close("Test teardown")
