"""
Wire protocol — the JSON envelope spoken over the WebSocket.

Inbound frames:
    {"type": "ping" | "screen_data" | "voice_data" | "chat",
     "payload": {...}, "messageId": "<client id>"}

Outbound frames:
    {"type": "ack" | "transcription" | "gpt_response" | "error",
     "payload": {"content": "...", "timestamp": <epoch ms>},
     "messageId": "<echoed or fresh id>"}

decode_inbound() validates the envelope (JSON object, known type, string
messageId, object payload) and returns one of the typed message classes.
Type-specific payload fields are extracted here but only enforced by the
handler that needs them, through the require_* helpers.
"""

from __future__ import annotations

import base64
import binascii
import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from sightline.core.errors import ProtocolError, UnknownMessageTypeError

DEFAULT_IMAGE_MIME = "image/jpeg"


class InboundType(str, Enum):
    PING = "ping"
    SCREEN_DATA = "screen_data"
    VOICE_DATA = "voice_data"
    CHAT = "chat"


class OutboundType(str, Enum):
    ACK = "ack"
    TRANSCRIPTION = "transcription"
    ASSISTANT_CHUNK = "gpt_response"
    ERROR = "error"


def new_message_id() -> str:
    return uuid.uuid4().hex


def now_ms() -> int:
    return int(time.time() * 1000)


# ─── Inbound ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class PingMessage:
    message_id: str
    type: InboundType = field(default=InboundType.PING, init=False)


@dataclass(frozen=True)
class ScreenDataMessage:
    message_id: str
    data: str | None = None  # base64 image, optionally a data URI
    type: InboundType = field(default=InboundType.SCREEN_DATA, init=False)

    def require_image_uri(self) -> str:
        if not self.data:
            raise ProtocolError("screen_data payload requires 'data'", self.message_id)
        return as_image_data_uri(self.data)


@dataclass(frozen=True)
class VoiceDataMessage:
    message_id: str
    data: str | None = None  # base64 audio, optionally a data URI
    mime_type: str | None = None
    type: InboundType = field(default=InboundType.VOICE_DATA, init=False)

    def require_audio(self, default_mime: str) -> tuple[bytes, str]:
        """Decoded audio bytes and their MIME type."""
        if not self.data:
            raise ProtocolError("voice_data payload requires 'data'", self.message_id)
        uri_mime, body = split_data_uri(self.data)
        audio = decode_base64_payload(body, self.message_id)
        if not audio:
            raise ProtocolError("voice_data payload is empty", self.message_id)
        return audio, uri_mime or self.mime_type or default_mime


@dataclass(frozen=True)
class ChatMessage:
    message_id: str
    text: str | None = None
    type: InboundType = field(default=InboundType.CHAT, init=False)

    def require_text(self) -> str:
        if not self.text or not self.text.strip():
            raise ProtocolError("chat payload requires 'message'", self.message_id)
        return self.text


InboundMessage = Union[PingMessage, ScreenDataMessage, VoiceDataMessage, ChatMessage]


def _optional_str(payload: dict, key: str) -> str | None:
    value = payload.get(key)
    return value if isinstance(value, str) else None


def decode_inbound(raw: str | bytes) -> InboundMessage:
    """Parse and validate one inbound frame. Raises ProtocolError."""
    try:
        frame = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e

    if not isinstance(frame, dict):
        raise ProtocolError("Frame must be a JSON object")

    message_id = frame.get("messageId")
    if not isinstance(message_id, str) or not message_id:
        raise ProtocolError("Frame requires a string 'messageId'")

    msg_type = frame.get("type")
    if not isinstance(msg_type, str):
        raise ProtocolError("Frame requires a string 'type'", message_id)

    payload = frame.get("payload")
    if payload is None:
        payload = {}
    elif not isinstance(payload, dict):
        raise ProtocolError("'payload' must be a JSON object", message_id)

    if msg_type == InboundType.PING.value:
        return PingMessage(message_id=message_id)
    if msg_type == InboundType.SCREEN_DATA.value:
        return ScreenDataMessage(
            message_id=message_id, data=_optional_str(payload, "data")
        )
    if msg_type == InboundType.VOICE_DATA.value:
        return VoiceDataMessage(
            message_id=message_id,
            data=_optional_str(payload, "data"),
            mime_type=_optional_str(payload, "mimeType"),
        )
    if msg_type == InboundType.CHAT.value:
        return ChatMessage(message_id=message_id, text=_optional_str(payload, "message"))

    raise UnknownMessageTypeError(msg_type, message_id)


# ─── Payload helpers ─────────────────────────────────────────────


def split_data_uri(value: str) -> tuple[str | None, str]:
    """Split "data:<mime>;base64,<body>" into (mime, body).

    Bare base64 comes back as (None, value).
    """
    if not value.startswith("data:"):
        return None, value
    header, sep, body = value.partition(",")
    if not sep:
        return None, value
    mime = header[len("data:"):].split(";", 1)[0].strip()
    # "data:audio/webm;codecs=opus;base64" keeps its codec parameter
    params = [p for p in header[len("data:"):].split(";")[1:] if p and p != "base64"]
    if mime and params:
        mime = ";".join([mime, *params])
    return mime or None, body


def decode_base64_payload(body: str, message_id: str | None = None) -> bytes:
    try:
        return base64.b64decode(body, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ProtocolError(f"Invalid base64 payload: {e}", message_id) from e


def as_image_data_uri(data: str) -> str:
    """Bare base64 becomes a JPEG data URI; data URIs pass through."""
    if data.startswith("data:"):
        return data
    return f"data:{DEFAULT_IMAGE_MIME};base64,{data}"


# ─── Outbound ────────────────────────────────────────────────────


@dataclass(frozen=True)
class OutboundEvent:
    """One server → client frame."""

    type: OutboundType
    content: str
    message_id: str = field(default_factory=new_message_id)
    timestamp: int = field(default_factory=now_ms)

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "payload": {"content": self.content, "timestamp": self.timestamp},
            "messageId": self.message_id,
        }

    def encode(self) -> str:
        return json.dumps(self.to_wire())

    @classmethod
    def ack(cls, message_id: str, content: str = "Message received") -> OutboundEvent:
        return cls(type=OutboundType.ACK, content=content, message_id=message_id)

    @classmethod
    def pong(cls, message_id: str) -> OutboundEvent:
        return cls.ack(message_id, content="pong")

    @classmethod
    def transcription(cls, text: str) -> OutboundEvent:
        return cls(type=OutboundType.TRANSCRIPTION, content=text)

    @classmethod
    def assistant_chunk(cls, text: str) -> OutboundEvent:
        return cls(type=OutboundType.ASSISTANT_CHUNK, content=text)

    @classmethod
    def error(cls, content: str, message_id: str | None = None) -> OutboundEvent:
        return cls(
            type=OutboundType.ERROR,
            content=content,
            message_id=message_id or new_message_id(),
        )
