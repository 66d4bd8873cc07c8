"""
Streaming Response Aggregator — upstream event-stream → client chunks.

Three layers, each usable on its own:

    SSEDecoder         re-assembles complete lines from arbitrary text/byte
                       chunks (a line may be split across network reads)
    iter_sse_deltas    keeps "data:" lines, stops at [DONE], yields the
                       choices[0].delta.content of every event
    StreamingAggregator.relay
                       sends each delta to the client as a gpt_response
                       event before pulling the next one

Malformed event lines are logged and skipped. A stream that ends without
[DONE] was cut short and raises UpstreamError. The aggregator turns any
upstream failure into exactly one error event and stops; it never retries.
"""

from __future__ import annotations

import codecs
import json
import logging
import re
from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncGenerator, AsyncIterable, AsyncIterator, Awaitable, Callable

from sightline.core.errors import RelayError, UpstreamError
from sightline.transport.protocol import OutboundEvent

logger = logging.getLogger(__name__)

SSE_DATA_PREFIX = "data:"
SSE_DONE = "[DONE]"

# Event-stream line terminators only, never U+2028 / U+2029 / U+0085
_LINE_BREAK = re.compile(r"\r\n|\r|\n")


class SSEDecoder:
    """Incremental line splitter for event-stream bodies."""

    def __init__(self) -> None:
        self._buffer = ""
        self._bytes_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: str | bytes) -> list[str]:
        """Add a chunk; return every line it completed (without newlines)."""
        if isinstance(chunk, bytes):
            chunk = self._bytes_decoder.decode(chunk)
        text = self._buffer + chunk
        # A trailing "\r" may be the first half of "\r\n"
        held = ""
        if text.endswith("\r"):
            text, held = text[:-1], "\r"
        *lines, tail = _LINE_BREAK.split(text)
        self._buffer = tail + held
        return lines

    def flush(self) -> list[str]:
        """Return whatever partial line is left at end of stream."""
        tail = self._buffer + self._bytes_decoder.decode(b"", final=True)
        self._buffer = ""
        tail = tail.rstrip("\r")
        return [tail] if tail.strip() else []


def parse_sse_line(line: str) -> str | None:
    """Delta text carried by one event line, or None.

    Raises ValueError for a data line whose JSON is malformed or whose shape
    isn't a chat-completion chunk. Callers decide whether that is fatal.
    """
    data = line[len(SSE_DATA_PREFIX):].strip()
    event = json.loads(data)
    if "error" in event and "choices" not in event:
        raise UpstreamError("chat_stream", detail=str(event["error"]))
    choices = event.get("choices")
    if not isinstance(choices, list):
        raise ValueError("event has no 'choices' list")
    if not choices:
        return None
    delta = choices[0].get("delta") or {}
    content = delta.get("content")
    return content if isinstance(content, str) and content else None


async def iter_sse_deltas(
    chunks: AsyncIterable[str | bytes],
) -> AsyncIterator[str]:
    """Yield content deltas from a raw chat-completion event stream."""
    decoder = SSEDecoder()

    def _deltas(lines: list[str]) -> tuple[list[str], bool]:
        out: list[str] = []
        for line in lines:
            if not line.startswith(SSE_DATA_PREFIX):
                continue  # comments, "event:", keep-alive blanks
            if line[len(SSE_DATA_PREFIX):].strip() == SSE_DONE:
                return out, True
            try:
                delta = parse_sse_line(line)
            except (ValueError, AttributeError, TypeError) as e:
                logger.warning(f"Skipping malformed stream line: {e} ({line[:120]!r})")
                continue
            if delta:
                out.append(delta)
        return out, False

    try:
        async for chunk in chunks:
            deltas, done = _deltas(decoder.feed(chunk))
            for delta in deltas:
                yield delta
            if done:
                return
    finally:
        # Release the upstream response even when our consumer stops early
        close = getattr(chunks, "aclose", None)
        if close is not None:
            await close()

    deltas, done = _deltas(decoder.flush())
    for delta in deltas:
        yield delta
    if not done:
        raise UpstreamError("chat_stream", detail="stream ended before completion")


@dataclass
class StreamResult:
    """Outcome of relaying one stream to a client."""

    text: str
    chunks: int
    completed: bool
    error: RelayError | None = None


class StreamingAggregator:
    """Relays deltas to a client one event at a time.

    ``send`` returns False once the client transport is gone; the relay then
    stops early and closes the upstream iterator.
    """

    def __init__(
        self,
        send: Callable[[OutboundEvent], Awaitable[bool]],
        error_message_id: str | None = None,
    ):
        self._send = send
        self._error_message_id = error_message_id

    async def relay(self, deltas: AsyncGenerator[str, None]) -> StreamResult:
        parts: list[str] = []
        try:
            async with aclosing(deltas) as source:
                async for delta in source:
                    parts.append(delta)
                    if not await self._send(OutboundEvent.assistant_chunk(delta)):
                        logger.info("Client gone, stopping stream relay")
                        return StreamResult("".join(parts), len(parts), completed=False)
        except RelayError as e:
            logger.warning(f"Stream relay failed after {len(parts)} chunks: {e}")
            await self._send(OutboundEvent.error(e.summary(), self._error_message_id))
            return StreamResult("".join(parts), len(parts), completed=False, error=e)

        return StreamResult("".join(parts), len(parts), completed=True)
