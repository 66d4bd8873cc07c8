"""
Session — the per-connection controller.

    CONNECTING ──accept──▶ OPEN ──close / error / ping timeout──▶ CLOSING ──▶ CLOSED

A Session owns exactly one ConversationContext in the shared ContextStore,
created in open() and deleted in close(). close() is idempotent, so a
client disconnect racing a heartbeat timeout still deletes the context once.

Inbound frames are read one at a time. Pings are answered inline. Every
other frame is acknowledged inline, then its upstream work runs as a tracked
task, so the socket keeps being read (and pinged) while transcription,
vision or chat calls are in flight. Those tasks are not cancelled on close:
they re-fetch the context after every await and quietly drop their result
once it is gone.

Combined analysis needs both a screen frame and a voice clip. Whichever
arrives second starts it, unless one is already running for this
connection (``pending_analysis``).
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from enum import Enum
from typing import Coroutine

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState

import sightline.core.config as config_module
from sightline.core.config import SessionConfig
from sightline.core.errors import ProtocolError, RelayError, SessionExpiredError
from sightline.core.logging import PipelineTimer
from sightline.core.metrics import metrics
from sightline.llm.context_builder import build_analysis_prompt, build_chat_messages
from sightline.llm.streaming import StreamingAggregator, iter_sse_deltas
from sightline.providers.base import InferenceProvider
from sightline.session.context import ContextStore, ConversationContext
from sightline.transport.protocol import (
    ChatMessage,
    OutboundEvent,
    PingMessage,
    ScreenDataMessage,
    VoiceDataMessage,
    decode_inbound,
)

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class Session:
    """Controller and state for one client WebSocket connection."""

    def __init__(
        self,
        websocket: WebSocket,
        store: ContextStore,
        provider: InferenceProvider,
        settings: SessionConfig | None = None,
        *,
        send_timeout: float | None = None,
        default_audio_mime: str | None = None,
        connection_id: str | None = None,
    ):
        cfg = config_module.config
        self.ws = websocket
        self.store = store
        self.provider = provider
        self.settings = settings or cfg.session
        self.send_timeout = (
            send_timeout if send_timeout is not None else cfg.server.ws_send_timeout
        )
        self.default_audio_mime = default_audio_mime or cfg.upstream.default_audio_mime
        self.connection_id = connection_id or uuid.uuid4().hex

        self.state = SessionState.CONNECTING
        self.close_reason: str | None = None
        self.analysis_runs = 0
        self._heartbeat_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()

    def _log_extra(self, **fields) -> dict:
        return {"connection_id": self.connection_id, **fields}

    # ─── Lifecycle ───────────────────────────────────────────────

    async def open(self) -> None:
        """Accept the upgrade, create the context, start the heartbeat."""
        if self.state is not SessionState.CONNECTING:
            return
        await self.ws.accept()
        self.store.create(self.connection_id)
        self.state = SessionState.OPEN
        self._heartbeat_task = asyncio.create_task(
            self._heartbeat_loop(), name=f"heartbeat-{self.connection_id}"
        )
        metrics.inc("sessions.opened")
        logger.info(
            f"Connection opened: {self.connection_id}",
            extra=self._log_extra(event="connection_open"),
        )

    async def run(self) -> None:
        """Open, then read frames until the connection ends."""
        await self.open()
        try:
            while self.state is SessionState.OPEN:
                message = await self.ws.receive()
                if message["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(
                        message.get("code", 1000), message.get("reason")
                    )
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes") or b""
                await self.handle_frame(raw)
        except WebSocketDisconnect as e:
            logger.debug(f"WS disconnected ({e.code}): {self.connection_id}")
            await self.close("Client closed", send_close=False)
        except Exception as e:
            logger.error(
                f"WS error: {e}",
                exc_info=True,
                extra=self._log_extra(event="transport_error"),
            )
            await self.close("Transport error", send_close=False)
        finally:
            await self.close("Connection ended", send_close=False)

    async def close(
        self, reason: str, code: int = 1000, *, send_close: bool = True
    ) -> bool:
        """Tear the session down. Returns False if it was already closing."""
        if self.state in (SessionState.CLOSING, SessionState.CLOSED):
            return False
        self.state = SessionState.CLOSING
        self.close_reason = reason

        task = self._heartbeat_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

        self.store.delete(self.connection_id)

        if send_close and self._transport_open():
            try:
                await self.ws.close(code=code, reason=reason)
            except Exception as e:
                logger.debug(f"WS close skipped: {e}")

        self.state = SessionState.CLOSED
        metrics.inc("sessions.closed", labels={"reason": reason})
        logger.info(
            f"Connection closed: {self.connection_id} ({reason})",
            extra=self._log_extra(event="connection_close", reason=reason),
        )
        return True

    async def drain(self) -> None:
        """Wait for every in-flight handler, including ones they start."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def is_open(self) -> bool:
        return self.state is SessionState.OPEN

    def _transport_open(self) -> bool:
        return (
            self.ws.client_state == WebSocketState.CONNECTED
            and self.ws.application_state == WebSocketState.CONNECTED
        )

    # ─── Heartbeat ───────────────────────────────────────────────

    async def _heartbeat_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.settings.heartbeat_interval)
                if not await self.check_liveness():
                    return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Stop supervising; the receive loop still tears down on disconnect
            logger.error(f"Heartbeat stopped: {e}", exc_info=True)

    async def check_liveness(self) -> bool:
        """One heartbeat tick. Returns False once the session is finished."""
        if self.state is not SessionState.OPEN:
            return False
        if not self._transport_open():
            await self.close("Transport closed", send_close=False)
            return False

        context = self.store.get(self.connection_id)
        if context is None:
            await self.close("Context missing")
            return False

        idle = self.store.clock() - context.last_ping_at
        if idle > self.settings.heartbeat_timeout:
            logger.warning(
                f"No ping for {idle:.0f}s, closing {self.connection_id}",
                extra=self._log_extra(
                    event="heartbeat_timeout", duration_ms=round(idle * 1000)
                ),
            )
            await self.close("Ping timeout", code=1000)
            return False
        return True

    # ─── Outbound ────────────────────────────────────────────────

    async def send(self, event: OutboundEvent) -> bool:
        """Send one event. Never raises; False when it could not be delivered."""
        if self.state is not SessionState.OPEN or not self._transport_open():
            return False
        payload = event.encode()
        try:
            await asyncio.wait_for(self.ws.send_text(payload), timeout=self.send_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"WebSocket send timeout ({event.type.value})")
            return False
        except Exception as e:
            logger.debug(f"WebSocket send skipped ({event.type.value}): {e}")
            return False
        logger.debug(f"→ WS OUT ({self.connection_id}): {payload[:200]}")
        return True

    # ─── Inbound ─────────────────────────────────────────────────

    async def handle_frame(self, raw: str | bytes) -> None:
        try:
            message = decode_inbound(raw)
        except ProtocolError as e:
            metrics.inc("frames.rejected")
            logger.warning(
                f"Rejected frame: {e}", extra=self._log_extra(event="frame_rejected")
            )
            await self.send(OutboundEvent.error(e.summary(), e.message_id))
            return

        metrics.inc("frames.inbound", labels={"type": message.type.value})
        try:
            context = self.store.require(self.connection_id)
        except SessionExpiredError as expired:
            logger.warning(str(expired), extra=self._log_extra(event="session_expired"))
            await self.send(OutboundEvent.error(expired.summary(), message.message_id))
            return

        if isinstance(message, PingMessage):
            context.last_ping_at = self.store.clock()
            await self.send(OutboundEvent.pong(message.message_id))
            return

        await self.send(OutboundEvent.ack(message.message_id))

        try:
            if isinstance(message, ScreenDataMessage):
                context.last_screen_data = message.require_image_uri()
                self._maybe_start_analysis(context)
            elif isinstance(message, VoiceDataMessage):
                audio, mime_type = message.require_audio(self.default_audio_mime)
                context.last_voice_data = audio
                context.last_voice_mime = mime_type
                self._maybe_start_analysis(context)
            elif isinstance(message, ChatMessage):
                self._spawn(self._run_chat(message.require_text(), message.message_id))
        except RelayError as e:
            await self.send(OutboundEvent.error(e.summary(), message.message_id))

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _live_context(self) -> ConversationContext | None:
        context = self.store.get(self.connection_id)
        if context is None:
            logger.info(f"Context gone, dropping result for {self.connection_id}")
        return context

    # ─── Combined analysis (screen + voice) ──────────────────────

    def _maybe_start_analysis(self, context: ConversationContext) -> bool:
        if not context.ready_for_analysis:
            return False
        # Set before the task starts so a frame arriving meanwhile can't double-trigger
        context.pending_analysis = True
        self._spawn(self._run_analysis())
        return True

    async def _run_analysis(self) -> None:
        context = self._live_context()
        if context is None:
            return
        screen = context.last_screen_data
        audio = context.last_voice_data
        mime_type = context.last_voice_mime or self.default_audio_mime
        self.analysis_runs += 1
        metrics.inc("analysis.runs")
        timer = PipelineTimer()
        succeeded = False

        try:
            transcript = await self.provider.transcribe(audio, mime_type)
            timer.mark("transcribe")
            context = self._live_context()
            if context is None:
                return
            context.last_transcription = transcript
            await self.send(OutboundEvent.transcription(transcript))

            analysis = await self.provider.analyze_image(
                screen, build_analysis_prompt(transcript)
            )
            timer.mark("vision")
            context = self._live_context()
            if context is None:
                return
            context.last_screen_description = analysis
            await self.send(OutboundEvent.assistant_chunk(analysis))
            context.append_turns({"role": "user", "content": transcript})

            # Only clear what we analysed; frames that arrived meanwhile stay queued
            if context.last_screen_data is screen:
                context.last_screen_data = None
            if context.last_voice_data is audio:
                context.last_voice_data = None
                context.last_voice_mime = None
            succeeded = True
            logger.info(
                f"Combined analysis: {timer.summary()}",
                extra=self._log_extra(
                    event="analysis_done", duration_ms=round(timer.total() * 1000)
                ),
            )
        except RelayError as e:
            metrics.inc("analysis.failures")
            logger.warning(
                f"Combined analysis failed: {e}",
                extra=self._log_extra(event="analysis_failed"),
            )
            await self.send(
                OutboundEvent.error(f"Failed to analyze screen and voice: {e.summary()}")
            )
        except Exception as e:
            metrics.inc("analysis.failures")
            logger.error(f"Combined analysis crashed: {e}", exc_info=True)
            await self.send(
                OutboundEvent.error("Failed to analyze screen and voice: internal error")
            )
        finally:
            context = self.store.get(self.connection_id)
            if context is not None:
                context.pending_analysis = False
                if succeeded:
                    self._maybe_start_analysis(context)

    # ─── Chat ────────────────────────────────────────────────────

    async def _run_chat(self, text: str, message_id: str) -> None:
        context = self._live_context()
        if context is None:
            return
        try:
            self.provider.ensure_configured()
            messages = build_chat_messages(context, text, self.settings.system_prompt)

            if self.settings.stream_chat:
                aggregator = StreamingAggregator(self.send, error_message_id=message_id)
                result = await aggregator.relay(
                    iter_sse_deltas(self.provider.stream_chat(messages))
                )
                if not result.completed:
                    return  # failure already reported by the aggregator
                reply = result.text
            else:
                reply = await self.provider.complete_chat(messages)
                await self.send(OutboundEvent.assistant_chunk(reply))

            context = self._live_context()
            if context is None:
                return
            context.append_turns(
                {"role": "user", "content": text},
                {"role": "assistant", "content": reply},
            )
        except RelayError as e:
            logger.warning(
                f"Chat failed: {e}", extra=self._log_extra(event="chat_failed")
            )
            await self.send(
                OutboundEvent.error(f"Failed to process message: {e.summary()}", message_id)
            )
        except Exception as e:
            logger.error(f"Chat crashed: {e}", exc_info=True)
            await self.send(
                OutboundEvent.error("Failed to process message: internal error", message_id)
            )

    def __repr__(self) -> str:
        return f"<Session(id={self.connection_id}, state={self.state.value})>"
