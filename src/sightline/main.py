"""
Sightline — screen + voice relay.

WebSocket clients stream screen captures, voice clips and chat messages;
Sightline forwards them to transcription / vision / chat inference and
streams the text back. A small HTTP surface covers clients that can't hold a
socket open.

Run: uvicorn sightline.main:app --host 0.0.0.0 --port 8000
 or: sightline
"""

from __future__ import annotations

import json
import logging
from typing import AsyncGenerator, AsyncIterator

from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse

from sightline import __version__
from sightline.core.config import config
from sightline.core.errors import ConfigurationError, UpstreamError
from sightline.core.logging import setup_logging
from sightline.core.metrics import metrics
from sightline.providers import get_inference_provider
from sightline.session.context import ContextStore
from sightline.transport.websocket import WebSocketTransport

# --- Setup ---
setup_logging()
logger = logging.getLogger("sightline")

# --- App ---
app = FastAPI(title="Sightline", version=__version__)

# --- Shared state ---
inference_provider = get_inference_provider()
context_store = ContextStore(max_history=config.session.max_history)
ws_transport = WebSocketTransport(context_store, inference_provider)


@app.on_event("startup")
async def startup():
    await inference_provider.start()
    await ws_transport.start()
    logger.info(
        "Sightline v%s ready (provider=%s, heartbeat=%ss/%ss, history=%s)",
        __version__,
        config.upstream.provider,
        config.session.heartbeat_interval,
        config.session.heartbeat_timeout,
        config.session.max_history,
    )


@app.on_event("shutdown")
async def shutdown():
    await ws_transport.stop()
    await inference_provider.stop()


def _liveness() -> JSONResponse:
    return JSONResponse({"status": "ok", "service": "sightline"})


# ─── WebSocket ───────────────────────────────────────────────────


@app.websocket("/")
@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    """
    Protocol:
      Client sends:
        {"type": "ping", "messageId": "..."}
        {"type": "screen_data", "payload": {"data": "<base64 image>"}, "messageId": "..."}
        {"type": "voice_data", "payload": {"data": "<base64 audio>"}, "messageId": "..."}
        {"type": "chat", "payload": {"message": "..."}, "messageId": "..."}

      Server sends:
        {"type": "ack" | "transcription" | "gpt_response" | "error",
         "payload": {"content": "...", "timestamp": 1700000000000},
         "messageId": "..."}
    """
    await ws_transport.handle_connection(ws)


# ─── HTTP fallback ───────────────────────────────────────────────


@app.get("/")
async def root():
    return _liveness()


@app.post("/")
async def http_action(request: Request, action: str | None = None):
    """POST /?action=transcribe | /?action=chat; anything else is a liveness probe."""
    logger.info(f"HTTP action requested: {action}")
    if action == "transcribe":
        return await _handle_transcribe(request)
    if action == "chat":
        return await _handle_chat(request)
    return _liveness()


async def _handle_transcribe(request: Request):
    audio = await request.body()
    if not audio:
        return JSONResponse({"error": "Empty audio body"}, status_code=400)

    mime_type = request.headers.get("content-type", "")
    if not mime_type.startswith("audio/"):
        mime_type = config.upstream.default_audio_mime

    try:
        text = await inference_provider.transcribe(audio, mime_type)
    except ConfigurationError as e:
        return JSONResponse({"error": e.summary()}, status_code=500)
    except UpstreamError as e:
        return JSONResponse({"error": e.summary()}, status_code=502)

    logger.info(f"Transcription done ({len(audio)} bytes): {text[:50]!r}")
    return JSONResponse({"text": text})


async def _handle_chat(request: Request):
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return PlainTextResponse("Invalid JSON body", status_code=400)

    message = body.get("message") if isinstance(body, dict) else None
    if not isinstance(message, str) or not message:
        return PlainTextResponse("Missing message parameter", status_code=400)

    stream = inference_provider.stream_chat([{"role": "user", "content": message}])
    # Pull the first chunk so config/status failures become a JSON error, not a broken stream
    try:
        first = await anext(stream)
    except StopAsyncIteration:
        first = ""
    except ConfigurationError as e:
        return JSONResponse({"error": e.summary()}, status_code=500)
    except UpstreamError as e:
        return JSONResponse({"error": e.summary()}, status_code=502)

    return StreamingResponse(
        _passthrough(first, stream),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


async def _passthrough(
    first: str, stream: AsyncGenerator[str, None]
) -> AsyncIterator[str]:
    try:
        if first:
            yield first
        async for chunk in stream:
            yield chunk
    except UpstreamError as e:
        # Headers are already sent; all we can do is end the stream
        logger.error(f"Chat stream interrupted: {e}")
    finally:
        await stream.aclose()


# ─── Introspection ───────────────────────────────────────────────


@app.get("/health")
async def health():
    return JSONResponse(
        {
            "status": "ok",
            "version": __version__,
            "provider": await inference_provider.health_check(),
            "transport": await ws_transport.get_status(),
        }
    )


@app.get("/metrics")
async def metrics_endpoint():
    return JSONResponse(metrics.snapshot())


def run() -> None:
    import uvicorn

    uvicorn.run(
        "sightline.main:app",
        host=config.server.host,
        port=config.server.port,
    )
