"""
OpenAI Inference Provider — Whisper transcription, GPT chat and vision.

All calls go through one AsyncOpenAI client, created lazily once the
credential validates. Every call is wrapped so that SDK and transport
exceptions surface as UpstreamError (status code + body), and latency and
failures land in metrics.

Chat streaming returns the raw event-stream text rather than parsed SDK
chunks: the same bytes are relayed verbatim by the HTTP fallback, and
sessions run them through the SSE aggregator.
"""

from __future__ import annotations

import json
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    OpenAIError,
)

import sightline.core.config as config_module
from sightline.core.config import UpstreamConfig, validate_api_key
from sightline.core.errors import ConfigurationError, UpstreamError
from sightline.core.metrics import metrics
from sightline.providers.base import InferenceProvider

logger = logging.getLogger(__name__)

# Whisper infers the container format from the filename extension
_AUDIO_EXTENSIONS = {
    "audio/webm": "webm",
    "audio/ogg": "ogg",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/wave": "wav",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/mp4": "m4a",
    "audio/m4a": "m4a",
    "audio/x-m4a": "m4a",
    "audio/flac": "flac",
}


def audio_filename(mime_type: str) -> str:
    """Upload filename for a MIME type, e.g. "audio/webm;codecs=opus" -> "audio.webm"."""
    base = mime_type.split(";", 1)[0].strip().lower()
    return f"audio.{_AUDIO_EXTENSIONS.get(base, 'webm')}"


def _error_body(exc: APIStatusError) -> str | None:
    body = exc.body
    if body is None:
        return None
    if isinstance(body, (dict, list)):
        return json.dumps(body)
    return str(body)


def to_upstream_error(operation: str, exc: Exception) -> UpstreamError:
    """Translate an SDK / httpx exception into an UpstreamError."""
    if isinstance(exc, APIStatusError):
        return UpstreamError(
            operation, status_code=exc.status_code, body=_error_body(exc)
        )
    if isinstance(exc, APITimeoutError):
        return UpstreamError(operation, detail="request timed out")
    if isinstance(exc, APIConnectionError):
        return UpstreamError(operation, detail="connection error")
    if isinstance(exc, httpx.HTTPError):
        return UpstreamError(operation, detail=f"{type(exc).__name__}: {exc}")
    return UpstreamError(operation, detail=str(exc) or type(exc).__name__)


class OpenAIInferenceProvider(InferenceProvider):
    def __init__(
        self,
        settings: UpstreamConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._settings = settings
        self._http_client = http_client
        self.client: AsyncOpenAI | None = None

    @property
    def settings(self) -> UpstreamConfig:
        return self._settings or config_module.config.upstream

    async def start(self) -> None:
        try:
            self._get_client()
        except ConfigurationError as e:
            # Keep serving: every request re-validates and reports the problem
            logger.error(f"Upstream not configured: {e}")
            return
        logger.info(
            "OpenAI inference ready (chat=%s, vision=%s, transcription=%s)",
            self.settings.chat_model,
            self.settings.vision_model,
            self.settings.transcription_model,
        )

    async def stop(self) -> None:
        if self.client:
            await self.client.close()
        self.client = None

    def ensure_configured(self) -> None:
        validate_api_key(self.settings.api_key)

    def _get_client(self) -> AsyncOpenAI:
        self.ensure_configured()
        if self.client is None:
            kwargs: dict = {
                "api_key": self.settings.api_key,
                "base_url": self.settings.base_url,
                "timeout": self.settings.timeout,
                "max_retries": self.settings.max_retries,
            }
            if self._http_client is not None:
                kwargs["http_client"] = self._http_client
            self.client = AsyncOpenAI(**kwargs)
        return self.client

    @asynccontextmanager
    async def _call(self, operation: str):
        """Metrics, logging and error translation around one upstream call."""
        started = time.monotonic()
        labels = {"operation": operation}
        metrics.inc("upstream.requests", labels=labels)
        logger.debug(
            f"Upstream {operation} started",
            extra={"event": "upstream_start", "operation": operation},
        )
        try:
            yield
        except (OpenAIError, httpx.HTTPError) as exc:
            error = to_upstream_error(operation, exc)
            metrics.inc("upstream.errors", labels=labels)
            logger.warning(
                f"Upstream {operation} failed: {error}",
                extra={
                    "event": "upstream_failure",
                    "operation": operation,
                    "status": error.status_code,
                },
            )
            raise error from exc
        finally:
            elapsed_ms = (time.monotonic() - started) * 1000
            metrics.observe("upstream.latency_ms", elapsed_ms, labels=labels)

    async def transcribe(self, audio_data: bytes, mime_type: str) -> str:
        client = self._get_client()
        async with self._call("transcribe"):
            result = await client.audio.transcriptions.create(
                model=self.settings.transcription_model,
                file=(audio_filename(mime_type), audio_data, mime_type),
            )
        return result.text

    async def complete_chat(self, messages: list[dict]) -> str:
        client = self._get_client()
        async with self._call("chat"):
            response = await client.chat.completions.create(
                model=self.settings.chat_model,
                messages=messages,
                max_tokens=self.settings.max_tokens,
            )
        return self._first_content("chat", response)

    async def stream_chat(self, messages: list[dict]) -> AsyncIterator[str]:
        client = self._get_client()
        async with self._call("chat_stream"):
            async with client.chat.completions.with_streaming_response.create(
                model=self.settings.chat_model,
                messages=messages,
                max_tokens=self.settings.max_tokens,
                stream=True,
            ) as response:
                async for text in response.iter_text():
                    yield text

    async def analyze_image(self, image_data_uri: str, prompt: str) -> str:
        client = self._get_client()
        async with self._call("vision"):
            response = await client.chat.completions.create(
                model=self.settings.vision_model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": prompt},
                            {"type": "image_url", "image_url": {"url": image_data_uri}},
                        ],
                    }
                ],
                max_tokens=self.settings.max_tokens,
            )
        return self._first_content("vision", response)

    @staticmethod
    def _first_content(operation: str, response) -> str:
        if not response.choices:
            raise UpstreamError(operation, detail="response contained no choices")
        return response.choices[0].message.content or ""

    async def health_check(self) -> dict:
        try:
            self.ensure_configured()
            status = "ready" if self.client else "configured"
        except ConfigurationError as e:
            status = f"misconfigured: {e}"
        return {
            "provider": "openai",
            "chat_model": self.settings.chat_model,
            "vision_model": self.settings.vision_model,
            "transcription_model": self.settings.transcription_model,
            "status": status,
        }
