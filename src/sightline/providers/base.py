"""
Provider base class — the boundary to upstream inference.

One interface covers the three things a session needs from upstream:
transcription, chat completion (unary or streamed) and image analysis.
Implementations must raise ConfigurationError before issuing a request when
credentials are unusable, and UpstreamError for any failed call.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncIterator


class InferenceProvider(ABC):
    """Upstream transcription / chat / vision interface."""

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...

    @abstractmethod
    def ensure_configured(self) -> None:
        """Raise ConfigurationError if the credential is missing or malformed."""
        ...

    @abstractmethod
    async def transcribe(self, audio_data: bytes, mime_type: str) -> str:
        ...

    @abstractmethod
    async def complete_chat(self, messages: list[dict]) -> str:
        """Unary chat completion. Returns the assistant text."""
        ...

    @abstractmethod
    def stream_chat(self, messages: list[dict]) -> AsyncIterator[str]:
        """Streamed chat completion.

        Yields the raw event-stream body as text chunks, in arrival order.
        Chunk boundaries are arbitrary: a chunk may hold several lines or
        part of one. Use sightline.llm.streaming to turn it into deltas.
        """
        ...

    @abstractmethod
    async def analyze_image(self, image_data_uri: str, prompt: str) -> str:
        ...

    async def health_check(self) -> dict:
        return {"provider": self.__class__.__name__, "status": "unknown"}
