"""
Conversation Context Store — per-connection correlation state.

One ConversationContext per live connection, keyed by connection id. The
store is owned by the WebSocket listener and handed to each Session; a
session only ever reads and writes its own entry.

Contexts live in memory only. They are created when the upgrade completes
and deleted exactly once when the connection closes, errors or times out.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from sightline.core.errors import SessionExpiredError
from sightline.core.metrics import metrics

logger = logging.getLogger(__name__)

DEFAULT_MAX_HISTORY = 10


@dataclass
class ConversationContext:
    """Mutable state for one connection.

    The screen/voice fields are latest-value slots: a new frame overwrites
    the previous one. ``pending_analysis`` guards against two combined
    analyses running at once for this connection.
    """

    connection_id: str
    max_history: int = DEFAULT_MAX_HISTORY
    message_history: list[dict[str, str]] = field(default_factory=list)
    last_screen_data: str | None = None  # image data URI
    last_screen_description: str | None = None
    last_voice_data: bytes | None = None
    last_voice_mime: str | None = None
    last_transcription: str | None = None
    last_ping_at: float = field(default_factory=time.monotonic)
    pending_analysis: bool = False

    def append_turns(self, *turns: dict[str, str]) -> None:
        """Append turns then drop the oldest beyond ``max_history``."""
        self.message_history.extend(turns)
        self.trim_history()

    def trim_history(self) -> None:
        overflow = len(self.message_history) - self.max_history
        if overflow > 0:
            del self.message_history[:overflow]

    @property
    def has_screen_and_voice(self) -> bool:
        return self.last_screen_data is not None and self.last_voice_data is not None

    @property
    def ready_for_analysis(self) -> bool:
        return self.has_screen_and_voice and not self.pending_analysis


class ContextStore:
    """Process-wide map of connection id -> ConversationContext."""

    def __init__(
        self,
        max_history: int = DEFAULT_MAX_HISTORY,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_history = max_history
        self.clock = clock
        self._contexts: dict[str, ConversationContext] = {}

    def create(self, connection_id: str) -> ConversationContext:
        if connection_id in self._contexts:
            raise ValueError(f"Context already exists for {connection_id}")
        context = ConversationContext(
            connection_id=connection_id,
            max_history=self.max_history,
            last_ping_at=self.clock(),
        )
        self._contexts[connection_id] = context
        metrics.gauge_set("sessions.active", len(self._contexts))
        logger.debug(f"Context created: {connection_id}")
        return context

    def get(self, connection_id: str) -> ConversationContext | None:
        return self._contexts.get(connection_id)

    def require(self, connection_id: str) -> ConversationContext:
        context = self._contexts.get(connection_id)
        if context is None:
            raise SessionExpiredError(connection_id)
        return context

    def delete(self, connection_id: str) -> bool:
        """Remove a context. Returns False if it was already gone."""
        context = self._contexts.pop(connection_id, None)
        if context is None:
            return False
        metrics.gauge_set("sessions.active", len(self._contexts))
        logger.debug(f"Context deleted: {connection_id}")
        return True

    def connection_ids(self) -> list[str]:
        return list(self._contexts)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._contexts

    def __len__(self) -> int:
        return len(self._contexts)
