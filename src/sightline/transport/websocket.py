"""
WebSocket Transport — the listener that owns the context registry.

FastAPI hands every accepted /ws connection to handle_connection(), which
builds a Session around it, passing the shared ContextStore and inference
provider by reference. The transport tracks live sessions for status
reporting and graceful shutdown; it holds no conversation state itself.
"""

from __future__ import annotations

import logging

from fastapi import WebSocket

from sightline.core.config import SessionConfig
from sightline.providers.base import InferenceProvider
from sightline.session.context import ContextStore
from sightline.session.machine import Session

logger = logging.getLogger(__name__)


class WebSocketTransport:
    name = "websocket"

    def __init__(
        self,
        store: ContextStore,
        provider: InferenceProvider,
        settings: SessionConfig | None = None,
    ):
        self.store = store
        self.provider = provider
        self.settings = settings
        # connection_id → Session
        self._sessions: dict[str, Session] = {}
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """FastAPI accepts the sockets; this just marks the listener live."""
        self._running = True
        logger.info("WebSocket transport ready")

    async def stop(self) -> None:
        """Close every live session."""
        self._running = False
        for session in list(self._sessions.values()):
            await session.close("Server shutdown", code=1001)
        self._sessions.clear()
        logger.info("WebSocket transport stopped")

    async def handle_connection(self, websocket: WebSocket) -> Session:
        """Run one connection to completion."""
        session = Session(websocket, self.store, self.provider, self.settings)
        self._sessions[session.connection_id] = session
        try:
            await session.run()
        finally:
            self._sessions.pop(session.connection_id, None)
        return session

    def get_session(self, connection_id: str) -> Session | None:
        return self._sessions.get(connection_id)

    async def get_status(self) -> dict:
        return {
            "transport": self.name,
            "running": self._running,
            "connections": len(self._sessions),
            "contexts": len(self.store),
        }

    def __repr__(self) -> str:
        return f"<WebSocketTransport(connections={len(self._sessions)})>"
