"""
Sightline errors — one hierarchy for everything a handler can report.

Every handler-level failure ends up as a single outbound ``error`` event.
The exception type decides what the client is told:

    ProtocolError          malformed or unrecognized inbound frame
    SessionExpiredError    frame arrived after the context was torn down
    ConfigurationError     upstream credential missing or malformed
    UpstreamError          non-2xx response or transport failure upstream
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for errors that are reported to the client."""

    def summary(self) -> str:
        """Human-readable text for the outbound ``error`` event."""
        return str(self)


class ProtocolError(RelayError):
    """Inbound frame could not be decoded or failed validation."""

    def __init__(self, message: str, message_id: str | None = None):
        super().__init__(message)
        self.message_id = message_id


class UnknownMessageTypeError(ProtocolError):
    """Inbound frame carried a ``type`` we don't handle."""

    def __init__(self, message_type: str, message_id: str | None = None):
        super().__init__(f"Unknown message type: {message_type}", message_id)
        self.message_type = message_type


class SessionExpiredError(RelayError):
    """The connection's context no longer exists."""

    def __init__(self, connection_id: str):
        super().__init__(f"Session expired: {connection_id}")
        self.connection_id = connection_id

    def summary(self) -> str:
        return "Session expired, please reconnect"


class ConfigurationError(RelayError):
    """Upstream credential or setting is missing/invalid."""

    def summary(self) -> str:
        return f"Configuration error: {self}"


class UpstreamError(RelayError):
    """An upstream inference call failed.

    ``status_code`` is None for transport failures (DNS, reset, timeout,
    stream cut short).
    """

    def __init__(
        self,
        operation: str,
        status_code: int | None = None,
        body: str | None = None,
        detail: str | None = None,
    ):
        self.operation = operation
        self.status_code = status_code
        self.body = body
        self.detail = detail
        super().__init__(self._describe())

    def _describe(self) -> str:
        if self.status_code is not None:
            text = f"{self.operation} failed with HTTP {self.status_code}"
        else:
            text = f"{self.operation} failed"
        if self.detail:
            text += f": {self.detail}"
        return text

    def summary(self) -> str:
        text = f"Upstream {self._describe()}"
        if self.body:
            text += f" ({self.body[:200]})"
        return text
