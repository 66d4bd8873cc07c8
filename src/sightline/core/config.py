"""
Sightline Configuration — single source of truth for all settings.

Reads from environment variables (and a local .env) with sensible defaults.
Just env vars, grouped by concern.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from sightline.core.errors import ConfigurationError

load_dotenv()

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def validate_api_key(api_key: str) -> str:
    """Return the key if it looks usable, raise ConfigurationError otherwise."""
    if not api_key:
        raise ConfigurationError("OPENAI_API_KEY is not set")
    if any(ch.isspace() for ch in api_key):
        raise ConfigurationError("OPENAI_API_KEY contains whitespace")
    if not api_key.startswith("sk-"):
        raise ConfigurationError("OPENAI_API_KEY is malformed (expected 'sk-' prefix)")
    return api_key


@dataclass(frozen=True)
class UpstreamConfig:
    """Inference provider settings."""

    provider: str = "openai"
    api_key: str = ""
    base_url: str = "https://api.openai.com/v1"
    transcription_model: str = "whisper-1"
    chat_model: str = "gpt-4-turbo"
    vision_model: str = "gpt-4o"
    max_tokens: int = 500
    timeout: float = 60.0
    max_retries: int = 2
    default_audio_mime: str = "audio/webm"

    @classmethod
    def from_env(cls) -> UpstreamConfig:
        return cls(
            provider=os.getenv("SIGHTLINE_PROVIDER", "openai"),
            api_key=os.getenv("OPENAI_API_KEY", ""),
            base_url=os.getenv(
                "SIGHTLINE_UPSTREAM_BASE_URL", "https://api.openai.com/v1"
            ),
            transcription_model=os.getenv(
                "SIGHTLINE_TRANSCRIPTION_MODEL", "whisper-1"
            ),
            chat_model=os.getenv("SIGHTLINE_CHAT_MODEL", "gpt-4-turbo"),
            vision_model=os.getenv("SIGHTLINE_VISION_MODEL", "gpt-4o"),
            max_tokens=int(os.getenv("SIGHTLINE_MAX_TOKENS", "500")),
            timeout=float(os.getenv("SIGHTLINE_UPSTREAM_TIMEOUT", "60.0")),
            max_retries=int(os.getenv("SIGHTLINE_UPSTREAM_MAX_RETRIES", "2")),
            default_audio_mime=os.getenv(
                "SIGHTLINE_DEFAULT_AUDIO_MIME", "audio/webm"
            ),
        )


@dataclass(frozen=True)
class SessionConfig:
    """Per-connection behaviour: liveness, history, streaming."""

    heartbeat_interval: float = 30.0  # seconds between liveness checks
    heartbeat_timeout: float = 45.0  # seconds without a ping before closing
    max_history: int = 10
    stream_chat: bool = True
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    @classmethod
    def from_env(cls) -> SessionConfig:
        return cls(
            heartbeat_interval=float(
                os.getenv("SIGHTLINE_HEARTBEAT_INTERVAL", "30.0")
            ),
            heartbeat_timeout=float(os.getenv("SIGHTLINE_HEARTBEAT_TIMEOUT", "45.0")),
            max_history=int(os.getenv("SIGHTLINE_MAX_HISTORY", "10")),
            stream_chat=_env_bool("SIGHTLINE_STREAM_CHAT", True),
            system_prompt=os.getenv("SIGHTLINE_SYSTEM_PROMPT", DEFAULT_SYSTEM_PROMPT),
        )


@dataclass(frozen=True)
class ServerConfig:
    """Server settings."""

    host: str = "0.0.0.0"
    port: int = 8000
    ws_send_timeout: float = 5.0

    @classmethod
    def from_env(cls) -> ServerConfig:
        return cls(
            host=os.getenv("SIGHTLINE_HOST", "0.0.0.0"),
            port=int(os.getenv("SIGHTLINE_PORT", "8000")),
            ws_send_timeout=float(os.getenv("SIGHTLINE_WS_SEND_TIMEOUT", "5.0")),
        )


@dataclass(frozen=True)
class SightlineConfig:
    """Root configuration object."""

    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def from_env(cls) -> SightlineConfig:
        return cls(
            upstream=UpstreamConfig.from_env(),
            session=SessionConfig.from_env(),
            server=ServerConfig.from_env(),
        )


# Singleton: import the module and read config_module.config so reloads apply
config = SightlineConfig.from_env()


def reload_config() -> SightlineConfig:
    """Re-read the environment and replace the module-level config."""
    global config
    config = SightlineConfig.from_env()
    return config
