"""
Sightline Logging — readable console output in dev, one JSON object per line in prod.

    SIGHTLINE_LOG_LEVEL   DEBUG / INFO / WARNING / ERROR     (default INFO)
    SIGHTLINE_LOG_FORMAT  text / json                        (default text)
    SIGHTLINE_LOG_COLOR   true / false / auto                (default auto: TTY only)

Connection-scoped records carry ``connection_id`` and an ``event`` name via
``extra=``; the text formatter appends the connection id, the JSON formatter
lifts every known extra to the top level.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import sys
import time
from datetime import datetime, timezone

_RESET = "\033[0m"
_DIM = "\033[2m"
_LEVEL_COLORS = {
    logging.DEBUG: "\033[36m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[1;31m",
}

# extra={...} keys that StructuredFormatter promotes into the JSON entry
LOG_FIELDS = (
    "connection_id",
    "event",
    "operation",
    "status",
    "reason",
    "message_type",
    "duration_ms",
)

# Chatty per-request loggers from the HTTP and server stack
_NOISY_LOGGERS = ("httpx", "httpcore", "openai", "websockets", "uvicorn.access")


class ColorFormatter(logging.Formatter):
    """Console formatter: ``12:00:01 [sightline.session] INFO: msg (conn=ab12cd)``."""

    def __init__(self, use_color: bool = True):
        super().__init__(
            fmt="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
            datefmt="%H:%M:%S",
        )
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        # Handlers share the record, so decorate a copy
        view = copy.copy(record)
        if self.use_color:
            view.levelname = (
                f"{_LEVEL_COLORS.get(record.levelno, '')}{record.levelname}{_RESET}"
            )
            view.name = f"{_DIM}{record.name}{_RESET}"
        line = super().format(view)

        connection_id = getattr(record, "connection_id", None)
        if connection_id:
            suffix = f"(conn={connection_id[:8]})"
            line += f" {_DIM}{suffix}{_RESET}" if self.use_color else f" {suffix}"
        return line


class StructuredFormatter(logging.Formatter):
    """JSON lines for log aggregation; enabled with SIGHTLINE_LOG_FORMAT=json."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict = {
            "time": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "severity": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(
            {key: getattr(record, key) for key in LOG_FIELDS if hasattr(record, key)}
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class PipelineTimer:
    """Per-stage durations for one combined analysis.

        timer = PipelineTimer()
        ...transcribe...
        timer.mark("transcribe")
        ...vision...
        timer.mark("vision")
        timer.summary()  # "transcribe 0.4s, vision 2.1s (total 2.5s)"
    """

    def __init__(self):
        self._started = time.monotonic()
        self._last = self._started
        self._stages: dict[str, float] = {}

    def mark(self, stage: str) -> None:
        now = time.monotonic()
        self._stages[stage] = now - self._last
        self._last = now

    def elapsed(self, stage: str) -> float | None:
        """Seconds spent in ``stage``, None if it was never marked."""
        return self._stages.get(stage)

    def total(self) -> float:
        return time.monotonic() - self._started

    def summary(self) -> str:
        stages = ", ".join(f"{name} {secs:.1f}s" for name, secs in self._stages.items())
        total = f"total {self.total():.1f}s"
        return f"{stages} ({total})" if stages else total


def _use_color() -> bool:
    setting = os.getenv("SIGHTLINE_LOG_COLOR", "auto").lower()
    if setting in ("true", "false"):
        return setting == "true"
    return sys.stdout.isatty()


def setup_logging(level: str | None = None, log_format: str | None = None) -> None:
    """Install the Sightline handler on the root logger.

    Arguments override SIGHTLINE_LOG_LEVEL / SIGHTLINE_LOG_FORMAT. Safe to
    call again: the root handlers are replaced, not stacked.
    """
    level_name = (level or os.getenv("SIGHTLINE_LOG_LEVEL", "INFO")).upper()
    numeric_level = logging.getLevelName(level_name)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO
    log_format = (log_format or os.getenv("SIGHTLINE_LOG_FORMAT", "text")).lower()

    if log_format == "json":
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = ColorFormatter(use_color=_use_color())

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(numeric_level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("sightline").debug(
        "Logging configured (level=%s, format=%s)", level_name, log_format
    )
