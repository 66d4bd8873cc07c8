"""
Sightline Metrics — in-process counters, gauges and latency histograms.

No external dependencies; served as JSON from /metrics and /health.

Usage:
    from sightline.core.metrics import metrics

    metrics.inc("upstream.requests", labels={"operation": "transcribe"})
    metrics.observe("upstream.latency_ms", 412.0, labels={"operation": "vision"})
    metrics.gauge_set("sessions.active", 3)

    snapshot = metrics.snapshot()
"""

from __future__ import annotations

import time
from collections import defaultdict, deque


class MetricsCollector:
    """Process-wide metrics: counters, gauges, rolling-window histograms."""

    # Rolling window size for histograms
    HISTOGRAM_MAX_SAMPLES = 1000

    def __init__(self) -> None:
        self._counters: dict[str, int] = defaultdict(int)
        self._gauges: dict[str, float] = defaultdict(float)
        self._histograms: dict[str, deque[float]] = defaultdict(
            lambda: deque(maxlen=self.HISTOGRAM_MAX_SAMPLES)
        )
        self._started_at: float = time.time()

    # ── Counters ──────────────────────────────────────────────────

    def inc(self, name: str, value: int = 1, labels: dict | None = None) -> None:
        self._counters[self._key(name, labels)] += value

    def counter(self, name: str, labels: dict | None = None) -> int:
        return self._counters.get(self._key(name, labels), 0)

    # ── Gauges ────────────────────────────────────────────────────

    def gauge_set(self, name: str, value: float, labels: dict | None = None) -> None:
        self._gauges[self._key(name, labels)] = value

    def gauge(self, name: str, labels: dict | None = None) -> float:
        return self._gauges.get(self._key(name, labels), 0.0)

    # ── Histograms ────────────────────────────────────────────────

    def observe(self, name: str, value: float, labels: dict | None = None) -> None:
        """Record one observation; the oldest sample drops when the window is full."""
        self._histograms[self._key(name, labels)].append(value)

    # ── Snapshot ──────────────────────────────────────────────────

    def snapshot(self) -> dict:
        """Counters, gauges and histogram summaries (count/min/max/p50/p95)."""
        histograms: dict[str, dict] = {}
        for key, samples in self._histograms.items():
            if not samples:
                continue
            ordered = sorted(samples)
            n = len(ordered)
            histograms[key] = {
                "count": n,
                "min": ordered[0],
                "max": ordered[-1],
                "p50": ordered[n // 2],
                "p95": ordered[min(int(n * 0.95), n - 1)],
            }

        return {
            "uptime_seconds": round(time.time() - self._started_at, 1),
            "counters": dict(self._counters),
            "gauges": dict(self._gauges),
            "histograms": histograms,
        }

    def reset(self) -> None:
        self._counters.clear()
        self._gauges.clear()
        self._histograms.clear()

    def _key(self, name: str, labels: dict | None) -> str:
        """Metric key with optional label suffix, e.g. "upstream.errors{operation=chat}"."""
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"


# Process-wide instance, import this directly
metrics = MetricsCollector()
