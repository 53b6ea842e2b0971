"""
In-process metrics for the reconciliation engine.

Series are keyed ``name{label=value,...}`` so a snapshot is a flat,
JSON-friendly dict that ``linkstate`` logs on shutdown:

    metrics.inc("engine.updates.failed", labels={"kind": "SnapshotUpdate"})
    metrics.gauge_set("engine.inbound.depth", 3)
    with metrics.timer("api.latency_ms", labels={"command": "send"}):
        ...
"""

from __future__ import annotations

import time
from collections import Counter, deque
from contextlib import contextmanager


def series_key(name: str, labels: dict | None = None) -> str:
    """``engine.updates.ignored{kind=authentication-progress}``"""
    if not labels:
        return name
    rendered = ",".join(f"{k}={labels[k]}" for k in sorted(labels))
    return f"{name}{{{rendered}}}"


def _percentile(ordered: list[float], q: float) -> float:
    return ordered[min(int(len(ordered) * q), len(ordered) - 1)]


class MetricsCollector:
    HISTOGRAM_MAX_SAMPLES = 1000

    _instance: "MetricsCollector | None" = None

    @classmethod
    def get(cls) -> "MetricsCollector":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def __init__(self) -> None:
        self._counters: Counter[str] = Counter()
        self._gauges: dict[str, float] = {}
        self._samples: dict[str, deque[float]] = {}
        self._started_at = time.monotonic()

    def inc(self, name: str, value: int = 1, labels: dict | None = None) -> None:
        self._counters[series_key(name, labels)] += value

    def counter(self, name: str, labels: dict | None = None) -> int:
        return self._counters[series_key(name, labels)]

    def gauge_set(self, name: str, value: float, labels: dict | None = None) -> None:
        self._gauges[series_key(name, labels)] = value

    def observe(self, name: str, value: float, labels: dict | None = None) -> None:
        """Add a sample; only the newest HISTOGRAM_MAX_SAMPLES are kept."""
        key = series_key(name, labels)
        window = self._samples.get(key)
        if window is None:
            window = self._samples[key] = deque(maxlen=self.HISTOGRAM_MAX_SAMPLES)
        window.append(value)

    @contextmanager
    def timer(self, name: str, labels: dict | None = None):
        """Observe the wall time of the block in milliseconds, even if it raises."""
        started = time.perf_counter()
        try:
            yield
        finally:
            self.observe(name, (time.perf_counter() - started) * 1000, labels)

    def snapshot(self) -> dict:
        histograms = {}
        for key, window in self._samples.items():
            ordered = sorted(window)
            histograms[key] = {
                "count": len(ordered),
                "min": ordered[0],
                "max": ordered[-1],
                "p50": _percentile(ordered, 0.5),
                "p95": _percentile(ordered, 0.95),
                "p99": _percentile(ordered, 0.99),
            }
        return {
            "uptime_seconds": round(time.monotonic() - self._started_at, 1),
            "counters": {k: v for k, v in self._counters.items() if v},
            "gauges": dict(self._gauges),
            "histograms": histograms,
        }

    def reset(self) -> None:
        self._counters.clear()
        self._gauges.clear()
        self._samples.clear()


metrics = MetricsCollector.get()
