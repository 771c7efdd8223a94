"""In-process metrics for registration runs and notification delivery.

Counters track outcomes (``registration_runs_total{outcome=...}``,
``notifications_delivered_total{method=...,result=...}``), histograms track
durations (``registration_run_seconds``). Nothing is exported over the
network; the API exposes a snapshot for operators.
"""

import threading
import time
from contextlib import contextmanager
from typing import Any, Iterator, Optional


class MetricsCollector:
    """Thread-safe metrics collector keyed by name plus sorted labels."""

    def __init__(self):
        self._lock = threading.RLock()
        self._counters: dict[str, float] = {}
        self._gauges: dict[str, float] = {}
        self._histograms: dict[str, list[float]] = {}

    @staticmethod
    def _make_key(name: str, labels: Optional[dict[str, str]] = None) -> str:
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def increment(
        self,
        name: str,
        value: float = 1.0,
        labels: Optional[dict[str, str]] = None,
    ) -> None:
        """Increment a counter."""
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + value

    def set_gauge(
        self,
        name: str,
        value: float,
        labels: Optional[dict[str, str]] = None,
    ) -> None:
        """Set a gauge to an absolute value."""
        key = self._make_key(name, labels)
        with self._lock:
            self._gauges[key] = value

    def record_histogram(
        self,
        name: str,
        value: float,
        labels: Optional[dict[str, str]] = None,
    ) -> None:
        """Append an observation to a histogram."""
        key = self._make_key(name, labels)
        with self._lock:
            self._histograms.setdefault(key, []).append(value)

    @contextmanager
    def timer(self, name: str, labels: Optional[dict[str, str]] = None) -> Iterator[None]:
        """Record the wall-clock duration of the wrapped block in seconds."""
        started = time.monotonic()
        try:
            yield
        finally:
            self.record_histogram(name, time.monotonic() - started, labels)

    def get(self, name: str, labels: Optional[dict[str, str]] = None) -> float:
        """Return a counter or gauge value, 0 when never recorded."""
        key = self._make_key(name, labels)
        with self._lock:
            if key in self._counters:
                return self._counters[key]
            return self._gauges.get(key, 0)

    def get_histogram_stats(
        self,
        name: str,
        labels: Optional[dict[str, str]] = None,
    ) -> dict[str, float]:
        """Summarize a histogram.

        Returns:
            Dictionary with count, min, max, avg and, when populated, p50/p95
        """
        key = self._make_key(name, labels)
        with self._lock:
            values = sorted(self._histograms.get(key, []))

        if not values:
            return {"count": 0, "min": 0, "max": 0, "avg": 0}

        count = len(values)
        return {
            "count": count,
            "min": values[0],
            "max": values[-1],
            "avg": sum(values) / count,
            "p50": values[int(count * 0.5)],
            "p95": values[min(int(count * 0.95), count - 1)],
        }

    def get_all(self) -> dict[str, Any]:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "histograms": {
                    key: self.get_histogram_stats(key) for key in self._histograms
                },
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()


_collector = MetricsCollector()


def get_collector() -> MetricsCollector:
    """Get the process-wide metrics collector."""
    return _collector
