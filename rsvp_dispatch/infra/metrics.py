# rsvp_dispatch/infra/metrics.py
"""
In-process counters and histograms, served as JSON by GET /metrics.

Keys are ``name{label=value,...}`` with labels sorted, so the same series
is addressed identically from every call site.
"""
from __future__ import annotations
import time
from collections import defaultdict, deque
from threading import Lock

from rsvp_dispatch.infra.logging_config import get_logger

logger = get_logger(__name__)

# Newest samples kept per histogram; a long-running worker must not grow without bound
HISTOGRAM_WINDOW = 10_000


def summarize(values) -> dict:
    if not values:
        return {"count": 0, "min": 0, "max": 0, "avg": 0, "p95": 0, "p99": 0}

    ordered = sorted(values)
    count = len(ordered)

    def percentile(p: float) -> float:
        return ordered[min(int(count * p), count - 1)]

    return {
        "count": count,
        "min": ordered[0],
        "max": ordered[-1],
        "avg": sum(ordered) / count,
        "p95": percentile(0.95),
        "p99": percentile(0.99),
    }


def series_key(name: str, labels: dict | None) -> str:
    if not labels:
        return name
    return name + "{" + ",".join(f"{k}={v}" for k, v in sorted(labels.items())) + "}"


class MetricsCollector:
    """Thread-safe: Twilio sends run in executor threads and report from there."""

    def __init__(self):
        self._counters: dict[str, int] = defaultdict(int)
        self._histograms: dict[str, deque] = defaultdict(lambda: deque(maxlen=HISTOGRAM_WINDOW))
        self._lock = Lock()

    def inc_counter(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        key = series_key(name, labels)
        with self._lock:
            self._counters[key] += amount

    def observe_histogram(self, name: str, value: float, labels: dict | None = None) -> None:
        key = series_key(name, labels)
        with self._lock:
            self._histograms[key].append(value)

    def get_counter(self, name: str, **labels) -> int:
        with self._lock:
            return self._counters.get(series_key(name, labels or None), 0)

    def get_metrics(self) -> dict:
        with self._lock:
            counters = dict(self._counters)
            samples = {key: list(values) for key, values in self._histograms.items()}
        return {
            "counters": counters,
            "histograms": {key: summarize(values) for key, values in samples.items()},
        }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
        logger.info("Metrics reset")


_metrics = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    return _metrics


def inc_counter(name: str, amount: int = 1, **labels) -> None:
    _metrics.inc_counter(name, amount, labels or None)


def observe_histogram(name: str, value: float, **labels) -> None:
    _metrics.observe_histogram(name, value, labels or None)


class Timer:
    """Records the elapsed seconds of a ``with`` block into a histogram."""

    def __init__(self, metric_name: str, **labels):
        self.metric_name = metric_name
        self.labels = labels
        self._started: float | None = None

    def __enter__(self):
        self._started = time.monotonic()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._started is not None:
            observe_histogram(self.metric_name, time.monotonic() - self._started, **self.labels)


class DispatchMetrics:
    """Named series emitted by the dispatch engine"""

    @staticmethod
    def attempt_finished(channel: str, status: str) -> None:
        inc_counter("dispatch_attempts_total", channel=channel, status=status)

    @staticmethod
    def window_processed() -> None:
        inc_counter("dispatch_windows_total")

    @staticmethod
    def quota_denied(channel: str) -> None:
        inc_counter("quota_denied_total", channel=channel)

    @staticmethod
    def record_failed() -> None:
        inc_counter("attempt_record_failures_total")

    @staticmethod
    def job_finished(status: str) -> None:
        inc_counter("bulk_jobs_total", status=status)

    @staticmethod
    def database_error(operation: str) -> None:
        inc_counter("database_errors_total", operation=operation)

    @staticmethod
    def track_provider_call(channel: str) -> Timer:
        return Timer("provider_call_seconds", channel=channel)
