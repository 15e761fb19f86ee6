"""In-memory metrics for task and message lifecycles.

A process-wide :class:`MetricsCollector` keeps one series per metric name
and attribute set; ``GET /metrics`` serves its snapshot. Histograms are
running summaries (count, sum, min, max and cumulative buckets), so memory
stays flat no matter how many values are observed. Each metric holds at
most ``max_series`` attribute sets; further sets fold into one
``{"overflow": "true"}`` series.
"""

from __future__ import annotations

import math
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

METRIC_TASKS_SUBMITTED = "courier_tasks_submitted"
METRIC_TASKS_COMPLETED = "courier_tasks_completed"
METRIC_TASKS_FAILED = "courier_tasks_failed"
METRIC_TASKS_DUPLICATE = "courier_tasks_duplicate_deliveries"
METRIC_TASK_DURATION = "courier_task_duration"
METRIC_TASK_WAIT_TIME = "courier_task_wait_time"
METRIC_MESSAGES_PUBLISHED = "courier_messages_published"
METRIC_MESSAGES_PROCESSED = "courier_messages_processed"
METRIC_MESSAGE_LATENCY = "courier_message_latency"
METRIC_DELIVERY_ATTEMPTS = "courier_delivery_attempts"
METRIC_QUEUE_DEPTH = "courier_queue_depth"

# Upper bounds in seconds; the last bucket is +Inf.
DEFAULT_BUCKETS: tuple[float, ...] = (0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0)

_OVERFLOW: tuple[tuple[str, str], ...] = (("overflow", "true"),)

SeriesKey = tuple[tuple[str, str], ...]


def _series_key(attributes: Mapping[str, Any] | None) -> SeriesKey:
    if not attributes:
        return ()
    return tuple(sorted((str(k), str(v)) for k, v in attributes.items()))


@dataclass
class _Summary:
    bounds: tuple[float, ...]
    count: int = 0
    total: float = 0.0
    low: float = math.inf
    high: float = -math.inf
    buckets: list[int] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.buckets = [0] * (len(self.bounds) + 1)

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.low = min(self.low, value)
        self.high = max(self.high, value)
        for i, bound in enumerate(self.bounds):
            if value <= bound:
                self.buckets[i] += 1
                return
        self.buckets[-1] += 1

    def to_dict(self) -> dict[str, Any]:
        cumulative: dict[str, int] = {}
        running = 0
        for bound, n in zip((*map(str, self.bounds), "+Inf"), self.buckets, strict=True):
            running += n
            cumulative[bound] = running
        return {
            "count": self.count,
            "sum": self.total,
            "min": self.low,
            "max": self.high,
            "buckets": cumulative,
        }


class MetricsCollector:
    """Thread-safe in-memory metric storage.

    Args:
        max_series: Attribute sets kept per metric before folding into the
            overflow series.
        buckets: Histogram bucket upper bounds.
    """

    def __init__(
        self, *, max_series: int = 200, buckets: tuple[float, ...] = DEFAULT_BUCKETS
    ) -> None:
        self._lock = threading.Lock()
        self._max_series = max_series
        self._buckets = tuple(sorted(buckets))
        self._counters: dict[str, dict[SeriesKey, float]] = {}
        self._histograms: dict[str, dict[SeriesKey, _Summary]] = {}
        self._gauges: dict[str, dict[SeriesKey, float]] = {}

    def _slot(
        self, series: Mapping[SeriesKey, Any], attributes: Mapping[str, Any] | None
    ) -> SeriesKey:
        key = _series_key(attributes)
        if key in series or len(series) < self._max_series:
            return key
        return _OVERFLOW

    def add_counter(
        self, name: str, value: float = 1.0, attributes: dict[str, Any] | None = None
    ) -> None:
        with self._lock:
            series = self._counters.setdefault(name, {})
            key = self._slot(series, attributes)
            series[key] = series.get(key, 0.0) + value

    def record_histogram(
        self, name: str, value: float, attributes: dict[str, Any] | None = None
    ) -> None:
        with self._lock:
            series = self._histograms.setdefault(name, {})
            key = self._slot(series, attributes)
            if key not in series:
                series[key] = _Summary(self._buckets)
            series[key].observe(value)

    def set_gauge(self, name: str, value: float, attributes: dict[str, Any] | None = None) -> None:
        with self._lock:
            series = self._gauges.setdefault(name, {})
            series[self._slot(series, attributes)] = value

    def counter(self, name: str, attributes: dict[str, Any] | None = None) -> float:
        """Total of *name*, or of the single series matching *attributes*."""
        with self._lock:
            series = self._counters.get(name, {})
            if attributes is None:
                return sum(series.values())
            return series.get(_series_key(attributes), 0.0)

    def gauge(self, name: str, attributes: dict[str, Any] | None = None) -> float | None:
        with self._lock:
            return self._gauges.get(name, {}).get(_series_key(attributes))

    def get_snapshot(self) -> dict[str, Any]:
        """Return a JSON-serializable snapshot of all collected metrics.

        ``counters`` maps each name to its total; ``series``, ``histograms``
        and ``gauges`` list one entry per attribute set.
        """
        with self._lock:
            return {
                "counters": {k: sum(s.values()) for k, s in self._counters.items()},
                "series": {
                    k: [{"attributes": dict(a), "value": v} for a, v in s.items()]
                    for k, s in self._counters.items()
                },
                "histograms": {
                    k: [{"attributes": dict(a), **h.to_dict()} for a, h in s.items()]
                    for k, s in self._histograms.items()
                },
                "gauges": {
                    k: [{"attributes": dict(a), "value": v} for a, v in s.items()]
                    for k, s in self._gauges.items()
                },
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
            self._gauges.clear()


_collector = MetricsCollector()


def get_collector() -> MetricsCollector:
    """Return the process-wide metrics collector."""
    return _collector


def record_task_submitted(*, action: str = "", delayed: bool = False) -> None:
    _collector.add_counter(
        METRIC_TASKS_SUBMITTED, 1.0, {"action": action, "delayed": str(delayed).lower()}
    )


def record_task_completed(
    *,
    action: str = "",
    duration: float = 0.0,
    wait_time: float = 0.0,
) -> None:
    """Record a completed task.

    Args:
        action: The task action.
        duration: Seconds spent executing the action.
        wait_time: Seconds between creation and the start of processing.
    """
    attrs = {"action": action}
    _collector.add_counter(METRIC_TASKS_COMPLETED, 1.0, attrs)
    if duration > 0:
        _collector.record_histogram(METRIC_TASK_DURATION, duration, attrs)
    if wait_time > 0:
        _collector.record_histogram(METRIC_TASK_WAIT_TIME, wait_time, attrs)


def record_task_failed(*, action: str = "", duration: float = 0.0) -> None:
    attrs = {"action": action}
    _collector.add_counter(METRIC_TASKS_FAILED, 1.0, attrs)
    if duration > 0:
        _collector.record_histogram(METRIC_TASK_DURATION, duration, attrs)


def record_task_duplicate(*, status: str = "") -> None:
    _collector.add_counter(METRIC_TASKS_DUPLICATE, 1.0, {"status": status})


def record_message_published(*, topic: str = "") -> None:
    _collector.add_counter(METRIC_MESSAGES_PUBLISHED, 1.0, {"topic": topic})


def record_message_processed(*, topic: str = "", latency: float = 0.0) -> None:
    _collector.add_counter(METRIC_MESSAGES_PROCESSED, 1.0, {"topic": topic})
    if latency > 0:
        _collector.record_histogram(METRIC_MESSAGE_LATENCY, latency, {"topic": topic})


def record_delivery_attempt(*, outcome: str, queue_name: str = "") -> None:
    """Record one HTTP delivery attempt (``delivered``, ``retry`` or ``dropped``)."""
    _collector.add_counter(
        METRIC_DELIVERY_ATTEMPTS, 1.0, {"outcome": outcome, "queue": queue_name}
    )


def record_queue_depth(*, depth: int, queue_name: str = "") -> None:
    _collector.set_gauge(METRIC_QUEUE_DEPTH, float(depth), {"queue": queue_name})
