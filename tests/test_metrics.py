"""Tests for courier.metrics."""

from __future__ import annotations

import threading

from courier.metrics import (
    METRIC_DELIVERY_ATTEMPTS,
    METRIC_MESSAGE_LATENCY,
    METRIC_MESSAGES_PROCESSED,
    METRIC_QUEUE_DEPTH,
    METRIC_TASK_DURATION,
    METRIC_TASK_WAIT_TIME,
    METRIC_TASKS_COMPLETED,
    METRIC_TASKS_SUBMITTED,
    MetricsCollector,
    get_collector,
    record_delivery_attempt,
    record_message_processed,
    record_queue_depth,
    record_task_completed,
    record_task_submitted,
)


class TestMetricsCollector:
    def test_counter_accumulates(self) -> None:
        c = MetricsCollector()
        c.add_counter("x")
        c.add_counter("x", 2.0, {"a": "b"})
        assert c.counter("x") == 3.0
        assert c.counter("missing") == 0.0

    def test_counter_keeps_attribute_series(self) -> None:
        c = MetricsCollector()
        c.add_counter("sent", 1.0, {"action": "send_email", "delayed": "false"})
        c.add_counter("sent", 1.0, {"delayed": "false", "action": "send_email"})
        c.add_counter("sent", 1.0, {"action": "backup_data", "delayed": "true"})
        assert c.counter("sent", {"action": "send_email", "delayed": "false"}) == 2.0
        assert c.counter("sent", {"action": "backup_data", "delayed": "true"}) == 1.0
        assert c.counter("sent", {"action": "process_image"}) == 0.0
        series = c.get_snapshot()["series"]["sent"]
        assert {"attributes": {"action": "backup_data", "delayed": "true"}, "value": 1.0} in series
        assert len(series) == 2

    def test_histogram_summary(self) -> None:
        c = MetricsCollector(buckets=(1.0, 5.0))
        for value in (0.5, 2.0, 4.0, 9.0):
            c.record_histogram("h", value, {"action": "send_email"})
        assert c.get_snapshot()["histograms"]["h"] == [
            {
                "attributes": {"action": "send_email"},
                "count": 4,
                "sum": 15.5,
                "min": 0.5,
                "max": 9.0,
                "buckets": {"1.0": 1, "5.0": 3, "+Inf": 4},
            }
        ]

    def test_snapshot_size_is_bounded(self) -> None:
        c = MetricsCollector()
        for i in range(10_000):
            c.record_histogram("h", i / 100, {"action": "send_email"})
            c.add_counter("n", 1.0, {"action": "send_email"})
        snap = c.get_snapshot()
        assert len(snap["histograms"]["h"]) == 1
        assert snap["histograms"]["h"][0]["count"] == 10_000
        assert snap["histograms"]["h"][0]["max"] == 99.99
        assert len(snap["series"]["n"]) == 1
        assert snap["counters"]["n"] == 10_000.0

    def test_series_cap_folds_into_overflow(self) -> None:
        c = MetricsCollector(max_series=2)
        for topic in ("a", "b", "c", "d"):
            c.add_counter("published", 1.0, {"topic": topic})
        assert c.counter("published") == 4.0
        assert c.counter("published", {"overflow": "true"}) == 2.0
        assert len(c.get_snapshot()["series"]["published"]) == 3

    def test_gauge(self) -> None:
        c = MetricsCollector()
        c.set_gauge("g", 4, {"queue": "default"})
        c.set_gauge("g", 2, {"queue": "default"})
        c.set_gauge("g", 7, {"queue": "emails"})
        assert c.gauge("g", {"queue": "default"}) == 2
        assert c.gauge("g", {"queue": "missing"}) is None
        assert len(c.get_snapshot()["gauges"]["g"]) == 2

    def test_reset(self) -> None:
        c = MetricsCollector()
        c.add_counter("x")
        c.reset()
        assert c.get_snapshot() == {"counters": {}, "series": {}, "histograms": {}, "gauges": {}}

    def test_thread_safe_counter(self) -> None:
        c = MetricsCollector()

        def bump() -> None:
            for _ in range(1000):
                c.add_counter("n")

        threads = [threading.Thread(target=bump) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert c.counter("n") == 4000.0


class TestRecorders:
    def test_get_collector_is_singleton(self) -> None:
        assert get_collector() is get_collector()

    def test_task_recorders(self) -> None:
        record_task_submitted(action="send_email", delayed=True)
        record_task_completed(action="send_email", duration=2.0, wait_time=10.0)
        c = get_collector()
        assert c.counter(METRIC_TASKS_SUBMITTED, {"action": "send_email", "delayed": "true"}) == 1.0
        assert c.counter(METRIC_TASKS_COMPLETED) == 1.0
        snap = c.get_snapshot()
        assert snap["histograms"][METRIC_TASK_DURATION][0]["sum"] == 2.0
        assert snap["histograms"][METRIC_TASK_WAIT_TIME][0]["max"] == 10.0

    def test_zero_durations_are_not_recorded(self) -> None:
        record_task_completed(action="send_email")
        assert METRIC_TASK_DURATION not in get_collector().get_snapshot()["histograms"]

    def test_message_and_delivery_recorders(self) -> None:
        record_message_processed(topic="demo-topic", latency=5.1)
        record_delivery_attempt(outcome="retry", queue_name="default")
        record_queue_depth(depth=3, queue_name="default")
        c = get_collector()
        snap = c.get_snapshot()
        assert snap["counters"][METRIC_MESSAGES_PROCESSED] == 1.0
        assert c.counter(METRIC_DELIVERY_ATTEMPTS, {"outcome": "retry", "queue": "default"}) == 1.0
        assert snap["histograms"][METRIC_MESSAGE_LATENCY][0]["attributes"] == {"topic": "demo-topic"}
        assert c.gauge(METRIC_QUEUE_DEPTH, {"queue": "default"}) == 3.0
