"""Tests for courier.config."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from courier.config import Settings


class TestDefaults:
    def test_defaults(self) -> None:
        s = Settings()
        assert s.redis_url == "redis://localhost:6379/0"
        assert s.queue_name == "default"
        assert s.max_schedule_delay_seconds == 3600
        assert s.message_processing_delay_seconds == 5.0
        assert s.topics == ("demo-topic",)
        assert s.mark_failed_on_dispatch_error is True
        assert s.embedded_transports is False

    def test_frozen(self) -> None:
        with pytest.raises(ValidationError):
            Settings().queue_name = "other"  # type: ignore[misc]

    def test_rejects_negative_delay_bound(self) -> None:
        with pytest.raises(ValidationError):
            Settings(max_schedule_delay_seconds=-1)

    def test_rejects_unknown_log_format(self) -> None:
        with pytest.raises(ValidationError):
            Settings(log_format="xml")  # type: ignore[arg-type]


class TestFromEnv:
    def test_empty_environment(self) -> None:
        assert Settings.from_env({}) == Settings()

    def test_reads_prefixed_variables(self) -> None:
        s = Settings.from_env(
            {
                "COURIER_REDIS_URL": "redis://cache:6380/1",
                "COURIER_MAX_SCHEDULE_DELAY_SECONDS": "120",
                "COURIER_LATENCY_SCALE": "0.5",
                "COURIER_TOPICS": "alpha, beta,,",
                "COURIER_EMBEDDED_TRANSPORTS": "yes",
                "COURIER_MARK_FAILED_ON_DISPATCH_ERROR": "false",
                "UNRELATED": "x",
            }
        )
        assert s.redis_url == "redis://cache:6380/1"
        assert s.max_schedule_delay_seconds == 120
        assert s.latency_scale == 0.5
        assert s.topics == ("alpha", "beta")
        assert s.embedded_transports is True
        assert s.mark_failed_on_dispatch_error is False

    def test_invalid_value(self) -> None:
        with pytest.raises(ValidationError):
            Settings.from_env({"COURIER_DELIVERY_MAX_ATTEMPTS": "zero"})

    def test_reads_process_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("COURIER_QUEUE_NAME", "emails")
        assert Settings.from_env().queue_name == "emails"
