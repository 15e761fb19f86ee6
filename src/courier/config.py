"""Runtime configuration for Courier services."""

from __future__ import annotations

import os
from collections.abc import Mapping
from typing import Literal

from pydantic import BaseModel, Field

_ENV_PREFIX = "COURIER_"
_TRUE_VALUES = ("true", "1", "yes", "on")


class Settings(BaseModel):
    """Settings shared by the dispatcher, worker, publisher and transports.

    Args:
        redis_url: Redis connection URL backing the stores and transports.
        process_task_url: Address the delivery queue POSTs tasks to.
        queue_name: Logical delivery queue name (part of every dispatch handle).
        key_prefix: Prefix for every Redis key Courier writes.
        max_schedule_delay_seconds: Upper bound for ``scheduleDelaySeconds``.
        message_processing_delay_seconds: Pause before a message is marked processed.
        latency_scale: Multiplier on simulated action latency (0 disables it).
        mark_failed_on_dispatch_error: Move a task to ``failed`` when the
            delivery queue rejects it.
        delivery_max_attempts: Attempts per delivery before it is dropped.
        delivery_min_backoff: First retry delay in seconds.
        delivery_max_backoff: Retry delay ceiling in seconds.
        task_lease_seconds: How long a worker owns a task it moved to
            ``processing`` before another delivery may take it over.
        topic_stream_maxlen: Approximate number of entries kept per topic stream.
        topics: Topics the embedded subscriber and ``courier subscribe`` consume.
        embedded_transports: Run the delivery agent and subscribers inside the
            API process.
        log_level: Level passed to :func:`courier.log.configure_logging`.
        log_format: ``"text"`` or ``"json"``.
    """

    model_config = {"frozen": True}

    redis_url: str = "redis://localhost:6379/0"
    process_task_url: str = "http://localhost:8000/process-task"
    queue_name: str = "default"
    key_prefix: str = "courier:"
    max_schedule_delay_seconds: int = Field(default=3600, ge=0)
    message_processing_delay_seconds: float = Field(default=5.0, ge=0)
    latency_scale: float = Field(default=1.0, ge=0)
    mark_failed_on_dispatch_error: bool = True
    delivery_max_attempts: int = Field(default=5, ge=1)
    delivery_min_backoff: float = Field(default=1.0, ge=0)
    delivery_max_backoff: float = Field(default=60.0, ge=0)
    task_lease_seconds: float = Field(default=60.0, gt=0)
    topic_stream_maxlen: int = Field(default=10_000, ge=1)
    topics: tuple[str, ...] = ("demo-topic",)
    embedded_transports: bool = False
    log_level: str = "INFO"
    log_format: Literal["text", "json"] = "text"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """Build settings from ``COURIER_*`` environment variables.

        Unset variables keep their defaults. ``COURIER_TOPICS`` is a
        comma-separated list.
        """
        env = os.environ if environ is None else environ
        values: dict[str, object] = {}
        for name in cls.model_fields:
            raw = env.get(f"{_ENV_PREFIX}{name.upper()}")
            if raw is None:
                continue
            if name == "topics":
                values[name] = tuple(t.strip() for t in raw.split(",") if t.strip())
            elif name in ("mark_failed_on_dispatch_error", "embedded_transports"):
                values[name] = raw.strip().lower() in _TRUE_VALUES
            else:
                values[name] = raw
        return cls.model_validate(values)
