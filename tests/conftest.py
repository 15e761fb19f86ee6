"""Shared fixtures: every Redis-backed component runs on one fakeredis server."""

from __future__ import annotations

from collections.abc import Callable

import fakeredis
import fakeredis.aioredis
import pytest

from courier.config import Settings
from courier.metrics import get_collector
from courier.services import Services, build_services
from courier.store import DocumentStore


class FakeClock:
    """Strictly increasing clock: each call advances by *step* seconds."""

    def __init__(self, start: float = 1_700_000_000.0, step: float = 1.0) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> float:
        self.now += self.step
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=True)
def _reset_metrics() -> None:
    get_collector().reset()


@pytest.fixture
def fake_server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest.fixture
def make_redis(fake_server: fakeredis.FakeServer) -> Callable[[], fakeredis.aioredis.FakeRedis]:
    def _make() -> fakeredis.aioredis.FakeRedis:
        return fakeredis.aioredis.FakeRedis(server=fake_server, decode_responses=True)

    return _make


@pytest.fixture
def documents(make_redis: Callable[[], fakeredis.aioredis.FakeRedis]) -> DocumentStore:
    store = DocumentStore("redis://localhost:6379")
    store._redis = make_redis()
    return store


@pytest.fixture
def settings() -> Settings:
    return Settings(
        process_task_url="http://testserver/process-task",
        latency_scale=0.0,
        message_processing_delay_seconds=0.0,
        delivery_min_backoff=0.0,
    )


@pytest.fixture
def make_services(
    settings: Settings, make_redis: Callable[[], fakeredis.aioredis.FakeRedis]
) -> Callable[..., Services]:
    """Build services whose Redis clients all point at the shared fake server."""

    def _make(custom: Settings | None = None) -> Services:
        svc = build_services(custom or settings)
        svc.documents._redis = make_redis()
        svc.queue._redis = make_redis()
        svc.topics._redis = make_redis()
        return svc

    return _make


@pytest.fixture
def services(make_services: Callable[..., Services]) -> Services:
    return make_services()
