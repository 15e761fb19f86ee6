"""Tests for the realtime view projection."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator

import pytest

from courier.models import TaskAction
from courier.projection import VIEWS, RealtimeProjection, Snapshot, Subscription
from courier.store import DocumentStore, TaskStore


@pytest.fixture
def projection(documents: DocumentStore) -> RealtimeProjection:
    return RealtimeProjection(documents, poll_timeout=0.05)


async def _next(snapshots: AsyncIterator[Snapshot]) -> Snapshot:
    return await asyncio.wait_for(anext(snapshots), timeout=2.0)


class TestViews:
    def test_named_views(self) -> None:
        assert VIEWS["tasks"].collection == "cloud_tasks"
        assert VIEWS["tasks"].order_field == "createdAt"
        assert VIEWS["messages"].collection == "pubsub_messages"
        assert VIEWS["messages"].order_field == "publishedAt"

    def test_unknown_view(self, projection: RealtimeProjection) -> None:
        with pytest.raises(KeyError):
            projection.subscribe_view("users")


class TestSubscription:
    @pytest.mark.asyncio
    async def test_initial_snapshot_of_empty_collection(
        self, projection: RealtimeProjection
    ) -> None:
        sub = projection.subscribe("cloud_tasks", 20, "createdAt")
        snapshots = aiter(sub)
        assert await _next(snapshots) == []
        sub.unsubscribe()
        await snapshots.aclose()

    @pytest.mark.asyncio
    async def test_snapshot_after_each_change(
        self, projection: RealtimeProjection, documents: DocumentStore, clock
    ) -> None:
        tasks = TaskStore(documents, clock=clock)
        sub = projection.subscribe_view("tasks", limit=2)
        snapshots = aiter(sub)
        assert await _next(snapshots) == []

        first = await tasks.create(TaskAction.SEND_EMAIL, {})
        snapshot = await _next(snapshots)
        assert [d["id"] for d in snapshot] == [first.id]

        second = await tasks.create(TaskAction.BACKUP_DATA, {})
        third = await tasks.create(TaskAction.PROCESS_IMAGE, {})
        latest = await _next(snapshots)
        while len(latest) < 2 or latest[0]["id"] != third.id:
            latest = await _next(snapshots)
        assert [d["id"] for d in latest] == [third.id, second.id]

        sub.unsubscribe()
        await snapshots.aclose()

    @pytest.mark.asyncio
    async def test_snapshots_are_full_documents(
        self, projection: RealtimeProjection, documents: DocumentStore
    ) -> None:
        tasks = TaskStore(documents)
        record = await tasks.create(TaskAction.SEND_EMAIL, {"recipient": "a@b.com"})
        sub = projection.subscribe_view("tasks")
        snapshots = aiter(sub)

        (doc,) = await _next(snapshots)
        assert doc["id"] == record.id
        assert doc["status"] == "queued"
        assert doc["data"] == {"recipient": "a@b.com"}

        await tasks.mark_scheduled(record.id, "default/tasks/1")
        (doc,) = await _next(snapshots)
        assert doc["status"] == "scheduled"

        sub.unsubscribe()
        await snapshots.aclose()

    @pytest.mark.asyncio
    async def test_unsubscribe_before_iteration(self, projection: RealtimeProjection) -> None:
        sub = projection.subscribe("cloud_tasks", 20, "createdAt")
        sub.unsubscribe()
        assert sub.closed
        assert [s async for s in sub] == []

    @pytest.mark.asyncio
    async def test_unsubscribe_ends_iteration(self, projection: RealtimeProjection) -> None:
        sub = projection.subscribe("cloud_tasks", 20, "createdAt")
        received: list[Snapshot] = []

        async def consume() -> None:
            async for snapshot in sub:
                received.append(snapshot)

        consumer = asyncio.create_task(consume())
        await asyncio.sleep(0.05)
        sub.unsubscribe()
        await asyncio.wait_for(consumer, timeout=2.0)
        assert received == [[]]

    @pytest.mark.asyncio
    async def test_feed_error_delivers_single_empty_snapshot(
        self, documents: DocumentStore
    ) -> None:
        class BrokenStore:
            @contextlib.asynccontextmanager
            async def watch(self, collection: str) -> AsyncIterator[object]:
                raise ConnectionError("redis unavailable")
                yield  # pragma: no cover

        sub = Subscription(BrokenStore(), "cloud_tasks", 20, "createdAt")  # type: ignore[arg-type]
        assert [s async for s in sub] == [[]]
        assert sub.closed
