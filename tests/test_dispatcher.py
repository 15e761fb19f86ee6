"""Tests for TaskDispatcher."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest

from courier.config import Settings
from courier.dispatcher import TaskDispatcher
from courier.errors import DispatchError, InvalidInputError
from courier.metrics import METRIC_TASKS_SUBMITTED, get_collector
from courier.models import TaskAction, TaskStatus
from courier.services import Services
from courier.store import DocumentStore, TaskStore


class RecordingQueue:
    """Queue double that captures each submission and the record state at that moment."""

    def __init__(self, store: TaskStore, *, fail: Exception | None = None) -> None:
        self._store = store
        self._fail = fail
        self.calls: list[dict[str, Any]] = []

    async def enqueue(
        self,
        url: str,
        body: Mapping[str, Any],
        *,
        delay_seconds: float = 0,
        headers: Mapping[str, str] | None = None,
    ) -> str:
        record = await self._store.require(body["taskId"])
        self.calls.append(
            {"url": url, "body": dict(body), "delay": delay_seconds, "status": record.status}
        )
        if self._fail is not None:
            raise self._fail
        return f"default/tasks/{len(self.calls)}"


@pytest.fixture
def tasks(documents: DocumentStore) -> TaskStore:
    return TaskStore(documents)


class TestValidation:
    @pytest.fixture
    def dispatcher(self, tasks: TaskStore, settings: Settings) -> TaskDispatcher:
        return TaskDispatcher(tasks, RecordingQueue(tasks), settings)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("action", [None, "", "launch_rocket", 42])
    async def test_invalid_action_rejected_before_write(
        self, dispatcher: TaskDispatcher, documents: DocumentStore, action: Any
    ) -> None:
        with pytest.raises(InvalidInputError):
            await dispatcher.create_task(action)
        assert await documents.count("cloud_tasks") == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("delay", [-1, 3601, 1.5, True, "10"])
    async def test_invalid_delay_rejected_before_write(
        self, dispatcher: TaskDispatcher, documents: DocumentStore, delay: Any
    ) -> None:
        with pytest.raises(InvalidInputError, match="scheduleDelaySeconds"):
            await dispatcher.create_task("send_email", {}, delay)
        assert await documents.count("cloud_tasks") == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("delay", [float("inf"), float("-inf"), float("nan")])
    async def test_non_finite_delay_rejected(
        self, dispatcher: TaskDispatcher, documents: DocumentStore, delay: float
    ) -> None:
        with pytest.raises(InvalidInputError, match="finite") as exc_info:
            await dispatcher.create_task("send_email", {}, delay)
        assert exc_info.value.details == {"scheduleDelaySeconds": str(delay)}
        assert await documents.count("cloud_tasks") == 0

    @pytest.mark.asyncio
    async def test_max_delay_accepted(self, dispatcher: TaskDispatcher) -> None:
        response = await dispatcher.create_task("send_email", {}, 3600)
        assert response.message == "Task scheduled to run in 3600 seconds"

    @pytest.mark.asyncio
    async def test_integral_float_delay_accepted(
        self, dispatcher: TaskDispatcher, tasks: TaskStore
    ) -> None:
        response = await dispatcher.create_task("send_email", {}, 5.0)
        assert (await tasks.require(response.task_id)).schedule_delay_seconds == 5

    @pytest.mark.asyncio
    async def test_nested_data_rejected(self, dispatcher: TaskDispatcher) -> None:
        with pytest.raises(InvalidInputError):
            await dispatcher.create_task("send_email", {"recipient": {"nested": "x"}})

    @pytest.mark.asyncio
    async def test_scalar_data_coerced_to_strings(
        self, dispatcher: TaskDispatcher, tasks: TaskStore
    ) -> None:
        response = await dispatcher.create_task("backup_data", {"count": 3, "skip": None})
        record = await tasks.require(response.task_id)
        assert record.data == {"count": "3"}

    @pytest.mark.asyncio
    async def test_custom_max_delay(self, tasks: TaskStore) -> None:
        dispatcher = TaskDispatcher(
            tasks, RecordingQueue(tasks), Settings(max_schedule_delay_seconds=10)
        )
        with pytest.raises(InvalidInputError):
            await dispatcher.create_task("send_email", {}, 11)


class TestDispatch:
    @pytest.mark.asyncio
    async def test_record_is_queued_when_submitted(
        self, tasks: TaskStore, settings: Settings
    ) -> None:
        queue = RecordingQueue(tasks)
        dispatcher = TaskDispatcher(tasks, queue, settings)
        response = await dispatcher.create_task("send_email", {"recipient": "a@b.com"})

        assert len(queue.calls) == 1
        call = queue.calls[0]
        assert call["status"] == TaskStatus.QUEUED
        assert call["url"] == settings.process_task_url
        assert call["delay"] == 0
        assert call["body"] == {
            "taskId": response.task_id,
            "action": "send_email",
            "data": {"recipient": "a@b.com"},
        }

    @pytest.mark.asyncio
    async def test_success_marks_scheduled(self, tasks: TaskStore, settings: Settings) -> None:
        dispatcher = TaskDispatcher(tasks, RecordingQueue(tasks), settings)
        response = await dispatcher.create_task(TaskAction.PROCESS_IMAGE, {}, 10)

        assert response.success is True
        assert response.action == TaskAction.PROCESS_IMAGE
        assert response.cloud_task_name == "default/tasks/1"
        assert response.message == "Task scheduled to run in 10 seconds"
        record = await tasks.require(response.task_id)
        assert record.status == TaskStatus.SCHEDULED
        assert record.dispatch_handle == "default/tasks/1"
        assert record.schedule_delay_seconds == 10
        assert record.processing_started_at is None

    @pytest.mark.asyncio
    async def test_immediate_message(self, tasks: TaskStore, settings: Settings) -> None:
        dispatcher = TaskDispatcher(tasks, RecordingQueue(tasks), settings)
        response = await dispatcher.create_task("send_email")
        assert response.message == "Task queued for immediate execution"

    @pytest.mark.asyncio
    async def test_records_metric(self, tasks: TaskStore, settings: Settings) -> None:
        dispatcher = TaskDispatcher(tasks, RecordingQueue(tasks), settings)
        await dispatcher.create_task("send_email")
        assert get_collector().counter(METRIC_TASKS_SUBMITTED) == 1.0

    @pytest.mark.asyncio
    async def test_queue_failure_marks_failed(self, tasks: TaskStore, settings: Settings) -> None:
        queue = RecordingQueue(tasks, fail=ConnectionError("queue down"))
        dispatcher = TaskDispatcher(tasks, queue, settings)

        with pytest.raises(DispatchError, match="queue down") as exc_info:
            await dispatcher.create_task("send_email")

        task_id = exc_info.value.details["taskId"]  # type: ignore[index]
        record = await tasks.require(task_id)
        assert record.status == TaskStatus.FAILED
        assert record.error == "Dispatch failed: queue down"
        assert record.failed_at is not None
        assert get_collector().counter(METRIC_TASKS_SUBMITTED) == 0.0

    @pytest.mark.asyncio
    async def test_queue_failure_can_leave_record_queued(self, tasks: TaskStore) -> None:
        queue = RecordingQueue(tasks, fail=ConnectionError("queue down"))
        settings = Settings(mark_failed_on_dispatch_error=False)
        dispatcher = TaskDispatcher(tasks, queue, settings)

        with pytest.raises(DispatchError) as exc_info:
            await dispatcher.create_task("send_email")

        task_id = exc_info.value.details["taskId"]  # type: ignore[index]
        assert (await tasks.require(task_id)).status == TaskStatus.QUEUED

    @pytest.mark.asyncio
    async def test_store_failure_while_marking_failed_keeps_dispatch_error(
        self, tasks: TaskStore, settings: Settings, caplog: pytest.LogCaptureFixture
    ) -> None:
        caplog.set_level(logging.ERROR, logger="courier")
        queue = RecordingQueue(tasks, fail=ConnectionError("queue down"))
        dispatcher = TaskDispatcher(tasks, queue, settings)

        with patch.object(
            tasks, "mark_failed", AsyncMock(side_effect=ConnectionError("store down"))
        ):
            with pytest.raises(DispatchError, match="queue down") as exc_info:
                await dispatcher.create_task("send_email")

        task_id = exc_info.value.details["taskId"]  # type: ignore[index]
        assert (await tasks.require(task_id)).status == TaskStatus.QUEUED
        assert f"Could not mark task {task_id} failed" in caplog.text
        assert "store down" in caplog.text


class TestDispatchThroughDeliveryQueue:
    @pytest.mark.asyncio
    async def test_enqueues_request(self, services: Services) -> None:
        response = await services.dispatcher.create_task("send_email", {"recipient": "x@y.z"}, 30)

        handle = response.cloud_task_name
        assert handle.startswith("default/tasks/")
        request = await services.queue.get(handle)
        assert request is not None
        assert request.url == "http://testserver/process-task"
        assert request.body["taskId"] == response.task_id
        assert request.attempt == 0

        due = await services.queue.due_at(handle)
        assert due is not None
        assert due >= request.enqueued_at + 30
        assert await services.queue.claim_due() == []
