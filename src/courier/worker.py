"""Task Worker: executes a delivered task and records its terminal state."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from uuid import uuid4

from courier.actions import ACTIONS, ActionSpec, resolve_action
from courier.errors import TaskExecutionError, TaskInProgressError, TaskNotFoundError
from courier.log import LogContext
from courier.metrics import record_task_completed, record_task_duplicate, record_task_failed
from courier.models import ProcessTaskResponse, TaskAction, TaskRecord
from courier.store import TaskStore

logger = logging.getLogger(__name__)


class TaskWorker:
    """Runs the ``processing -> completed | failed`` half of the task lifecycle.

    Deliveries are at-least-once, so a task that already reached a terminal
    state is acknowledged as a duplicate without re-running its action, and
    only the delivery holding the processing claim records an outcome.

    Args:
        store: Task lifecycle store.
        actions: Dispatch table of action specs.
        sleep: Awaitable used for the simulated action latency.
        latency_scale: Multiplier applied to every action latency.
    """

    def __init__(
        self,
        store: TaskStore,
        *,
        actions: Mapping[TaskAction, ActionSpec] = ACTIONS,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        latency_scale: float = 1.0,
    ) -> None:
        self._store = store
        self._actions = actions
        self._sleep = sleep
        self._latency_scale = latency_scale

    def _duplicate(self, record: TaskRecord) -> ProcessTaskResponse:
        record_task_duplicate(status=record.status.value)
        logger.info("Task %s already %s, ignoring duplicate delivery", record.id, record.status)
        return ProcessTaskResponse(
            success=True,
            task_id=record.id,
            result=record.result,
            error=record.error,
            duplicate=True,
        )

    async def process_task(
        self,
        task_id: str,
        action: str | TaskAction,
        data: Mapping[str, str] | None = None,
    ) -> ProcessTaskResponse:
        """Execute *action* for *task_id*.

        The task is claimed under a fresh owner token before the action
        runs. A delivery that loses the claim to a finished task gets the
        stored outcome back as a duplicate; one that loses it to a live
        claim gets :class:`~courier.errors.TaskInProgressError` so the
        transport retries later.

        Raises:
            TaskNotFoundError: If no record exists for *task_id*.
            TaskInProgressError: If another delivery is still processing it.
            TaskExecutionError: If the action raised; the record is marked
                ``failed`` first.
        """
        with LogContext(task_id=task_id, action=str(action)):
            record = await self._store.get(task_id)
            if record is None:
                raise TaskNotFoundError(task_id)
            if record.status.is_terminal:
                return self._duplicate(record)

            owner = uuid4().hex
            if not await self._store.mark_processing(task_id, owner):
                latest = await self._store.require(task_id)
                if latest.status.is_terminal:
                    return self._duplicate(latest)
                logger.info("Task %s is held by another delivery", task_id)
                raise TaskInProgressError(task_id)

            started = time.monotonic()
            wait_time = max(0.0, time.time() - record.created_at)
            processing_ms, handler = resolve_action(action, self._actions)
            logger.info("Processing task %s (%dms)", task_id, processing_ms)

            try:
                await self._sleep(processing_ms / 1000 * self._latency_scale)
                result = handler(dict(data or {}))
            except Exception as exc:
                error = str(exc) or type(exc).__name__
                logger.error("Task %s failed: %s", task_id, error)
                if not await self._store.mark_failed(task_id, error, owner=owner):
                    return await self._lost_claim(task_id)
                record_task_failed(action=str(action), duration=time.monotonic() - started)
                raise TaskExecutionError(task_id, error) from exc

            if not await self._store.mark_completed(task_id, result, owner=owner):
                return await self._lost_claim(task_id)
            record_task_completed(
                action=str(action),
                duration=time.monotonic() - started,
                wait_time=wait_time,
            )
            logger.info("Task %s completed: %s", task_id, result.message)
            return ProcessTaskResponse(success=True, task_id=task_id, result=result)

    async def _lost_claim(self, task_id: str) -> ProcessTaskResponse:
        # The lease expired mid-run and another delivery took the task over.
        logger.warning("Task %s was taken over before its outcome was recorded", task_id)
        latest = await self._store.require(task_id)
        if latest.status.is_terminal:
            return self._duplicate(latest)
        raise TaskInProgressError(task_id)
