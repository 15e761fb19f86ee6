"""Task Dispatcher: validates a task request, records it, hands it to the queue."""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from typing import Any, Protocol

from courier.actions import parse_action
from courier.config import Settings
from courier.errors import DispatchError, InvalidInputError
from courier.log import LogContext
from courier.metrics import record_task_submitted
from courier.models import CreateTaskResponse, TaskAction
from courier.store import TaskStore

logger = logging.getLogger(__name__)


class TaskQueue(Protocol):
    """What the dispatcher needs from a delayed HTTP delivery transport."""

    async def enqueue(
        self,
        url: str,
        body: Mapping[str, Any],
        *,
        delay_seconds: float = 0,
        headers: Mapping[str, str] | None = None,
    ) -> str: ...


def _validate_action(raw: Any) -> TaskAction:
    action = parse_action(raw) if isinstance(raw, str | TaskAction) else None
    if action is None:
        valid = ", ".join(a.value for a in TaskAction)
        if not raw:
            raise InvalidInputError("Action is required", details={"validActions": valid})
        raise InvalidInputError(
            f"Invalid action: {raw}", details={"action": str(raw), "validActions": valid}
        )
    return action


def _validate_delay(raw: Any, max_delay: int) -> int:
    if raw is None:
        return 0
    if isinstance(raw, float) and not math.isfinite(raw):
        # JSON error bodies cannot carry inf or nan
        raise InvalidInputError(
            "scheduleDelaySeconds must be a finite integer",
            details={"scheduleDelaySeconds": str(raw)},
        )
    if isinstance(raw, bool) or not isinstance(raw, int | float) or int(raw) != raw:
        raise InvalidInputError(
            "scheduleDelaySeconds must be an integer",
            details={"scheduleDelaySeconds": raw},
        )
    delay = int(raw)
    if delay < 0 or delay > max_delay:
        raise InvalidInputError(
            f"scheduleDelaySeconds must be between 0 and {max_delay}",
            details={"scheduleDelaySeconds": delay},
        )
    return delay


def _validate_data(raw: Any) -> dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise InvalidInputError("data must be an object of strings")
    data: dict[str, str] = {}
    for key, value in raw.items():
        if value is None:
            continue
        if isinstance(value, dict | list):
            raise InvalidInputError(
                "data values must be strings", details={"field": str(key)}
            )
        data[str(key)] = value if isinstance(value, str) else str(value)
    return data


class TaskDispatcher:
    """Creates tasks and submits them to the delivery queue.

    The task record is written in ``queued`` state before submission so it
    is observable even if the queue rejects it. On success the record moves
    to ``scheduled``; on failure it is marked ``failed`` (unless
    ``settings.mark_failed_on_dispatch_error`` is off) and
    :class:`~courier.errors.DispatchError` is raised.
    """

    def __init__(self, store: TaskStore, queue: TaskQueue, settings: Settings) -> None:
        self._store = store
        self._queue = queue
        self._settings = settings

    async def create_task(
        self,
        action: Any,
        data: Mapping[str, Any] | None = None,
        schedule_delay_seconds: Any = None,
    ) -> CreateTaskResponse:
        task_action = _validate_action(action)
        delay = _validate_delay(schedule_delay_seconds, self._settings.max_schedule_delay_seconds)
        payload = _validate_data(data)

        record = await self._store.create(task_action, payload, delay)
        with LogContext(task_id=record.id, action=task_action.value):
            body = {"taskId": record.id, "action": task_action.value, "data": payload}
            try:
                handle = await self._queue.enqueue(
                    self._settings.process_task_url, body, delay_seconds=delay
                )
            except Exception as exc:
                logger.error("Failed to dispatch task %s: %s", record.id, exc)
                if self._settings.mark_failed_on_dispatch_error:
                    try:
                        await self._store.mark_failed(record.id, f"Dispatch failed: {exc}")
                    except Exception:
                        logger.exception(
                            "Could not mark task %s failed after dispatch error", record.id
                        )
                raise DispatchError(
                    f"Failed to create task: {exc}", details={"taskId": record.id}
                ) from exc

            await self._store.mark_scheduled(record.id, handle)
            record_task_submitted(action=task_action.value, delayed=delay > 0)
            logger.info("Task %s dispatched as %s (delay=%ds)", record.id, handle, delay)

        if delay > 0:
            message = f"Task scheduled to run in {delay} seconds"
        else:
            message = "Task queued for immediate execution"
        return CreateTaskResponse(
            task_id=record.id,
            cloud_task_name=handle,
            action=task_action,
            message=message,
        )
