"""Records, request and response models for tasks and messages.

Documents and wire payloads use camelCase field names (``createdAt``,
``taskId``); Python code uses the snake_case attribute names.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

_CAMEL = {"alias_generator": to_camel, "populate_by_name": True}


class TaskAction(StrEnum):
    """Closed set of task actions."""

    SEND_EMAIL = "send_email"
    PROCESS_IMAGE = "process_image"
    GENERATE_REPORT = "generate_report"
    BACKUP_DATA = "backup_data"


class TaskStatus(StrEnum):
    """Lifecycle of a task: queued -> scheduled -> processing -> completed | failed."""

    QUEUED = "queued"
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_TASK_STATUSES


TERMINAL_TASK_STATUSES: frozenset[TaskStatus] = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED}
)


class MessageStatus(StrEnum):
    """Lifecycle of a message: published -> processed."""

    PUBLISHED = "published"
    PROCESSED = "processed"


# ---------------------------------------------------------------------------
# Stored records
# ---------------------------------------------------------------------------


class TaskResult(BaseModel):
    """Success payload written when a task completes."""

    model_config = {"frozen": True}

    success: bool = True
    message: str = ""


class TaskRecord(BaseModel):
    """Durable lifecycle record of a task, keyed by ``id``."""

    model_config = {"frozen": True, **_CAMEL}

    id: str
    action: TaskAction
    data: dict[str, str] = Field(default_factory=dict)
    status: TaskStatus = TaskStatus.QUEUED
    schedule_delay_seconds: int = 0
    created_at: float
    processing_started_at: float | None = None
    processing_owner: str | None = None
    processing_lease_until: float | None = None
    completed_at: float | None = None
    failed_at: float | None = None
    result: TaskResult | None = None
    error: str | None = None
    dispatch_handle: str | None = None


class ProcessingDetails(BaseModel):
    """Delivery metadata echoed onto a processed message."""

    model_config = {"frozen": True, **_CAMEL}

    delivery_id: str
    publish_time: float
    attributes: dict[str, str] = Field(default_factory=dict)


class MessageRecord(BaseModel):
    """Durable lifecycle record of a published message, keyed by ``id``."""

    model_config = {"frozen": True, **_CAMEL}

    id: str
    topic: str
    message: str
    attributes: dict[str, str] = Field(default_factory=dict)
    status: MessageStatus = MessageStatus.PUBLISHED
    published_at: float
    processed_at: float | None = None
    processing_details: ProcessingDetails | None = None


# ---------------------------------------------------------------------------
# Requests / responses
# ---------------------------------------------------------------------------


class CreateTaskRequest(BaseModel):
    """Body of ``POST /tasks``. Validation happens in the dispatcher."""

    model_config = {**_CAMEL}

    action: str | None = None
    data: dict[str, Any] | None = None
    schedule_delay_seconds: Any = None


class CreateTaskResponse(BaseModel):
    model_config = {"frozen": True, **_CAMEL}

    success: bool = True
    task_id: str
    cloud_task_name: str
    action: TaskAction
    message: str


class ListTasksResponse(BaseModel):
    model_config = {**_CAMEL}

    success: bool = True
    tasks: list[TaskRecord] = Field(default_factory=list)


class ProcessTaskRequest(BaseModel):
    """Body delivered by the queue to ``POST /process-task``."""

    model_config = {**_CAMEL}

    task_id: str | None = None
    action: str | None = None
    data: dict[str, str] = Field(default_factory=dict)


class ProcessTaskResponse(BaseModel):
    model_config = {"frozen": True, **_CAMEL}

    success: bool
    task_id: str
    result: TaskResult | None = None
    error: str | None = None
    duplicate: bool = False


class PublishMessageRequest(BaseModel):
    """Body of ``POST /messages``. Validation happens in the publisher."""

    model_config = {**_CAMEL}

    topic: str | None = None
    message: str | None = None
    attributes: dict[str, Any] | None = None


class PublishMessageResponse(BaseModel):
    model_config = {"frozen": True, **_CAMEL}

    success: bool = True
    message_id: str
    message: str = "Message published successfully"


class ListMessagesResponse(BaseModel):
    model_config = {**_CAMEL}

    success: bool = True
    messages: list[MessageRecord] = Field(default_factory=list)
