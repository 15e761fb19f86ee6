"""Courier: task dispatch, message publishing and their lifecycle tracking on Redis."""

from __future__ import annotations

from courier.actions import ACTIONS, ActionSpec, resolve_action
from courier.config import Settings
from courier.dispatcher import TaskDispatcher
from courier.errors import (
    CourierError,
    DispatchError,
    InvalidInputError,
    MessageNotFoundError,
    PublishError,
    TaskExecutionError,
    TaskNotFoundError,
)
from courier.models import (
    MessageRecord,
    MessageStatus,
    ProcessingDetails,
    TaskAction,
    TaskRecord,
    TaskResult,
    TaskStatus,
)
from courier.processor import MessageProcessor
from courier.projection import RealtimeProjection, Subscription
from courier.publisher import MessagePublisher
from courier.services import Services, build_services
from courier.store import DocumentStore, MessageStore, TaskStore
from courier.transport import (
    DeliveryAgent,
    DeliveryQueue,
    TopicDelivery,
    TopicSubscriber,
    TopicTransport,
)
from courier.worker import TaskWorker

__all__: list[str] = [
    "ACTIONS",
    "ActionSpec",
    "CourierError",
    "DeliveryAgent",
    "DeliveryQueue",
    "DispatchError",
    "DocumentStore",
    "InvalidInputError",
    "MessageNotFoundError",
    "MessageProcessor",
    "MessagePublisher",
    "MessageRecord",
    "MessageStatus",
    "MessageStore",
    "ProcessingDetails",
    "PublishError",
    "RealtimeProjection",
    "Services",
    "Settings",
    "Subscription",
    "TaskAction",
    "TaskDispatcher",
    "TaskExecutionError",
    "TaskNotFoundError",
    "TaskRecord",
    "TaskResult",
    "TaskStatus",
    "TaskStore",
    "TaskWorker",
    "TopicDelivery",
    "TopicSubscriber",
    "TopicTransport",
    "build_services",
    "resolve_action",
]
