"""Wiring of stores, transports and components from :class:`Settings`.

The process entry point (``create_app`` or a CLI command) owns the
:class:`Services` lifecycle; components receive their collaborators
through their constructors.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Iterable
from dataclasses import dataclass

import httpx

from courier.config import Settings
from courier.dispatcher import TaskDispatcher
from courier.processor import MessageProcessor
from courier.projection import RealtimeProjection
from courier.publisher import MessagePublisher
from courier.store import DocumentStore, MessageStore, TaskStore
from courier.transport import DeliveryAgent, DeliveryQueue, TopicSubscriber, TopicTransport
from courier.worker import TaskWorker

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    documents: DocumentStore
    tasks: TaskStore
    messages: MessageStore
    queue: DeliveryQueue
    topics: TopicTransport
    dispatcher: TaskDispatcher
    worker: TaskWorker
    publisher: MessagePublisher
    processor: MessageProcessor
    projection: RealtimeProjection

    async def connect(self) -> None:
        await self.documents.connect()
        await self.queue.connect()
        await self.topics.connect()
        logger.debug("Services connected")

    async def disconnect(self) -> None:
        await self.topics.disconnect()
        await self.queue.disconnect()
        await self.documents.disconnect()
        logger.debug("Services disconnected")


def build_services(settings: Settings) -> Services:
    """Construct (but do not connect) every component for *settings*."""
    documents = DocumentStore(settings.redis_url, prefix=settings.key_prefix)
    tasks = TaskStore(documents, lease_seconds=settings.task_lease_seconds)
    messages = MessageStore(documents)
    queue = DeliveryQueue(
        settings.redis_url, queue_name=settings.queue_name, prefix=settings.key_prefix
    )
    topics = TopicTransport(
        settings.redis_url, prefix=settings.key_prefix, maxlen=settings.topic_stream_maxlen
    )
    return Services(
        settings=settings,
        documents=documents,
        tasks=tasks,
        messages=messages,
        queue=queue,
        topics=topics,
        dispatcher=TaskDispatcher(tasks, queue, settings),
        worker=TaskWorker(tasks, latency_scale=settings.latency_scale),
        publisher=MessagePublisher(messages, topics),
        processor=MessageProcessor(
            messages, delay_seconds=settings.message_processing_delay_seconds
        ),
        projection=RealtimeProjection(documents),
    )


def build_delivery_agent(
    services: Services, *, client: httpx.AsyncClient | None = None
) -> DeliveryAgent:
    settings = services.settings
    return DeliveryAgent(
        services.queue,
        client=client,
        max_attempts=settings.delivery_max_attempts,
        min_backoff=settings.delivery_min_backoff,
        max_backoff=settings.delivery_max_backoff,
    )


def build_subscribers(
    services: Services, topics: Iterable[str] | None = None
) -> list[TopicSubscriber]:
    """One :class:`TopicSubscriber` per topic, each feeding the Message Processor."""
    settings = services.settings
    return [
        TopicSubscriber(
            settings.redis_url,
            topic,
            services.processor.process,
            prefix=settings.key_prefix,
            max_attempts=settings.delivery_max_attempts,
            min_backoff=settings.delivery_min_backoff,
            max_backoff=settings.delivery_max_backoff,
            maxlen=settings.topic_stream_maxlen,
        )
        for topic in (topics if topics is not None else settings.topics)
    ]


class TransportRunner:
    """Runs a delivery agent and topic subscribers as background tasks."""

    def __init__(self, agent: DeliveryAgent | None, subscribers: list[TopicSubscriber]) -> None:
        self._agent = agent
        self._subscribers = subscribers
        self._tasks: list[asyncio.Task[None]] = []

    async def start(self) -> None:
        if self._agent is not None:
            self._tasks.append(asyncio.create_task(self._agent.start()))
        for sub in self._subscribers:
            self._tasks.append(asyncio.create_task(sub.start()))
        logger.info(
            "Transport runner started (agent=%s, subscribers=%d)",
            self._agent is not None,
            len(self._subscribers),
        )

    async def wait(self) -> None:
        """Block until every transport loop has exited."""
        await asyncio.gather(*self._tasks)

    async def stop(self) -> None:
        if self._agent is not None:
            await self._agent.stop()
        for sub in self._subscribers:
            await sub.stop()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
