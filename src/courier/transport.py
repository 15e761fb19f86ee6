"""Redis-backed delivery transports.

Two transports feed the core:

* :class:`DeliveryQueue` + :class:`DeliveryAgent` deliver JSON bodies to an
  HTTP endpoint, optionally after a delay, retrying with exponential backoff
  on non-2xx responses.
* :class:`TopicTransport` + :class:`TopicSubscriber` carry published
  payloads through one Redis Stream per topic, read with consumer groups
  (XREADGROUP/XACK) so each entry reaches one subscriber at least once.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import random
import socket
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any
from uuid import uuid4

import httpx
import redis.asyncio as aioredis
from pydantic import BaseModel, Field

from courier.metrics import record_delivery_attempt, record_queue_depth

logger = logging.getLogger(__name__)

HEADER_TASK_NAME = "X-Courier-Task-Name"
HEADER_QUEUE_NAME = "X-Courier-Queue-Name"
HEADER_RETRY_COUNT = "X-Courier-Retry-Count"


# ---------------------------------------------------------------------------
# Delayed HTTP delivery
# ---------------------------------------------------------------------------


class DeliveryRequest(BaseModel):
    """One pending HTTP delivery."""

    model_config = {"frozen": True}

    handle: str
    url: str
    body: dict[str, Any] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)
    attempt: int = 0
    enqueued_at: float = 0.0


class DeliveryQueue:
    """Delayed delivery queue on a Redis sorted set.

    Handles are scored by their due time in ``{prefix}queue:{name}:due``;
    request bodies live in the ``{prefix}queue:{name}:requests`` hash.

    Args:
        redis_url: Redis connection URL.
        queue_name: Logical queue name, also the handle prefix.
        prefix: Key prefix.
        lease_seconds: How long a claimed request stays invisible before
            another agent may claim it again.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        queue_name: str = "default",
        prefix: str = "courier:",
        lease_seconds: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis_url = redis_url
        self._queue_name = queue_name
        self._due_key = f"{prefix}queue:{queue_name}:due"
        self._requests_key = f"{prefix}queue:{queue_name}:requests"
        self._lease_seconds = lease_seconds
        self._clock = clock
        self._redis: aioredis.Redis | None = None

    @property
    def queue_name(self) -> str:
        return self._queue_name

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = aioredis.from_url(self._redis_url, decode_responses=True)

    async def disconnect(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def _client(self) -> aioredis.Redis:
        if self._redis is None:
            msg = "DeliveryQueue is not connected. Call connect() first."
            raise RuntimeError(msg)
        return self._redis

    async def _put(self, request: DeliveryRequest, due: float) -> None:
        r = self._client()
        async with r.pipeline(transaction=True) as pipe:
            pipe.hset(self._requests_key, request.handle, request.model_dump_json())
            pipe.zadd(self._due_key, {request.handle: due})
            await pipe.execute()

    async def enqueue(
        self,
        url: str,
        body: Mapping[str, Any],
        *,
        delay_seconds: float = 0,
        headers: Mapping[str, str] | None = None,
    ) -> str:
        """Schedule a POST of *body* to *url* and return the delivery handle."""
        now = self._clock()
        handle = f"{self._queue_name}/tasks/{uuid4().hex}"
        request = DeliveryRequest(
            handle=handle,
            url=url,
            body=dict(body),
            headers=dict(headers or {}),
            enqueued_at=now,
        )
        await self._put(request, now + max(0.0, delay_seconds))
        logger.debug("DeliveryQueue enqueued %s (delay=%ss)", handle, delay_seconds)
        return handle

    async def claim_due(self, limit: int = 10) -> list[DeliveryRequest]:
        """Claim up to *limit* requests whose due time has passed.

        A handle is claimed by whoever removes it from the due set first;
        it is then re-added at ``now + lease_seconds`` so a crashed agent's
        request becomes due again.
        """
        r = self._client()
        now = self._clock()
        handles: list[str] = await r.zrangebyscore(self._due_key, "-inf", now, start=0, num=limit)
        claimed: list[DeliveryRequest] = []
        for handle in handles:
            if not await r.zrem(self._due_key, handle):
                continue
            raw = await r.hget(self._requests_key, handle)  # type: ignore[misc]
            if raw is None:
                continue
            await r.zadd(self._due_key, {handle: now + self._lease_seconds})
            claimed.append(DeliveryRequest.model_validate_json(raw))
        return claimed

    async def reschedule(self, request: DeliveryRequest, delay_seconds: float) -> DeliveryRequest:
        """Put *request* back with its attempt counter incremented."""
        updated = request.model_copy(update={"attempt": request.attempt + 1})
        await self._put(updated, self._clock() + max(0.0, delay_seconds))
        return updated

    async def complete(self, handle: str) -> None:
        """Forget *handle*."""
        r = self._client()
        async with r.pipeline(transaction=True) as pipe:
            pipe.zrem(self._due_key, handle)
            pipe.hdel(self._requests_key, handle)
            await pipe.execute()

    async def get(self, handle: str) -> DeliveryRequest | None:
        raw = await self._client().hget(self._requests_key, handle)  # type: ignore[misc]
        return DeliveryRequest.model_validate_json(raw) if raw is not None else None

    async def due_at(self, handle: str) -> float | None:
        return await self._client().zscore(self._due_key, handle)

    async def depth(self) -> int:
        """Number of requests not yet delivered or dropped."""
        return int(await self._client().zcard(self._due_key))


class DeliveryAgent:
    """Claims due requests from a :class:`DeliveryQueue` and POSTs them.

    A 2xx response completes the request. Any other response, or a
    connection error, reschedules it after
    ``min(max_backoff, min_backoff * 2**attempt)`` seconds. After
    *max_attempts* attempts the request is dropped.
    """

    def __init__(
        self,
        queue: DeliveryQueue,
        *,
        client: httpx.AsyncClient | None = None,
        max_attempts: int = 5,
        min_backoff: float = 1.0,
        max_backoff: float = 60.0,
        poll_interval: float = 0.5,
        batch_size: int = 10,
        timeout: float = 30.0,
    ) -> None:
        self._queue = queue
        self._client = client
        self._owns_client = client is None
        self._max_attempts = max_attempts
        self._min_backoff = min_backoff
        self._max_backoff = max_backoff
        self._poll_interval = poll_interval
        self._batch_size = batch_size
        self._timeout = timeout
        self._shutdown_event = asyncio.Event()
        self._delivered = 0
        self._dropped = 0

    @property
    def delivered(self) -> int:
        return self._delivered

    @property
    def dropped(self) -> int:
        return self._dropped

    def backoff(self, attempt: int) -> float:
        """Delay before retrying a request that has failed *attempt* + 1 times."""
        return min(self._max_backoff, self._min_backoff * (2**attempt))

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client if this agent created it."""
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def deliver(self, request: DeliveryRequest) -> str:
        """Attempt one delivery; returns ``delivered``, ``retry`` or ``dropped``."""
        queue_name = self._queue.queue_name
        headers = {
            **request.headers,
            HEADER_TASK_NAME: request.handle,
            HEADER_QUEUE_NAME: queue_name,
            HEADER_RETRY_COUNT: str(request.attempt),
        }
        try:
            response = await self._http().post(request.url, json=request.body, headers=headers)
            ok = response.is_success
            reason = f"HTTP {response.status_code}"
        except httpx.HTTPError as exc:
            ok = False
            reason = str(exc) or type(exc).__name__

        if ok:
            await self._queue.complete(request.handle)
            self._delivered += 1
            record_delivery_attempt(outcome="delivered", queue_name=queue_name)
            logger.debug("Delivered %s (attempt=%d)", request.handle, request.attempt)
            return "delivered"

        if request.attempt + 1 >= self._max_attempts:
            await self._queue.complete(request.handle)
            self._dropped += 1
            record_delivery_attempt(outcome="dropped", queue_name=queue_name)
            logger.error(
                "Dropping %s after %d attempts (%s)",
                request.handle,
                request.attempt + 1,
                reason,
            )
            return "dropped"

        delay = self.backoff(request.attempt)
        await self._queue.reschedule(request, delay)
        record_delivery_attempt(outcome="retry", queue_name=queue_name)
        logger.warning(
            "Delivery of %s failed (%s), retrying in %.1fs", request.handle, reason, delay
        )
        return "retry"

    async def run_once(self) -> int:
        """Deliver every currently due request; returns how many were attempted."""
        requests = await self._queue.claim_due(self._batch_size)
        if requests:
            await asyncio.gather(*(self.deliver(req) for req in requests))
        record_queue_depth(depth=await self._queue.depth(), queue_name=self._queue.queue_name)
        return len(requests)

    async def start(self) -> None:
        """Sweep the queue until :meth:`stop` is called."""
        logger.info(
            "Delivery agent starting (queue=%s, max_attempts=%d)",
            self._queue.queue_name,
            self._max_attempts,
        )
        self._shutdown_event.clear()
        try:
            while not self._shutdown_event.is_set():
                try:
                    attempted = await self.run_once()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.error("Delivery sweep failed, retrying", exc_info=True)
                    attempted = 0
                if attempted < self._batch_size:
                    with contextlib.suppress(asyncio.TimeoutError):
                        await asyncio.wait_for(
                            self._shutdown_event.wait(), timeout=self._poll_interval
                        )
        finally:
            logger.info(
                "Delivery agent stopped (delivered=%d, dropped=%d)",
                self._delivered,
                self._dropped,
            )
            await self.aclose()

    async def stop(self) -> None:
        """Signal the sweep loop to exit."""
        self._shutdown_event.set()


# ---------------------------------------------------------------------------
# Topic streams
# ---------------------------------------------------------------------------


class TopicDelivery(BaseModel):
    """A published payload as handed to a subscriber."""

    model_config = {"frozen": True}

    topic: str = ""
    data: dict[str, Any] = Field(default_factory=dict)
    attributes: dict[str, str] = Field(default_factory=dict)
    delivery_id: str
    publish_time: float
    attempt: int = 1


def _generate_consumer_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{random.randbytes(4).hex()}"


class TopicTransport:
    """Publishes payloads to per-topic Redis Streams (``{prefix}topic:{topic}``).

    Each stream is trimmed to roughly *maxlen* entries on every append.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        prefix: str = "courier:",
        maxlen: int = 10_000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis_url = redis_url
        self._prefix = prefix
        self._maxlen = maxlen
        self._clock = clock
        self._redis: aioredis.Redis | None = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = aioredis.from_url(self._redis_url, decode_responses=True)

    async def disconnect(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def _client(self) -> aioredis.Redis:
        if self._redis is None:
            msg = "TopicTransport is not connected. Call connect() first."
            raise RuntimeError(msg)
        return self._redis

    def stream_key(self, topic: str) -> str:
        return f"{self._prefix}topic:{topic}"

    async def publish(
        self,
        topic: str,
        payload: Mapping[str, Any],
        attributes: Mapping[str, str] | None = None,
    ) -> str:
        """Append *payload* to *topic*; returns the delivery id (the stream entry id)."""
        fields = {
            "data": json.dumps(dict(payload)),
            "attributes": json.dumps(dict(attributes or {})),
            "publishTime": json.dumps(self._clock()),
            "attempt": "1",
        }
        delivery_id = await self._client().xadd(
            self.stream_key(topic), fields, maxlen=self._maxlen, approximate=True
        )
        logger.debug("Published to %s as %s", topic, delivery_id)
        return delivery_id


TopicHandler = Callable[[TopicDelivery], Awaitable[Any]]


class TopicSubscriber:
    """Consumer-group reader for one topic.

    Handler success acknowledges the entry. Handler failure waits
    ``min(max_backoff, min_backoff * 2**(attempt - 1))`` seconds, re-adds a
    copy with the same delivery id and ``attempt + 1``, then acknowledges
    the original; after *max_attempts* the entry is dropped with an error
    log. The wait holds only the read loop that saw the failure.

    Args:
        redis_url: Redis connection URL.
        topic: Topic to read.
        handler: Coroutine called with each :class:`TopicDelivery`.
        group: Consumer group (default ``"{topic}:processor"``).
        consumer: Consumer name within the group. Auto-generated if omitted.
        concurrency: Number of concurrent read loops in :meth:`start`.
        max_attempts: Deliveries per entry before it is dropped.
        min_backoff: Wait before the first redelivery, in seconds.
        max_backoff: Redelivery wait ceiling in seconds.
        maxlen: Approximate stream length kept when re-adding entries.
    """

    def __init__(
        self,
        redis_url: str,
        topic: str,
        handler: TopicHandler,
        *,
        group: str | None = None,
        consumer: str | None = None,
        prefix: str = "courier:",
        concurrency: int = 1,
        max_attempts: int = 5,
        min_backoff: float = 1.0,
        max_backoff: float = 60.0,
        maxlen: int = 10_000,
        block_seconds: float = 2.0,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self._redis_url = redis_url
        self._topic = topic
        self._handler = handler
        self._stream = f"{prefix}topic:{topic}"
        self._group = group or f"{topic}:processor"
        self._consumer = consumer or _generate_consumer_id()
        self._concurrency = concurrency
        self._max_attempts = max_attempts
        self._min_backoff = min_backoff
        self._max_backoff = max_backoff
        self._maxlen = maxlen
        self._block_seconds = block_seconds
        self._sleep = sleep
        self._redis: aioredis.Redis | None = None
        self._shutdown_event = asyncio.Event()
        self._processed = 0
        self._failed = 0

    @property
    def topic(self) -> str:
        return self._topic

    @property
    def processed(self) -> int:
        return self._processed

    @property
    def failed(self) -> int:
        return self._failed

    def backoff(self, attempt: int) -> float:
        """Wait before redelivering an entry whose *attempt*-th delivery failed."""
        return min(self._max_backoff, self._min_backoff * (2 ** (attempt - 1)))

    async def connect(self) -> None:
        """Connect to Redis and ensure the consumer group exists."""
        self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
        await self.ensure_group()

    async def ensure_group(self) -> None:
        try:
            await self._client().xgroup_create(self._stream, self._group, id="0", mkstream=True)
        except aioredis.ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise

    async def disconnect(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def _client(self) -> aioredis.Redis:
        if self._redis is None:
            msg = "TopicSubscriber is not connected. Call connect() first."
            raise RuntimeError(msg)
        return self._redis

    def _to_delivery(self, entry_id: str, fields: Mapping[str, str]) -> TopicDelivery:
        return TopicDelivery(
            topic=self._topic,
            data=json.loads(fields.get("data", "{}")),
            attributes=json.loads(fields.get("attributes", "{}")),
            delivery_id=fields.get("deliveryId", entry_id),
            publish_time=float(json.loads(fields.get("publishTime", "0"))),
            attempt=int(fields.get("attempt", "1")),
        )

    async def poll_once(self, timeout: float = 0) -> bool:
        """Read and handle at most one entry.

        Waits up to *timeout* seconds for an entry; ``0`` returns immediately.
        Returns ``True`` if an entry was handled.
        """
        r = self._client()
        kwargs: dict[str, Any] = {"count": 1}
        if timeout > 0:
            kwargs["block"] = int(timeout * 1000)
        result = await r.xreadgroup(self._group, self._consumer, {self._stream: ">"}, **kwargs)
        if not result:
            return False
        _stream_name, entries = result[0]
        if not entries:
            return False
        entry_id, fields = entries[0]
        await self._handle(entry_id, fields)
        return True

    async def _handle(self, entry_id: str, fields: dict[str, str]) -> None:
        r = self._client()
        delivery = self._to_delivery(entry_id, fields)
        try:
            await self._handler(delivery)
        except asyncio.CancelledError:
            raise
        except Exception:
            self._failed += 1
            if delivery.attempt < self._max_attempts:
                delay = self.backoff(delivery.attempt)
                logger.warning(
                    "Handler failed for %s on %s (attempt %d), redelivering in %.1fs",
                    delivery.delivery_id,
                    self._topic,
                    delivery.attempt,
                    delay,
                    exc_info=True,
                )
                await self._sleep(delay)
                # Copy first, then ack: a crash in between delivers twice, never zero times.
                await r.xadd(
                    self._stream,
                    {
                        **fields,
                        "deliveryId": delivery.delivery_id,
                        "attempt": str(delivery.attempt + 1),
                    },
                    maxlen=self._maxlen,
                    approximate=True,
                )
                await r.xack(self._stream, self._group, entry_id)
            else:
                await r.xack(self._stream, self._group, entry_id)
                logger.error(
                    "Dropping %s on %s after %d attempts",
                    delivery.delivery_id,
                    self._topic,
                    delivery.attempt,
                    exc_info=True,
                )
            return
        await r.xack(self._stream, self._group, entry_id)
        self._processed += 1

    async def start(self) -> None:
        """Run the read loops until :meth:`stop` is called."""
        owns_connection = self._redis is None
        if owns_connection:
            await self.connect()
        else:
            await self.ensure_group()
        logger.info(
            "Subscriber %s starting on %s (group=%s, concurrency=%d)",
            self._consumer,
            self._topic,
            self._group,
            self._concurrency,
        )
        self._shutdown_event.clear()
        try:
            loops = [asyncio.create_task(self._read_loop()) for _ in range(self._concurrency)]
            await asyncio.gather(*loops)
        finally:
            logger.info(
                "Subscriber %s stopped (processed=%d, failed=%d)",
                self._consumer,
                self._processed,
                self._failed,
            )
            if owns_connection:
                await self.disconnect()

    async def _read_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                await self.poll_once(timeout=self._block_seconds)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error(
                    "Subscriber %s read failed on %s, retrying in 1s",
                    self._consumer,
                    self._topic,
                    exc_info=True,
                )
                await asyncio.sleep(1.0)

    async def stop(self) -> None:
        """Signal the read loops to exit."""
        self._shutdown_event.set()
