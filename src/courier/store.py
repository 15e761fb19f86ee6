"""Redis-backed document store and the task/message lifecycle stores.

Documents live in Redis hashes at ``{prefix}doc:{collection}:{id}`` with
every field JSON-encoded. A per-collection index set
(``{prefix}index:{collection}``) records all known ids, and every write
publishes the document id on ``{prefix}changes:{collection}`` so realtime
views can refresh. Numeric fields named in ``sorted_fields`` are also
kept in a sorted set (``{prefix}order:{collection}:{field}``) so newest-N
queries on them read only the documents they return.
"""

from __future__ import annotations

import contextlib
import json
import logging
import time
from collections.abc import AsyncIterator, Callable, Iterable, Mapping
from typing import Any
from uuid import uuid4

import redis.asyncio as aioredis
from redis.exceptions import WatchError

from courier.errors import DocumentNotFoundError, MessageNotFoundError, TaskNotFoundError
from courier.models import (
    TERMINAL_TASK_STATUSES,
    MessageRecord,
    MessageStatus,
    ProcessingDetails,
    TaskAction,
    TaskRecord,
    TaskResult,
    TaskStatus,
)

logger = logging.getLogger(__name__)

TASKS_COLLECTION = "cloud_tasks"
MESSAGES_COLLECTION = "pubsub_messages"
SORTED_FIELDS = ("createdAt", "publishedAt")

DocumentCheck = Callable[[dict[str, Any]], bool]


class ChangeFeed:
    """Stream of document ids changed in one collection."""

    def __init__(self, pubsub: Any, collection: str) -> None:
        self._pubsub = pubsub
        self.collection = collection

    async def next(self, timeout: float = 1.0) -> str | None:
        """Return the next changed document id, or ``None`` after *timeout* seconds."""
        msg = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=timeout)
        if msg is None or msg["type"] != "message":
            return None
        return msg["data"]


class DocumentStore:
    """Keyed document collections in Redis hashes.

    Args:
        redis_url: Redis connection URL.
        prefix: Prefix for every key and channel this store touches.
        sorted_fields: Numeric fields indexed in a per-collection sorted set.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        prefix: str = "courier:",
        sorted_fields: Iterable[str] = SORTED_FIELDS,
    ) -> None:
        self._redis_url = redis_url
        self._prefix = prefix
        self._sorted_fields = frozenset(sorted_fields)
        self._redis: aioredis.Redis | None = None

    async def connect(self) -> None:
        """Connect to Redis."""
        logger.debug("DocumentStore connecting to Redis (prefix=%s)", self._prefix)
        self._redis = aioredis.from_url(self._redis_url, decode_responses=True)

    async def disconnect(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            logger.debug("DocumentStore disconnected")

    def _client(self) -> aioredis.Redis:
        if self._redis is None:
            msg = "DocumentStore is not connected. Call connect() first."
            raise RuntimeError(msg)
        return self._redis

    async def ping(self) -> bool:
        return bool(await self._client().ping())  # type: ignore[misc]

    def _key(self, collection: str, doc_id: str) -> str:
        return f"{self._prefix}doc:{collection}:{doc_id}"

    def _index_key(self, collection: str) -> str:
        return f"{self._prefix}index:{collection}"

    def _channel(self, collection: str) -> str:
        return f"{self._prefix}changes:{collection}"

    def _order_key(self, collection: str, field: str) -> str:
        return f"{self._prefix}order:{collection}:{field}"

    def _scores(self, doc: Mapping[str, Any]) -> dict[str, float]:
        return {
            name: float(value)
            for name, value in doc.items()
            if name in self._sorted_fields
            and isinstance(value, int | float)
            and not isinstance(value, bool)
        }

    @staticmethod
    def _encode(doc: Mapping[str, Any]) -> dict[str, str]:
        return {k: json.dumps(v) for k, v in doc.items() if v is not None}

    @staticmethod
    def _decode(data: Mapping[str, str]) -> dict[str, Any]:
        return {k: json.loads(v) for k, v in data.items()}

    async def _notify(self, collection: str, doc_id: str) -> None:
        await self._client().publish(self._channel(collection), doc_id)  # type: ignore[misc]

    async def create(
        self,
        collection: str,
        doc: Mapping[str, Any],
        *,
        doc_id: str | None = None,
    ) -> str:
        """Write a new document and return its id.

        ``None`` values are skipped so optional fields stay absent.
        """
        doc_id = doc_id or uuid4().hex
        fields = self._encode({**doc, "id": doc_id})
        r = self._client()
        async with r.pipeline(transaction=True) as pipe:
            pipe.hset(self._key(collection, doc_id), mapping=fields)
            pipe.sadd(self._index_key(collection), doc_id)
            for name, score in self._scores(doc).items():
                pipe.zadd(self._order_key(collection, name), {doc_id: score})
            await pipe.execute()
        logger.debug("DocumentStore created %s/%s", collection, doc_id)
        await self._notify(collection, doc_id)
        return doc_id

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        """Return the document, or ``None`` if it does not exist."""
        data = await self._client().hgetall(self._key(collection, doc_id))  # type: ignore[misc]
        if not data:
            return None
        return self._decode(data)

    async def update(
        self,
        collection: str,
        doc_id: str,
        partial: Mapping[str, Any],
        *,
        set_once: Mapping[str, Any] | None = None,
        only_if: Iterable[str] | None = None,
        where: DocumentCheck | None = None,
    ) -> bool:
        """Apply a partial update inside one optimistic transaction.

        Args:
            collection: Collection name.
            doc_id: Document id.
            partial: Fields to overwrite.
            set_once: Fields written only when not already present.
            only_if: Allowed values of the document's current ``status``.
                When given and the current status is not in it, nothing is
                written.
            where: Predicate over the current (decoded) document. Nothing is
                written when it returns ``False``. It runs under ``WATCH``,
                so a concurrent write makes the whole check retry.

        Returns:
            ``True`` if the write was applied, ``False`` if a guard rejected it.

        Raises:
            DocumentNotFoundError: If the document does not exist.
        """
        key = self._key(collection, doc_id)
        fields = self._encode(partial)
        once = self._encode(set_once or {})
        scores = self._scores(partial)
        allowed = {str(s) for s in only_if} if only_if is not None else None

        r = self._client()
        async with r.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.hgetall(key)
                    if not raw:
                        raise DocumentNotFoundError(collection, doc_id)
                    current = self._decode(raw)
                    if (allowed is not None and current.get("status") not in allowed) or (
                        where is not None and not where(current)
                    ):
                        logger.debug(
                            "DocumentStore skipped update %s/%s (status=%s)",
                            collection,
                            doc_id,
                            current.get("status"),
                        )
                        return False
                    pipe.multi()
                    if fields:
                        pipe.hset(key, mapping=fields)
                    for name, value in once.items():
                        pipe.hsetnx(key, name, value)
                    for name, score in scores.items():
                        pipe.zadd(self._order_key(collection, name), {doc_id: score})
                    await pipe.execute()
                    break
                except WatchError:
                    logger.debug("DocumentStore write conflict on %s/%s, retrying", collection, doc_id)
                    continue

        await self._notify(collection, doc_id)
        return True

    async def query(
        self,
        collection: str,
        *,
        order_by: str,
        limit: int,
        descending: bool = True,
    ) -> list[dict[str, Any]]:
        """Return up to *limit* documents ordered by *order_by*.

        Ties are broken by ``id`` ascending; documents without the field
        sort last. Fields in ``sorted_fields`` are served from their sorted
        set; any other field scans the whole collection.
        """
        if limit <= 0:
            return []
        if order_by in self._sorted_fields:
            ids = await self._sorted_ids(collection, order_by, limit, descending)
            if ids is not None:
                docs = await self._fetch(collection, ids)
                return [d for d in docs if d is not None]

        r = self._client()
        members: set[str] = await r.smembers(self._index_key(collection))  # type: ignore[misc]
        docs = [d for d in await self._fetch(collection, members) if d is not None]
        present = sorted((d for d in docs if d.get(order_by) is not None), key=lambda d: d["id"])
        present.sort(key=lambda d: d[order_by], reverse=descending)
        missing = sorted((d for d in docs if d.get(order_by) is None), key=lambda d: d["id"])
        return (present + missing)[:limit]

    async def _fetch(
        self, collection: str, ids: Iterable[str]
    ) -> list[dict[str, Any] | None]:
        ids = list(ids)
        if not ids:
            return []
        async with self._client().pipeline(transaction=False) as pipe:
            for doc_id in ids:
                pipe.hgetall(self._key(collection, doc_id))
            rows = await pipe.execute()
        return [self._decode(row) if row else None for row in rows]

    async def _sorted_ids(
        self, collection: str, field: str, limit: int, descending: bool
    ) -> list[str] | None:
        """First *limit* ids by *field* from its sorted set.

        Returns ``None`` when the set holds fewer than *limit* ids but the
        collection has documents without *field*; those must come last, so
        the caller falls back to a scan.
        """
        r = self._client()
        key = self._order_key(collection, field)
        if descending:
            head = await r.zrevrange(key, 0, limit - 1, withscores=True)
        else:
            head = await r.zrange(key, 0, limit - 1, withscores=True)
        if len(head) < limit:
            total = await r.scard(self._index_key(collection))  # type: ignore[misc]
            if len(head) < total:
                return None
        if not head:
            return []

        # Redis orders equal scores by member, reversed for ZREVRANGE; pull
        # in every id tied with the last one and re-sort by id.
        scores = dict(head)
        edge = head[-1][1]
        for member in await r.zrangebyscore(key, edge, edge):
            scores[member] = edge
        ids = sorted(scores)
        ids.sort(key=scores.__getitem__, reverse=descending)
        return ids[:limit]

    async def count(self, collection: str) -> int:
        return int(await self._client().scard(self._index_key(collection)))  # type: ignore[misc]

    @contextlib.asynccontextmanager
    async def watch(self, collection: str) -> AsyncIterator[ChangeFeed]:
        """Subscribe to change notifications for *collection*."""
        channel = self._channel(collection)
        pubsub = self._client().pubsub()
        await pubsub.subscribe(channel)  # type: ignore[misc]
        logger.debug("DocumentStore watching %s", channel)
        try:
            yield ChangeFeed(pubsub, collection)
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()  # type: ignore[misc]


# ---------------------------------------------------------------------------
# Lifecycle stores
# ---------------------------------------------------------------------------

_NON_TERMINAL = frozenset(TaskStatus) - TERMINAL_TASK_STATUSES


class TaskStore:
    """Task lifecycle records on top of a :class:`DocumentStore`.

    All timestamps come from *clock*. Every transition is a guarded write,
    so a task that reached ``completed`` or ``failed`` is never modified.
    A worker claims a task with :meth:`mark_processing`; the claim lasts
    *lease_seconds*, after which another delivery may take it over.
    """

    def __init__(
        self,
        documents: DocumentStore,
        *,
        collection: str = TASKS_COLLECTION,
        clock: Callable[[], float] = time.time,
        lease_seconds: float = 60.0,
    ) -> None:
        self._documents = documents
        self._collection = collection
        self._clock = clock
        self._lease_seconds = lease_seconds

    @property
    def collection(self) -> str:
        return self._collection

    async def _update(self, task_id: str, partial: Mapping[str, Any], **kwargs: Any) -> bool:
        try:
            return await self._documents.update(self._collection, task_id, partial, **kwargs)
        except DocumentNotFoundError as exc:
            raise TaskNotFoundError(task_id) from exc

    async def create(
        self,
        action: TaskAction,
        data: Mapping[str, str],
        schedule_delay_seconds: int = 0,
    ) -> TaskRecord:
        """Persist a new task in ``queued`` state."""
        doc = {
            "action": action.value,
            "data": dict(data),
            "status": TaskStatus.QUEUED.value,
            "scheduleDelaySeconds": schedule_delay_seconds,
            "createdAt": self._clock(),
        }
        task_id = await self._documents.create(self._collection, doc)
        logger.debug("TaskStore created task %s (action=%s)", task_id, action.value)
        return TaskRecord.model_validate({**doc, "id": task_id})

    async def get(self, task_id: str) -> TaskRecord | None:
        doc = await self._documents.get(self._collection, task_id)
        return TaskRecord.model_validate(doc) if doc is not None else None

    async def require(self, task_id: str) -> TaskRecord:
        record = await self.get(task_id)
        if record is None:
            raise TaskNotFoundError(task_id)
        return record

    async def mark_scheduled(self, task_id: str, dispatch_handle: str) -> bool:
        """Record the dispatch handle and move ``queued`` to ``scheduled``.

        If the worker already picked the task up, only the handle is stored.
        """
        moved = await self._update(
            task_id,
            {"status": TaskStatus.SCHEDULED.value, "dispatchHandle": dispatch_handle},
            only_if={TaskStatus.QUEUED},
        )
        if not moved:
            await self._update(task_id, {"dispatchHandle": dispatch_handle})
        return moved

    async def mark_processing(self, task_id: str, owner: str) -> bool:
        """Claim the task for *owner* and move it to ``processing``.

        The claim succeeds from ``queued`` or ``scheduled``, or from
        ``processing`` once the current owner's lease has expired. Returns
        ``False`` when the task is terminal or another owner's lease is live.
        """
        now = self._clock()

        def claimable(doc: dict[str, Any]) -> bool:
            if doc.get("status") != TaskStatus.PROCESSING:
                return True
            return doc.get("processingLeaseUntil", 0) <= now

        return await self._update(
            task_id,
            {
                "status": TaskStatus.PROCESSING.value,
                "processingOwner": owner,
                "processingLeaseUntil": now + self._lease_seconds,
            },
            set_once={"processingStartedAt": now},
            only_if=_NON_TERMINAL,
            where=claimable,
        )

    def _owned_by(self, owner: str | None) -> DocumentCheck | None:
        if owner is None:
            return None
        return lambda doc: doc.get("processingOwner") == owner

    async def mark_completed(
        self, task_id: str, result: TaskResult, *, owner: str | None = None
    ) -> bool:
        """Move a ``processing`` task to ``completed`` with *result*.

        With *owner*, the write only lands while *owner* still holds the claim.
        """
        return await self._update(
            task_id,
            {"status": TaskStatus.COMPLETED.value, "result": result.model_dump(mode="json")},
            set_once={"completedAt": self._clock()},
            only_if={TaskStatus.PROCESSING},
            where=self._owned_by(owner),
        )

    async def mark_failed(self, task_id: str, error: str, *, owner: str | None = None) -> bool:
        """Move a non-terminal task to ``failed`` with *error*.

        With *owner*, the task must be ``processing`` and claimed by *owner*.
        """
        return await self._update(
            task_id,
            {"status": TaskStatus.FAILED.value, "error": error},
            set_once={"failedAt": self._clock()},
            only_if={TaskStatus.PROCESSING} if owner is not None else _NON_TERMINAL,
            where=self._owned_by(owner),
        )

    async def list_recent(self, limit: int = 50) -> list[TaskRecord]:
        """Newest tasks first."""
        docs = await self._documents.query(self._collection, order_by="createdAt", limit=limit)
        return [TaskRecord.model_validate(d) for d in docs]


class MessageStore:
    """Published-message records on top of a :class:`DocumentStore`."""

    def __init__(
        self,
        documents: DocumentStore,
        *,
        collection: str = MESSAGES_COLLECTION,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._documents = documents
        self._collection = collection
        self._clock = clock

    @property
    def collection(self) -> str:
        return self._collection

    async def create(
        self,
        topic: str,
        message: str,
        attributes: Mapping[str, str] | None = None,
    ) -> MessageRecord:
        """Persist a new message in ``published`` state."""
        doc = {
            "topic": topic,
            "message": message,
            "attributes": dict(attributes or {}),
            "status": MessageStatus.PUBLISHED.value,
            "publishedAt": self._clock(),
        }
        message_id = await self._documents.create(self._collection, doc)
        logger.debug("MessageStore created message %s (topic=%s)", message_id, topic)
        return MessageRecord.model_validate({**doc, "id": message_id})

    async def get(self, message_id: str) -> MessageRecord | None:
        doc = await self._documents.get(self._collection, message_id)
        return MessageRecord.model_validate(doc) if doc is not None else None

    async def require(self, message_id: str) -> MessageRecord:
        record = await self.get(message_id)
        if record is None:
            raise MessageNotFoundError(message_id)
        return record

    async def mark_processed(self, message_id: str, details: ProcessingDetails) -> None:
        """Flip the message to ``processed``.

        ``processedAt`` is written once; a redelivery only refreshes
        ``processingDetails``.
        """
        try:
            await self._documents.update(
                self._collection,
                message_id,
                {
                    "status": MessageStatus.PROCESSED.value,
                    "processingDetails": details.model_dump(mode="json", by_alias=True),
                },
                set_once={"processedAt": self._clock()},
            )
        except DocumentNotFoundError as exc:
            raise MessageNotFoundError(message_id) from exc

    async def list_recent(self, limit: int = 50) -> list[MessageRecord]:
        """Newest messages first."""
        docs = await self._documents.query(self._collection, order_by="publishedAt", limit=limit)
        return [MessageRecord.model_validate(d) for d in docs]
