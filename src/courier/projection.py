"""Realtime View Projection: live top-N snapshots of a collection.

Subscribers receive the full ordered batch (never a diff) once at
subscription time and again after every change notification::

    sub = projection.subscribe("cloud_tasks", limit=20, order_field="createdAt")
    async for snapshot in sub:
        render(snapshot)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from courier.store import MESSAGES_COLLECTION, TASKS_COLLECTION, DocumentStore

logger = logging.getLogger(__name__)

Snapshot = list[dict[str, Any]]


@dataclass(frozen=True, slots=True)
class View:
    """A named dashboard view over one collection."""

    collection: str
    order_field: str
    default_limit: int


VIEWS: dict[str, View] = {
    "tasks": View(TASKS_COLLECTION, "createdAt", 20),
    "messages": View(MESSAGES_COLLECTION, "publishedAt", 20),
}


class Subscription:
    """Async iterator of snapshots; call :meth:`unsubscribe` to stop it.

    If the change feed cannot be opened or fails later, a single empty
    snapshot is delivered and iteration ends.
    """

    def __init__(
        self,
        documents: DocumentStore,
        collection: str,
        limit: int,
        order_field: str,
        *,
        poll_timeout: float = 1.0,
    ) -> None:
        self._documents = documents
        self._collection = collection
        self._limit = limit
        self._order_field = order_field
        self._poll_timeout = poll_timeout
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def unsubscribe(self) -> None:
        """Stop delivery. At most one snapshot already being computed may still arrive."""
        self._closed = True

    def __aiter__(self) -> AsyncIterator[Snapshot]:
        return self._snapshots()

    async def _snapshot(self) -> Snapshot:
        return await self._documents.query(
            self._collection, order_by=self._order_field, limit=self._limit
        )

    async def _snapshots(self) -> AsyncIterator[Snapshot]:
        try:
            async with self._documents.watch(self._collection) as feed:
                if self._closed:
                    return
                yield await self._snapshot()
                while not self._closed:
                    changed = await feed.next(timeout=self._poll_timeout)
                    if changed is None:
                        await asyncio.sleep(0.01)
                        continue
                    if self._closed:
                        break
                    logger.debug("Projection refresh on %s (changed=%s)", self._collection, changed)
                    yield await self._snapshot()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("Projection on %s failed, ending subscription", self._collection, exc_info=True)
            if not self._closed:
                self._closed = True
                yield []


class RealtimeProjection:
    """Factory for :class:`Subscription` objects over a :class:`DocumentStore`."""

    def __init__(self, documents: DocumentStore, *, poll_timeout: float = 1.0) -> None:
        self._documents = documents
        self._poll_timeout = poll_timeout

    def subscribe(self, collection: str, limit: int, order_field: str) -> Subscription:
        return Subscription(
            self._documents,
            collection,
            limit,
            order_field,
            poll_timeout=self._poll_timeout,
        )

    def subscribe_view(self, name: str, limit: int | None = None) -> Subscription:
        """Subscribe to one of the named :data:`VIEWS` (``tasks`` or ``messages``).

        Raises:
            KeyError: If *name* is not a known view.
        """
        view = VIEWS[name]
        return self.subscribe(view.collection, limit or view.default_limit, view.order_field)
