"""Message Processor: consumes topic deliveries and marks messages processed."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from courier.log import LogContext
from courier.metrics import record_message_processed
from courier.models import ProcessingDetails
from courier.store import MessageStore
from courier.transport import TopicDelivery

logger = logging.getLogger(__name__)


class MessageProcessor:
    """Handler for :class:`~courier.transport.TopicSubscriber`.

    Waits *delay_seconds* so the ``published`` state stays observable, then
    flips the record to ``processed``. Store errors propagate so the
    transport redelivers.
    """

    def __init__(
        self,
        store: MessageStore,
        *,
        delay_seconds: float = 5.0,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._delay_seconds = delay_seconds
        self._sleep = sleep

    async def process(self, delivery: TopicDelivery) -> bool:
        """Process one delivery. Returns ``False`` if it carried no ``messageId``."""
        message_id = delivery.data.get("messageId")
        if not message_id:
            logger.warning(
                "Delivery %s has no messageId, skipping", delivery.delivery_id
            )
            return False

        with LogContext(message_id=message_id, delivery_id=delivery.delivery_id):
            logger.info("Processing message %s (attempt %d)", message_id, delivery.attempt)
            await self._sleep(self._delay_seconds)
            details = ProcessingDetails(
                delivery_id=delivery.delivery_id,
                publish_time=delivery.publish_time,
                attributes=delivery.attributes,
            )
            await self._store.mark_processed(str(message_id), details)
            record_message_processed(
                topic=delivery.topic,
                latency=max(0.0, time.time() - delivery.publish_time),
            )
            logger.info("Message %s processed", message_id)
        return True
