"""Message Publisher: records a message and hands it to the topic transport."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Protocol

from courier.errors import InvalidInputError, PublishError
from courier.log import LogContext
from courier.metrics import record_message_published
from courier.models import PublishMessageResponse
from courier.store import MessageStore

logger = logging.getLogger(__name__)


class Topics(Protocol):
    """What the publisher needs from a pub/sub transport."""

    async def publish(
        self,
        topic: str,
        payload: Mapping[str, Any],
        attributes: Mapping[str, str] | None = None,
    ) -> str: ...


def _require_text(name: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInputError(f"{name} is required", details={"field": name.lower()})
    return value


def _validate_attributes(raw: Any) -> dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise InvalidInputError("attributes must be an object of strings")
    attributes: dict[str, str] = {}
    for key, value in raw.items():
        if not isinstance(value, str):
            raise InvalidInputError(
                "attribute values must be strings", details={"attribute": str(key)}
            )
        attributes[str(key)] = value
    return attributes


class MessagePublisher:
    """Publishes messages; returns once the transport has accepted them."""

    def __init__(self, store: MessageStore, transport: Topics) -> None:
        self._store = store
        self._transport = transport

    async def publish(
        self,
        topic: Any,
        message: Any,
        attributes: Mapping[str, Any] | None = None,
    ) -> PublishMessageResponse:
        topic = _require_text("Topic", topic)
        message = _require_text("Message", message)
        attrs = _validate_attributes(attributes)

        record = await self._store.create(topic, message, attrs)
        with LogContext(message_id=record.id, topic=topic):
            try:
                delivery_id = await self._transport.publish(
                    topic, {"message": message, "messageId": record.id}, attrs
                )
            except Exception as exc:
                logger.error("Failed to publish message %s: %s", record.id, exc)
                raise PublishError(
                    "Failed to publish message", details={"messageId": record.id}
                ) from exc
            record_message_published(topic=topic)
            logger.info("Message %s published to %s as %s", record.id, topic, delivery_id)
        return PublishMessageResponse(message_id=record.id)
