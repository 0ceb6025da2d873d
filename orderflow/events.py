"""
Order lifecycle event feed. Backend: Redis (LPUSH) or AWS SQS when event_backend="sqs".
Events are published after the transition has committed; a failed publish is
logged and counted but never rolls the order back.
"""
import json
import logging
import uuid
from datetime import datetime
from enum import Enum

import redis.asyncio as redis
from pydantic import BaseModel, Field

from orderflow.metrics import events_publish_failed_total, events_published_total
from orderflow.models import Order, OrderStatus, utcnow
from orderflow.sqs_client import send_message

logger = logging.getLogger(__name__)

ORDER_EVENTS_KEY = "queue:order_events"


class OrderEventType(str, Enum):
    ORDER_PLACED = "ORDER_PLACED"
    ORDER_ACCEPTED = "ORDER_ACCEPTED"
    ORDER_READY = "ORDER_READY"
    DRIVER_ASSIGNED = "DRIVER_ASSIGNED"
    DRIVER_REASSIGNED = "DRIVER_REASSIGNED"
    ORDER_DELIVERED = "ORDER_DELIVERED"
    ORDER_CANCELLED = "ORDER_CANCELLED"


class OrderEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: OrderEventType
    order_id: str
    status: OrderStatus
    customer_id: str
    restaurant_id: str
    driver_id: str | None = None
    actor_id: str | None = None
    occurred_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def for_order(cls, event_type: OrderEventType, order: Order, actor_id: str | None, driver_id: str | None = None) -> "OrderEvent":
        return cls(
            event_type=event_type,
            order_id=order.id,
            status=order.status,
            customer_id=order.customer_id,
            restaurant_id=order.restaurant_id,
            driver_id=driver_id if driver_id is not None else order.driver_id,
            actor_id=actor_id,
            occurred_at=order.updated_at,
        )


class EventPublisher:
    async def publish(self, event: OrderEvent) -> None:
        raise NotImplementedError


class NullEventPublisher(EventPublisher):
    async def publish(self, event: OrderEvent) -> None:
        return None


class RedisEventPublisher(EventPublisher):
    def __init__(self, client: redis.Redis, key: str = ORDER_EVENTS_KEY) -> None:
        self._redis = client
        self._key = key

    async def publish(self, event: OrderEvent) -> None:
        await self._redis.lpush(self._key, event.model_dump_json())


class SqsEventPublisher(EventPublisher):
    async def publish(self, event: OrderEvent) -> None:
        await send_message(json.loads(event.model_dump_json()), group_id=event.order_id)


async def emit(publisher: EventPublisher, event: OrderEvent) -> None:
    try:
        await publisher.publish(event)
    except Exception as e:
        events_publish_failed_total.inc()
        logger.warning("Failed to publish %s for order_id=%s: %s", event.event_type.value, event.order_id, e)
        return
    events_published_total.labels(event_type=event.event_type.value).inc()
