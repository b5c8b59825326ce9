"""
Order Service - order lifecycle events

Published to the Redis `order_events` channel after each state change so
other services can react. Redis Pub/Sub is fire-and-forget, and so is
publishing: a Redis outage is logged and never fails the request that
changed the order.
"""

import json
import logging
from datetime import datetime

import redis.asyncio as aioredis
from pydantic import BaseModel

logger = logging.getLogger(__name__)

CHANNEL = "order_events"


class OrderCreated(BaseModel):
    order_id: int
    user_id: int
    amount: float
    timestamp: datetime


class OrderPaid(BaseModel):
    order_id: int
    transaction_id: str | None
    amount: float
    timestamp: datetime


class OrderCancelled(BaseModel):
    """Cancelled by the client; refund_status records the compensating refund."""
    order_id: int
    previous_status: str
    refund_status: str
    timestamp: datetime


class EventPublisher:
    def __init__(self, redis: aioredis.Redis, channel: str = CHANNEL) -> None:
        self.redis = redis
        self.channel = channel

    async def publish(self, event: BaseModel) -> None:
        event_type = type(event).__name__
        try:
            await self.redis.publish(
                self.channel,
                json.dumps(
                    {"event_type": event_type, "data": event.model_dump(mode="json")},
                    default=str,
                ),
            )
        except Exception:
            logger.exception("Failed to publish %s", event_type)
