"""
Orchestrator Service — event publication and notifications

Publishers are picked once at startup from a registry keyed by BrokerType.
All of them are best-effort and at most once: a failed publish is logged and
dropped, it never reaches the saga.

  ┌──────────────┐   order_events / saga_events   ┌──────────────────┐
  │ Orchestrator │ ──────────── Redis ──────────▶ │ any subscriber   │
  └──────────────┘          Pub/Sub               └──────────────────┘

Redis Pub/Sub is fire-and-forget: subscribers that are down miss events.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from enum import Enum
from typing import Sequence

import redis.asyncio as aioredis

from .aggregate import Order
from .events import DomainEvent
from .ports import EventPublisher, NotificationService

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = "order_events"

CHANNELS: dict[str, str] = {
    "OrderCreated": "order_events",
    "PaymentProcessed": "order_events",
    "SagaCompleted": "saga_events",
    "SagaFailed": "saga_events",
}


def channel_for(event_type: str) -> str:
    channel = CHANNELS.get(event_type)
    if channel is None:
        logger.warning("Unknown event type %s, using channel %s", event_type, DEFAULT_CHANNEL)
        return DEFAULT_CHANNEL
    return channel


def encode_event(event: DomainEvent) -> str:
    return json.dumps(
        {"event_type": event.event_type, "data": event.model_dump(mode="json")},
        default=str,
    )


# ── Publishers ──────────────────────────────────


class InMemoryEventPublisher(EventPublisher):
    """Keeps every published event in order. For tests and local runs."""

    def __init__(self) -> None:
        self._events: list[DomainEvent] = []

    async def publish(self, event: DomainEvent) -> None:
        self._events.append(event)
        logger.debug("Event published in memory: %s [%s]", event.event_type, event.event_id)

    async def publish_batch(self, events: Sequence[DomainEvent]) -> None:
        self._events.extend(events)

    @property
    def published_events(self) -> list[DomainEvent]:
        return list(self._events)

    def count_by_type(self, event_type: str) -> int:
        return sum(1 for e in self._events if e.event_type == event_type)

    def clear(self) -> None:
        self._events.clear()


class RedisEventPublisher(EventPublisher):
    def __init__(self, redis: aioredis.Redis) -> None:
        self._redis = redis

    async def publish(self, event: DomainEvent) -> None:
        channel = channel_for(event.event_type)
        try:
            await self._redis.publish(channel, encode_event(event))
            logger.info("Event %s [%s] published to %s", event.event_type, event.event_id, channel)
        except Exception:
            logger.exception("Failed to publish %s to %s", event.event_type, channel)


class LoggingEventPublisher(EventPublisher):
    async def publish(self, event: DomainEvent) -> None:
        logger.info("Event %s: %s", event.event_type, encode_event(event))


# ── Broker registry ─────────────────────────────


class BrokerType(str, Enum):
    IN_MEMORY = "IN_MEMORY"
    REDIS = "REDIS"
    LOGGING = "LOGGING"

    @classmethod
    def parse(cls, value: str) -> "BrokerType":
        try:
            return cls(value.strip().upper())
        except ValueError:
            raise ValueError(f"Unsupported message broker type: {value}") from None


PUBLISHERS: dict[BrokerType, Callable[[aioredis.Redis | None], EventPublisher]] = {
    BrokerType.IN_MEMORY: lambda _redis: InMemoryEventPublisher(),
    BrokerType.REDIS: lambda redis: RedisEventPublisher(redis),
    BrokerType.LOGGING: lambda _redis: LoggingEventPublisher(),
}


def create_event_publisher(
    broker: BrokerType, redis: aioredis.Redis | None = None
) -> EventPublisher:
    if broker is BrokerType.REDIS and redis is None:
        raise ValueError("REDIS broker requires a redis connection")
    publisher = PUBLISHERS[broker](redis)
    logger.info("Using %s for broker %s", type(publisher).__name__, broker.value)
    return publisher


# ── Notifications ───────────────────────────────


class LoggingNotificationService(NotificationService):
    async def notify_order_created(self, order: Order) -> None:
        logger.info(
            "[NOTIFICATION] Order created - id %s, number %s, customer %s (%s)",
            order.id, order.order_number, order.customer_name, order.customer_email,
        )

    async def notify_order_status_changed(self, order: Order) -> None:
        logger.info(
            "[NOTIFICATION] Order status changed - id %s, number %s, status %s",
            order.id, order.order_number, order.status.value,
        )

    async def notify_payment_failed(self, order: Order) -> None:
        logger.warning(
            "[NOTIFICATION] Payment failed - id %s, number %s, customer %s",
            order.id, order.order_number, order.customer_email,
        )

    async def notify_order_cancelled(self, order: Order) -> None:
        logger.info(
            "[NOTIFICATION] Order cancelled - id %s, number %s, customer %s",
            order.id, order.order_number, order.customer_email,
        )
