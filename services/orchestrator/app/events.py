"""
Orchestrator Service — domain events

Facts the saga publishes. Named in the past tense and immutable once built.
Publication is best-effort: losing one of these never changes an order.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Literal
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from .aggregate import DEFAULT_CURRENCY, Order, OrderStatus, RiskLevel


def _now() -> datetime:
    return datetime.now(timezone.utc)


class DomainEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: UUID = Field(default_factory=uuid4)
    aggregate_id: UUID | None = None
    occurred_at: datetime = Field(default_factory=_now)
    event_type: str
    event_version: str = "1.0"


class OrderCreated(DomainEvent):
    """Step 1 of the saga persisted a new order."""
    event_type: Literal["OrderCreated"] = "OrderCreated"
    order_id: UUID
    order_number: str
    customer_id: UUID
    customer_name: str | None
    customer_email: str
    total_amount: Decimal
    currency: str = DEFAULT_CURRENCY
    saga_id: UUID | None = None

    @classmethod
    def from_order(
        cls, order: Order, saga_id: UUID | None = None, currency: str = DEFAULT_CURRENCY
    ) -> "OrderCreated":
        return cls(
            aggregate_id=order.id,
            order_id=order.id,
            order_number=order.order_number,
            customer_id=order.customer_id,
            customer_name=order.customer_name,
            customer_email=order.customer_email,
            total_amount=order.total_amount,
            currency=currency,
            saga_id=saga_id,
        )


class PaymentProcessed(DomainEvent):
    """Payment reached a result (PAID or PAYMENT_FAILED)."""
    event_type: Literal["PaymentProcessed"] = "PaymentProcessed"
    order_id: UUID
    payment_status: str
    payment_id: str | None = None
    amount: Decimal
    currency: str = DEFAULT_CURRENCY
    failure_reason: str | None = None
    # None when published outside a saga (reconciliation)
    saga_id: UUID | None = None

    @classmethod
    def from_order(
        cls, order: Order, saga_id: UUID | None = None, currency: str = DEFAULT_CURRENCY
    ) -> "PaymentProcessed":
        return cls(
            aggregate_id=order.id,
            order_id=order.id,
            payment_status=order.status.value,
            payment_id=order.payment_id,
            amount=order.total_amount,
            currency=currency,
            failure_reason=(
                "Payment rejected by gateway"
                if order.status is OrderStatus.PAYMENT_FAILED
                else None
            ),
            saga_id=saga_id,
        )


class SagaCompleted(DomainEvent):
    event_type: Literal["SagaCompleted"] = "SagaCompleted"
    order_id: UUID
    saga_id: UUID
    order_status: str
    risk_level: str
    duration_ms: int | None = None

    @classmethod
    def from_order(
        cls, order: Order, saga_id: UUID, duration_ms: int | None
    ) -> "SagaCompleted":
        return cls(
            aggregate_id=order.id,
            order_id=order.id,
            saga_id=saga_id,
            order_status=order.status.value,
            risk_level=(order.risk_level or RiskLevel.PENDING).value,
            duration_ms=duration_ms,
        )


class SagaFailed(DomainEvent):
    event_type: Literal["SagaFailed"] = "SagaFailed"
    saga_id: UUID
    order_id: UUID | None = None
    failure_reason: str
    failed_step: str
    compensated: bool

    @classmethod
    def of(
        cls,
        saga_id: UUID,
        order_id: UUID | None,
        failure_reason: str,
        failed_step: str,
        compensated: bool,
    ) -> "SagaFailed":
        return cls(
            aggregate_id=order_id,
            saga_id=saga_id,
            order_id=order_id,
            failure_reason=failure_reason,
            failed_step=failed_step,
            compensated=compensated,
        )
