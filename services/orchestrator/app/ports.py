"""
Orchestrator Service — ports

Capabilities the use cases depend on. Concrete adapters live in store.py,
memory.py, messaging.py and gateways.py; the use cases only ever see these
interfaces, wired in through their constructors.

Contracts that matter to the saga:
  - PaymentGateway never raises for provider failures; it degrades to a
    FAILED result (or PENDING status) instead.
  - RiskAnalysis never raises; it degrades to a PENDING classification.
  - EventPublisher and NotificationService are best-effort, at most once.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Sequence
from uuid import UUID

from .aggregate import Order, OrderStatus, RiskLevel, utcnow
from .events import DomainEvent
from .exceptions import ValidationError
from .saga_log import SagaExecution, SagaStatus


# ── Payment ─────────────────────────────────────


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class PaymentRequest:
    order_id: UUID
    amount: Decimal
    currency: str
    payment_method: str
    customer_email: str | None = None

    def __post_init__(self) -> None:
        if self.order_id is None:
            raise ValidationError("Order ID cannot be null")
        if self.amount is None or self.amount <= 0:
            raise ValidationError("Amount must be greater than zero")
        if not self.currency or not self.currency.strip():
            raise ValidationError("Currency cannot be null or blank")
        if not self.payment_method or not self.payment_method.strip():
            raise ValidationError("Payment method cannot be null or blank")


@dataclass(frozen=True)
class PaymentResult:
    payment_id: str | None
    status: PaymentStatus
    message: str | None = None
    amount: Decimal | None = None
    processed_at: datetime = field(default_factory=utcnow)

    @property
    def is_successful(self) -> bool:
        return self.status is PaymentStatus.SUCCESS

    @property
    def is_failed(self) -> bool:
        return self.status is PaymentStatus.FAILED

    @classmethod
    def failed(cls, amount: Decimal | None, message: str) -> "PaymentResult":
        return cls(payment_id=None, status=PaymentStatus.FAILED, message=message, amount=amount)


class PaymentGateway(ABC):
    @abstractmethod
    async def process_payment(self, request: PaymentRequest) -> PaymentResult:
        """Charge the order. Provider failures come back as a FAILED result."""
        ...

    @abstractmethod
    async def refund_payment(self, payment_id: str, amount: Decimal) -> PaymentResult:
        ...

    @abstractmethod
    async def check_payment_status(self, payment_id: str) -> PaymentStatus:
        """Current provider status; PENDING when the provider cannot be reached."""
        ...


# ── Risk analysis ───────────────────────────────


@dataclass(frozen=True)
class RiskAnalysisRequest:
    order_id: UUID
    order_amount: Decimal
    customer_id: UUID
    customer_email: str | None
    payment_method: str | None
    additional_context: str | None = None

    def __post_init__(self) -> None:
        if self.order_id is None:
            raise ValidationError("Order ID cannot be null")
        if self.order_amount is None or self.order_amount <= 0:
            raise ValidationError("Order amount must be greater than zero")
        if self.customer_id is None:
            raise ValidationError("Customer ID cannot be null")


@dataclass(frozen=True)
class RiskAnalysisResult:
    risk_level: RiskLevel
    reason: str | None = None
    confidence_score: float | None = None
    analyzed_at: datetime = field(default_factory=utcnow)

    @property
    def is_low_risk(self) -> bool:
        return self.risk_level is RiskLevel.LOW

    @property
    def is_high_risk(self) -> bool:
        return self.risk_level is RiskLevel.HIGH

    @classmethod
    def pending(cls, reason: str) -> "RiskAnalysisResult":
        return cls(risk_level=RiskLevel.PENDING, reason=reason)


class RiskAnalysis(ABC):
    @abstractmethod
    async def analyze_risk(self, request: RiskAnalysisRequest) -> RiskAnalysisResult:
        ...


# ── Side effects ────────────────────────────────


class EventPublisher(ABC):
    @abstractmethod
    async def publish(self, event: DomainEvent) -> None:
        ...

    async def publish_batch(self, events: Sequence[DomainEvent]) -> None:
        for event in events:
            await self.publish(event)


class NotificationService(ABC):
    @abstractmethod
    async def notify_order_created(self, order: Order) -> None: ...

    @abstractmethod
    async def notify_order_status_changed(self, order: Order) -> None: ...

    @abstractmethod
    async def notify_payment_failed(self, order: Order) -> None: ...

    @abstractmethod
    async def notify_order_cancelled(self, order: Order) -> None: ...


# ── Repositories ────────────────────────────────


class OrderRepository(ABC):
    @abstractmethod
    async def save(self, order: Order) -> Order: ...

    @abstractmethod
    async def find_by_id(self, order_id: UUID) -> Order | None: ...

    @abstractmethod
    async def find_by_order_number(self, order_number: str) -> Order | None: ...

    @abstractmethod
    async def find_by_payment_id(self, payment_id: str) -> Order | None: ...

    @abstractmethod
    async def find_all(self) -> list[Order]: ...

    @abstractmethod
    async def find_by_status(self, status: OrderStatus) -> list[Order]: ...

    @abstractmethod
    async def delete_by_id(self, order_id: UUID) -> None: ...

    @abstractmethod
    async def exists_by_id(self, order_id: UUID) -> bool: ...


class SagaExecutionRepository(ABC):
    """
    Stores SagaExecution records. ``save`` raises DuplicateIdempotencyKeyError
    when another execution already holds the same idempotency key.
    """

    @abstractmethod
    async def save(self, saga: SagaExecution) -> SagaExecution: ...

    @abstractmethod
    async def find_by_id(self, saga_id: UUID) -> SagaExecution | None: ...

    @abstractmethod
    async def find_by_order_id(self, order_id: UUID) -> list[SagaExecution]: ...

    @abstractmethod
    async def find_by_status(self, status: SagaStatus) -> list[SagaExecution]: ...

    @abstractmethod
    async def find_by_idempotency_key(self, idempotency_key: str) -> SagaExecution | None: ...

    async def find_latest_by_order_id(self, order_id: UUID) -> SagaExecution | None:
        sagas = await self.find_by_order_id(order_id)
        return max(sagas, key=lambda s: s.started_at, default=None)
