"""
Orchestrator Service — Order Aggregate

The order is the only aggregate the saga touches. All status changes go
through Order.transition(), which checks the table below; nothing else
assigns Order.status.

    PENDING ──▶ PAYMENT_PENDING ──▶ PAID
       │              │
       │              └──────────▶ PAYMENT_FAILED ──▶ CANCELED
       ├──▶ PAID
       ├──▶ PAYMENT_FAILED
       └──▶ CANCELED

PAID and CANCELED are terminal. No status may transition to itself.
"""

from __future__ import annotations

import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Iterable
from uuid import UUID, uuid4

from .exceptions import InvalidStateError, ValidationError

DEFAULT_CURRENCY = "BRL"
_CENTS = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Status / risk enums ─────────────────────────


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    PAID = "PAID"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    CANCELED = "CANCELED"

    @property
    def allowed_transitions(self) -> frozenset["OrderStatus"]:
        return _TRANSITIONS[self]

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self]

    def can_transition_to(self, target: "OrderStatus") -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset(
        {
            OrderStatus.PAYMENT_PENDING,
            OrderStatus.PAID,
            OrderStatus.PAYMENT_FAILED,
            OrderStatus.CANCELED,
        }
    ),
    OrderStatus.PAYMENT_PENDING: frozenset(
        {OrderStatus.PAID, OrderStatus.PAYMENT_FAILED}
    ),
    # compensation path
    OrderStatus.PAYMENT_FAILED: frozenset({OrderStatus.CANCELED}),
    OrderStatus.PAID: frozenset(),
    OrderStatus.CANCELED: frozenset(),
}


class RiskLevel(str, Enum):
    LOW = "LOW"
    HIGH = "HIGH"
    PENDING = "PENDING"


# ── Value objects ───────────────────────────────


@dataclass(frozen=True)
class Money:
    """Non-negative amount fixed at two decimals (half-up), tagged with a currency."""

    amount: Decimal
    currency: str = DEFAULT_CURRENCY

    def __post_init__(self) -> None:
        if self.amount is None:
            raise ValidationError("Amount cannot be null")
        amount = Decimal(str(self.amount)) if not isinstance(self.amount, Decimal) else self.amount
        if amount < 0:
            raise ValidationError("Amount cannot be negative")
        if not self.currency or not self.currency.strip():
            raise ValidationError("Currency cannot be null or blank")
        object.__setattr__(self, "amount", amount.quantize(_CENTS, rounding=ROUND_HALF_UP))

    @classmethod
    def of(cls, amount: Decimal | int | float | str, currency: str = DEFAULT_CURRENCY) -> "Money":
        return cls(Decimal(str(amount)), currency)

    @classmethod
    def zero(cls, currency: str = DEFAULT_CURRENCY) -> "Money":
        return cls(Decimal("0"), currency)

    def _check_currency(self, other: "Money", op: str) -> None:
        if self.currency != other.currency:
            raise ValidationError(f"Cannot {op} money with different currencies")

    def add(self, other: "Money") -> "Money":
        self._check_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def subtract(self, other: "Money") -> "Money":
        self._check_currency(other, "subtract")
        result = self.amount - other.amount
        if result < 0:
            raise ValidationError("Result cannot be negative")
        return Money(result, self.currency)

    def multiply(self, multiplier: int) -> "Money":
        if multiplier < 0:
            raise ValidationError("Result cannot be negative")
        return Money(self.amount * multiplier, self.currency)

    def is_zero(self) -> bool:
        return self.amount == 0

    def is_greater_than(self, other: "Money") -> bool:
        self._check_currency(other, "compare")
        return self.amount > other.amount

    def __str__(self) -> str:
        return f"{self.currency} {self.amount}"


@dataclass(frozen=True)
class OrderItem:
    product_id: UUID
    product_name: str
    quantity: int | None
    unit_price: Decimal | None

    def __post_init__(self) -> None:
        if self.quantity is not None and self.quantity <= 0:
            raise ValidationError("Item quantity must be greater than zero")
        if self.unit_price is not None:
            price = Decimal(str(self.unit_price))
            if price < 0:
                raise ValidationError("Item unit price cannot be negative")
            object.__setattr__(self, "unit_price", price.quantize(_CENTS, rounding=ROUND_HALF_UP))

    @property
    def subtotal(self) -> Decimal:
        if self.quantity is None or self.unit_price is None:
            return Decimal("0")
        return self.unit_price * self.quantity


class OrderNumber:
    """Human-facing order number, ``ORD-<digits>``."""

    PREFIX = "ORD-"
    PATTERN = re.compile(r"^ORD-\d+$")

    _lock = threading.Lock()
    _last = 0

    __slots__ = ("value",)

    def __init__(self, value: str) -> None:
        if not value or not value.strip():
            raise ValidationError("Order number cannot be null or blank")
        if not self.PATTERN.match(value):
            raise ValidationError(
                f"Invalid order number format: {value}. Expected format: ORD-<numbers>"
            )
        self.value = value

    @classmethod
    def generate(cls, suffix: int | None = None) -> "OrderNumber":
        if suffix is None:
            # millisecond timestamp, bumped so two calls never collide
            with cls._lock:
                suffix = max(int(time.time() * 1000), cls._last + 1)
                cls._last = suffix
        return cls(f"{cls.PREFIX}{suffix}")

    @property
    def numeric_suffix(self) -> int:
        return int(self.value[len(self.PREFIX):])

    def __eq__(self, other: object) -> bool:
        return isinstance(other, OrderNumber) and other.value == self.value

    def __hash__(self) -> int:
        return hash(self.value)

    def __str__(self) -> str:
        return self.value

    def __repr__(self) -> str:
        return f"OrderNumber({self.value!r})"


# ── Aggregate root ──────────────────────────────


@dataclass
class Order:
    id: UUID
    order_number: str
    customer_id: UUID
    customer_name: str | None
    customer_email: str
    status: OrderStatus = OrderStatus.PENDING
    items: tuple[OrderItem, ...] = ()
    total_amount: Decimal = Decimal("0.00")
    payment_id: str | None = None
    risk_level: RiskLevel = RiskLevel.PENDING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        OrderNumber(self.order_number)
        self.items = tuple(self.items)
        self.calculate_total()

    @classmethod
    def create(
        cls,
        customer_id: UUID,
        customer_name: str | None,
        customer_email: str,
        items: Iterable[OrderItem],
    ) -> "Order":
        now = utcnow()
        return cls(
            id=uuid4(),
            order_number=OrderNumber.generate().value,
            customer_id=customer_id,
            customer_name=customer_name,
            customer_email=customer_email,
            items=tuple(items),
            created_at=now,
            updated_at=now,
        )

    # ── items / totals ──

    def set_items(self, items: Iterable[OrderItem]) -> None:
        self.items = tuple(items)
        self.calculate_total()
        self.updated_at = utcnow()

    def calculate_total(self) -> None:
        total = Money.zero()
        for item in self.items:
            total = total.add(Money(item.subtotal))
        self.total_amount = total.amount

    # ── state machine ──

    def transition(self, new_status: OrderStatus) -> None:
        if new_status is None:
            raise ValidationError("Status cannot be null")
        new_status = OrderStatus(new_status)
        if not self.status.can_transition_to(new_status):
            raise InvalidStateError(
                self.status, new_status, self.status.allowed_transitions
            )
        self.status = new_status
        self.updated_at = utcnow()

    update_status = transition

    def mark_as_paid(self, payment_id: str) -> None:
        if not payment_id or not payment_id.strip():
            raise ValidationError("Payment ID cannot be null or blank")
        self.transition(OrderStatus.PAID)
        self.payment_id = payment_id

    def mark_as_payment_failed(self) -> None:
        self.transition(OrderStatus.PAYMENT_FAILED)

    def update_risk_level(self, risk_level: RiskLevel) -> None:
        if risk_level is None:
            raise ValidationError("Risk level cannot be null")
        risk_level = RiskLevel(risk_level)
        if risk_level is RiskLevel.PENDING and self.risk_level is not RiskLevel.PENDING:
            raise InvalidStateError(
                self.risk_level,
                risk_level,
                (RiskLevel.LOW, RiskLevel.HIGH),
                message="Risk level cannot revert to PENDING once classified",
            )
        self.risk_level = risk_level
        self.updated_at = utcnow()

    @property
    def is_pending(self) -> bool:
        return self.status is OrderStatus.PENDING

    @property
    def is_payment_pending(self) -> bool:
        return self.status is OrderStatus.PAYMENT_PENDING

    @property
    def is_paid(self) -> bool:
        return self.status is OrderStatus.PAID

    @property
    def is_payment_failed(self) -> bool:
        return self.status is OrderStatus.PAYMENT_FAILED

    @property
    def is_canceled(self) -> bool:
        return self.status is OrderStatus.CANCELED
