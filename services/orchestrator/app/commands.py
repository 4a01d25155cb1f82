"""
Orchestrator Service — use cases (write side)

Each use case is one focused state change on the order aggregate:

  1. load / build the order
  2. apply one transition
  3. persist it (its own unit of work)
  4. fire a best-effort side effect whose failure is logged, never raised

The saga orchestrator sequences CreateOrder → ProcessPayment → AnalyzeRisk;
RefreshPaymentStatus and UpdateOrderStatus are called directly by the API.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence
from uuid import UUID

from .aggregate import DEFAULT_CURRENCY, Order, OrderItem, OrderStatus
from .events import PaymentProcessed
from .exceptions import InvalidStateError, NotFoundError, ValidationError
from .ports import (
    EventPublisher,
    NotificationService,
    OrderRepository,
    PaymentGateway,
    PaymentRequest,
    PaymentStatus,
    RiskAnalysis,
    RiskAnalysisRequest,
)

logger = logging.getLogger(__name__)


async def load_order(repository: OrderRepository, order_id: UUID) -> Order:
    order = await repository.find_by_id(order_id)
    if order is None:
        raise NotFoundError("Order", order_id)
    return order


# ── Commands ────────────────────────────────────


@dataclass(frozen=True)
class CreateOrderCommand:
    customer_id: UUID | None
    customer_name: str | None
    customer_email: str | None
    items: Sequence[OrderItem] | None


@dataclass(frozen=True)
class ProcessPaymentCommand:
    order_id: UUID
    payment_method: str
    currency: str = DEFAULT_CURRENCY


@dataclass(frozen=True)
class AnalyzeRiskCommand:
    order_id: UUID
    payment_method: str | None = None


@dataclass(frozen=True)
class UpdateOrderStatusCommand:
    order_id: UUID
    new_status: OrderStatus


# ── CreateOrder ─────────────────────────────────


class CreateOrderUseCase:
    def __init__(self, orders: OrderRepository, notifications: NotificationService) -> None:
        self._orders = orders
        self._notifications = notifications

    async def execute(self, command: CreateOrderCommand) -> Order:
        """Validate, build a PENDING order with a fresh number, persist it."""
        self._validate(command)
        logger.info("Creating order for customer: %s", command.customer_id)

        order = Order.create(
            customer_id=command.customer_id,
            customer_name=command.customer_name,
            customer_email=command.customer_email,
            items=command.items,
        )
        saved = await self._orders.save(order)

        try:
            await self._notifications.notify_order_created(saved)
        except Exception:
            logger.exception("Failed to send notification for order %s", saved.id)

        logger.info("Order created: %s with number %s", saved.id, saved.order_number)
        return saved

    @staticmethod
    def _validate(command: CreateOrderCommand | None) -> None:
        if command is None:
            raise ValidationError("Command cannot be null")
        if command.customer_id is None:
            raise ValidationError("Customer ID cannot be null")
        if not command.customer_email or not command.customer_email.strip():
            raise ValidationError("Customer email cannot be null or blank")
        if not command.items:
            raise ValidationError("Order must have at least one item")


# ── ProcessPayment ──────────────────────────────


class ProcessPaymentUseCase:
    def __init__(
        self,
        orders: OrderRepository,
        payments: PaymentGateway,
        notifications: NotificationService,
    ) -> None:
        self._orders = orders
        self._payments = payments
        self._notifications = notifications

    async def execute(self, command: ProcessPaymentCommand) -> Order:
        """
        Charge a PENDING order. SUCCESS moves it to PAID with the provider's
        payment id; every other outcome (FAILED, degraded PENDING) moves it
        to PAYMENT_FAILED. The gateway does not raise for provider failures.
        """
        logger.info("Processing payment for order: %s", command.order_id)
        order = await load_order(self._orders, command.order_id)
        if not order.is_pending:
            raise InvalidStateError(
                order.status,
                OrderStatus.PAID,
                order.status.allowed_transitions,
                message=(
                    f"Order {order.id} is not in PENDING status. "
                    f"Current status: {order.status.value}"
                ),
            )

        request = PaymentRequest(
            order_id=order.id,
            amount=order.total_amount,
            currency=command.currency,
            payment_method=command.payment_method,
            customer_email=order.customer_email,
        )
        result = await self._payments.process_payment(request)

        if result.is_successful:
            order.mark_as_paid(result.payment_id)
            logger.info("Payment successful for order %s - payment id %s", order.id, result.payment_id)
        else:
            order.mark_as_payment_failed()
            logger.warning(
                "Payment failed for order %s - status %s: %s",
                order.id, result.status.value, result.message,
            )

        updated = await self._orders.save(order)

        try:
            if result.is_successful:
                await self._notifications.notify_order_status_changed(updated)
            else:
                await self._notifications.notify_payment_failed(updated)
        except Exception:
            logger.exception("Failed to send notification for order %s", updated.id)

        return updated


# ── AnalyzeRisk ────────────────────────────────


class AnalyzeRiskUseCase:
    def __init__(
        self,
        orders: OrderRepository,
        risk: RiskAnalysis,
        enabled: bool = True,
    ) -> None:
        self._orders = orders
        self._risk = risk
        self.enabled = enabled

    async def execute(self, command: AnalyzeRiskCommand) -> Order:
        """
        Classify a PAID (or PAYMENT_PENDING) order as LOW or HIGH risk.

        With the feature disabled the order is re-saved untouched. If the
        analysis raises or comes back PENDING, the previous risk level is
        kept. The order is persisted in every case.
        """
        logger.info("Analyzing risk for order: %s", command.order_id)
        order = await load_order(self._orders, command.order_id)

        if not self.enabled:
            logger.info(
                "Risk analysis disabled; skipping order %s (risk level %s)",
                order.id, order.risk_level.value,
            )
            return await self._orders.save(order)

        if not (order.is_paid or order.is_payment_pending):
            raise InvalidStateError(
                order.status,
                None,
                (OrderStatus.PAID, OrderStatus.PAYMENT_PENDING),
                message=(
                    f"Cannot analyze risk for order {order.id}. Order must be PAID "
                    f"or PAYMENT_PENDING. Current status: {order.status.value}"
                ),
            )

        request = RiskAnalysisRequest(
            order_id=order.id,
            order_amount=order.total_amount,
            customer_id=order.customer_id,
            customer_email=order.customer_email,
            payment_method=command.payment_method,
            additional_context=(
                f"Order: {order.order_number}, Amount: {order.total_amount}, "
                f"Customer: {order.customer_email}, Items: {len(order.items)}"
            ),
        )
        try:
            result = await self._risk.analyze_risk(request)
            if result.is_low_risk or result.is_high_risk:
                order.update_risk_level(result.risk_level)
            logger.info(
                "Risk analysis for order %s: %s (%s)",
                order.id, result.risk_level.value, result.reason,
            )
        except Exception as e:
            logger.warning(
                "Risk analysis failed for order %s - keeping risk level %s: %s",
                order.id, order.risk_level.value, e,
            )

        return await self._orders.save(order)


# ── RefreshPaymentStatus ────────────────────────


class RefreshPaymentStatusUseCase:
    """
    Reconciles an order with the gateway's view of its payment.

        SUCCESS             → PAID (if not already)
        FAILED, CANCELLED   → PAYMENT_FAILED (if not already failed/canceled)
        PENDING, REFUNDED   → unchanged

    PaymentProcessed is published only on the call that moves the order into
    PAID, so repeated refreshes never publish it twice.
    """

    def __init__(
        self,
        orders: OrderRepository,
        payments: PaymentGateway,
        events: EventPublisher,
    ) -> None:
        self._orders = orders
        self._payments = payments
        self._events = events

    async def execute(self, order_id: UUID) -> Order:
        order = await load_order(self._orders, order_id)
        if not order.payment_id or not order.payment_id.strip():
            logger.warning("Order %s has no payment id; skipping payment status refresh", order_id)
            return order

        status = await self._payments.check_payment_status(order.payment_id)
        logger.info(
            "Refreshed payment status for order %s: payment %s is %s",
            order_id, order.payment_id, status.value,
        )

        was_paid = order.is_paid
        if status is PaymentStatus.SUCCESS:
            if not order.is_paid:
                order.mark_as_paid(order.payment_id)
        elif status in (PaymentStatus.FAILED, PaymentStatus.CANCELLED):
            if not (order.is_payment_failed or order.is_canceled):
                order.mark_as_payment_failed()
        else:
            logger.info(
                "Payment status %s for order %s; keeping order status %s",
                status.value, order_id, order.status.value,
            )

        updated = await self._orders.save(order)

        if not was_paid and updated.is_paid:
            try:
                await self._events.publish(PaymentProcessed.from_order(updated))
                logger.info("PaymentProcessed published for order %s", updated.id)
            except Exception:
                logger.exception("Failed to publish PaymentProcessed for order %s", updated.id)

        return updated


# ── UpdateOrderStatus ───────────────────────────


class UpdateOrderStatusUseCase:
    def __init__(self, orders: OrderRepository, notifications: NotificationService) -> None:
        self._orders = orders
        self._notifications = notifications

    async def execute(self, command: UpdateOrderStatusCommand) -> Order:
        logger.info("Updating status of order %s to %s", command.order_id, command.new_status)
        order = await load_order(self._orders, command.order_id)
        order.transition(command.new_status)
        updated = await self._orders.save(order)

        try:
            if updated.is_canceled:
                await self._notifications.notify_order_cancelled(updated)
            else:
                await self._notifications.notify_order_status_changed(updated)
        except Exception:
            logger.exception("Failed to send notification for order %s", updated.id)

        return updated
