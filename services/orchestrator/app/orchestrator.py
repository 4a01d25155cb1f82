"""
Saga Orchestrator — order creation Saga

Orchestrated saga: one coordinator runs each step in order, records it on a
SagaExecution, and compensates when payment does not go through.

  ┌───────────────────────────────────────────────────────────────┐
  │  1. ORDER_CREATED      CreateOrder                             │
  │  2. PAYMENT_PROCESSED  ProcessPayment                          │
  │     ├─ PAID     → 3. RISK_ANALYZED  AnalyzeRisk (fail-open)    │
  │     │                └─ COMPLETED                              │
  │     └─ not PAID → compensation ("Payment failed")              │
  │                      └─ COMPENSATED                            │
  └───────────────────────────────────────────────────────────────┘

Each step is its own unit of work; there is no transaction spanning the run.
Any exception from steps 1-2 also triggers compensation. A failure in step 3
is recorded on the step and otherwise ignored.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence
from uuid import UUID

from .aggregate import DEFAULT_CURRENCY, Order, OrderItem, OrderStatus, RiskLevel
from .commands import (
    AnalyzeRiskCommand,
    AnalyzeRiskUseCase,
    CreateOrderCommand,
    CreateOrderUseCase,
    ProcessPaymentCommand,
    ProcessPaymentUseCase,
)
from .events import DomainEvent, OrderCreated, PaymentProcessed, SagaCompleted, SagaFailed
from .exceptions import DuplicateIdempotencyKeyError, NotFoundError, SagaStepError
from .ports import EventPublisher, NotificationService, OrderRepository, SagaExecutionRepository
from .saga_log import (
    STEP_ORDER_CREATED,
    STEP_PAYMENT_PROCESSED,
    STEP_RISK_ANALYZED,
    SagaExecution,
    SagaStatus,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderSagaCommand:
    customer_id: UUID | None
    customer_name: str | None
    customer_email: str | None
    items: Sequence[OrderItem] | None
    payment_method: str
    currency: str = DEFAULT_CURRENCY
    idempotency_key: str | None = None

    def to_create_order_command(self) -> CreateOrderCommand:
        return CreateOrderCommand(
            customer_id=self.customer_id,
            customer_name=self.customer_name,
            customer_email=self.customer_email,
            items=self.items,
        )

    def to_process_payment_command(self, order_id: UUID) -> ProcessPaymentCommand:
        return ProcessPaymentCommand(
            order_id=order_id,
            payment_method=self.payment_method,
            currency=self.currency or DEFAULT_CURRENCY,
        )

    def to_analyze_risk_command(self, order_id: UUID) -> AnalyzeRiskCommand:
        return AnalyzeRiskCommand(order_id=order_id, payment_method=self.payment_method)


@dataclass(frozen=True)
class OrderSagaResult:
    success: bool
    saga_id: UUID
    order: Order | None = None
    error_message: str | None = None
    in_progress: bool = field(default=False)

    @classmethod
    def succeeded(cls, order: Order, saga_id: UUID) -> "OrderSagaResult":
        return cls(success=True, saga_id=saga_id, order=order)

    @classmethod
    def failed(cls, order: Order | None, saga_id: UUID, reason: str) -> "OrderSagaResult":
        return cls(success=False, saga_id=saga_id, order=order, error_message=reason)

    @classmethod
    def pending(cls, saga_id: UUID, order: Order | None = None) -> "OrderSagaResult":
        return cls(success=False, saga_id=saga_id, order=order, in_progress=True)


class OrderSagaOrchestrator:
    """Runs the order saga for one command and always returns a result."""

    def __init__(
        self,
        create_order: CreateOrderUseCase,
        process_payment: ProcessPaymentUseCase,
        analyze_risk: AnalyzeRiskUseCase,
        orders: OrderRepository,
        sagas: SagaExecutionRepository,
        events: EventPublisher,
        notifications: NotificationService | None = None,
    ) -> None:
        self._create_order = create_order
        self._process_payment = process_payment
        self._analyze_risk = analyze_risk
        self._orders = orders
        self._sagas = sagas
        self._events = events
        self._notifications = notifications

    async def execute(self, command: OrderSagaCommand) -> OrderSagaResult:
        """
        Execute the saga.

        A command whose idempotency key belongs to a finished run returns
        that run's order; one whose key belongs to a run still going returns
        an in-progress result. Failed or compensated runs are started afresh.
        """
        key = (command.idempotency_key or "").strip() or None
        if key is not None:
            previous = await self._replay(key)
            if previous is not None:
                return previous

        try:
            saga = await self._sagas.save(SagaExecution.start(key))
        except DuplicateIdempotencyKeyError:
            logger.warning("Concurrent saga detected for idempotency key %s", key)
            existing = await self._sagas.find_by_idempotency_key(key)
            if existing is None:
                raise
            return OrderSagaResult.pending(existing.id)

        logger.info("Starting order saga %s (idempotency key: %s)", saga.id, key)
        order: Order | None = None
        try:
            order = await self._step_create_order(command, saga)
            order = await self._step_process_payment(command, order, saga)
        except Exception as e:
            logger.error("Saga %s failed: %s", saga.id, e)
            order = await self._compensate(saga, order, str(e))
            return OrderSagaResult.failed(order, saga.id, str(e))

        if not order.is_paid:
            reason = "Payment failed"
            order = await self._compensate(saga, order, reason)
            return OrderSagaResult.failed(order, saga.id, reason)

        order = await self._step_analyze_risk(command, order, saga)
        await self._complete(saga, order)
        return OrderSagaResult.succeeded(order, saga.id)

    # ── Idempotency ──────────────────────────────

    async def _replay(self, key: str) -> OrderSagaResult | None:
        existing = await self._sagas.find_by_idempotency_key(key)
        if existing is None:
            return None
        logger.info("Found saga %s for idempotency key %s - status %s", existing.id, key, existing.status.value)

        if existing.status is SagaStatus.COMPLETED and existing.order_id is not None:
            order = await self._orders.find_by_id(existing.order_id)
            if order is None:
                raise NotFoundError("Order", existing.order_id)
            return OrderSagaResult.succeeded(order, existing.id)

        if existing.status.is_in_progress:
            order = None
            if existing.order_id is not None:
                order = await self._orders.find_by_id(existing.order_id)
            return OrderSagaResult.pending(existing.id, order)

        # failed before: free the key so the new run can claim it
        logger.warning("Previous saga %s for key %s ended %s; starting a new one", existing.id, key, existing.status.value)
        existing.idempotency_key = None
        await self._sagas.save(existing)
        return None

    # ── Steps ────────────────────────────────────

    async def _step_create_order(self, command: OrderSagaCommand, saga: SagaExecution) -> Order:
        saga.start_step(STEP_ORDER_CREATED)
        await self._sagas.save(saga)
        try:
            order = await self._create_order.execute(command.to_create_order_command())
        except Exception as e:
            saga.complete_step(STEP_ORDER_CREATED, False, str(e))
            await self._sagas.save(saga)
            raise SagaStepError(STEP_ORDER_CREATED, f"Failed to create order: {e}") from e

        saga.complete_step(STEP_ORDER_CREATED, True)
        saga.order_id = order.id
        saga.advance(SagaStatus.ORDER_CREATED)
        await self._sagas.save(saga)
        logger.info("Step 1 completed: order %s created", order.id)
        await self._publish(OrderCreated.from_order(order, saga.id, command.currency or DEFAULT_CURRENCY))
        return order

    async def _step_process_payment(
        self, command: OrderSagaCommand, order: Order, saga: SagaExecution
    ) -> Order:
        saga.start_step(STEP_PAYMENT_PROCESSED)
        await self._sagas.save(saga)
        try:
            processed = await self._process_payment.execute(
                command.to_process_payment_command(order.id)
            )
        except Exception as e:
            saga.complete_step(STEP_PAYMENT_PROCESSED, False, str(e))
            await self._sagas.save(saga)
            raise SagaStepError(STEP_PAYMENT_PROCESSED, f"Failed to process payment: {e}") from e

        paid = processed.is_paid
        saga.complete_step(STEP_PAYMENT_PROCESSED, paid, None if paid else "Payment failed")
        saga.advance(SagaStatus.PAYMENT_PROCESSED)
        await self._sagas.save(saga)
        logger.info("Step 2 completed: payment for order %s - status %s", order.id, processed.status.value)
        await self._publish(PaymentProcessed.from_order(processed, saga.id, command.currency or DEFAULT_CURRENCY))
        return processed

    async def _step_analyze_risk(
        self, command: OrderSagaCommand, order: Order, saga: SagaExecution
    ) -> Order:
        saga.start_step(STEP_RISK_ANALYZED)
        await self._sagas.save(saga)
        try:
            analyzed = await self._analyze_risk.execute(command.to_analyze_risk_command(order.id))
        except Exception as e:
            logger.warning("Risk analysis failed for order %s, continuing: %s", order.id, e)
            saga.complete_step(STEP_RISK_ANALYZED, False, str(e))
            await self._sagas.save(saga)
            return order

        if self._analyze_risk.enabled and analyzed.risk_level is RiskLevel.PENDING:
            # the port degraded; the order stays PENDING but the step did not do its job
            saga.complete_step(STEP_RISK_ANALYZED, False, "Risk analysis unavailable; risk level left PENDING")
        else:
            saga.complete_step(STEP_RISK_ANALYZED, True)
            saga.advance(SagaStatus.RISK_ANALYZED)
        await self._sagas.save(saga)
        logger.info("Step 3 completed: order %s risk level %s", analyzed.id, analyzed.risk_level.value)
        return analyzed

    # ── Terminal transitions ─────────────────────

    async def _complete(self, saga: SagaExecution, order: Order) -> None:
        saga.order_id = order.id
        saga.finish(SagaStatus.COMPLETED)
        await self._sagas.save(saga)
        logger.info("Saga %s completed in %sms", saga.id, saga.duration_ms)
        await self._publish(SagaCompleted.from_order(order, saga.id, saga.duration_ms))

    async def _compensate(
        self, saga: SagaExecution, order: Order | None, reason: str
    ) -> Order | None:
        """
        PENDING orders are canceled; PAYMENT_FAILED orders keep their status;
        PAID orders and missing orders are left alone. A failure here is only
        logged: the saga is still marked COMPENSATED, and the SagaFailed event
        reports ``compensated=False``.

        Returns the order as it stands after compensation.
        """
        logger.warning("Compensating saga %s - reason: %s", saga.id, reason)
        failed_step = saga.current_step or "UNKNOWN"
        compensated = False
        if order is not None:
            try:
                order, compensated = await self._compensate_order(order)
            except Exception:
                logger.exception("Failed to compensate order %s", order.id)
            if saga.order_id is None:
                saga.order_id = order.id

        saga.finish(SagaStatus.COMPENSATED, reason)
        await self._sagas.save(saga)
        await self._publish(
            SagaFailed.of(saga.id, order.id if order else None, reason, failed_step, compensated)
        )
        return order

    async def _compensate_order(self, order: Order) -> tuple[Order, bool]:
        # a step may have persisted a newer version than the one we hold
        order = await self._orders.find_by_id(order.id) or order
        if order.is_paid:
            return order, False
        if order.is_payment_failed:
            order = await self._orders.save(order)
            logger.info("Order %s is PAYMENT_FAILED - keeping status", order.id)
            return order, True
        if order.is_pending:
            order.transition(OrderStatus.CANCELED)
            order = await self._orders.save(order)
            logger.info("Order %s canceled by compensation", order.id)
            if self._notifications is not None:
                try:
                    await self._notifications.notify_order_cancelled(order)
                except Exception:
                    logger.exception("Failed to send cancel notification for order %s", order.id)
            return order, True
        return order, False

    async def _publish(self, event: DomainEvent) -> None:
        try:
            await self._events.publish(event)
        except Exception:
            logger.exception("Failed to publish %s", event.event_type)
