"""Tests for the order saga: happy path, compensation, fail-open risk and idempotency."""

from dataclasses import replace
from decimal import Decimal

import pytest

from app.aggregate import OrderStatus, RiskLevel
from app.commands import AnalyzeRiskUseCase, CreateOrderUseCase, ProcessPaymentUseCase
from app.exceptions import DuplicateIdempotencyKeyError
from app.orchestrator import OrderSagaOrchestrator
from app.ports import PaymentStatus
from app.resilience import CircuitBreaker, ResilientPaymentGateway, RetryConfig
from app.saga_log import (
    STEP_ORDER_CREATED,
    STEP_PAYMENT_PROCESSED,
    STEP_RISK_ANALYZED,
    SagaExecution,
    SagaStatus,
    StepStatus,
)
from conftest import RecordingNotificationService, StubPaymentGateway


def step_statuses(saga: SagaExecution) -> list[tuple[str, StepStatus]]:
    return [(s.step_name, s.status) for s in saga.steps]


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_completes_paid_low_risk(self, orchestrator, saga_command, sagas, events):
        result = await orchestrator.execute(saga_command)

        assert result.success
        assert not result.in_progress
        assert result.order.status is OrderStatus.PAID
        assert result.order.risk_level is RiskLevel.LOW
        assert result.order.total_amount == Decimal("46.00")
        assert result.order.payment_id == "pay_123"

        saga = await sagas.find_by_id(result.saga_id)
        assert saga.status is SagaStatus.COMPLETED
        assert saga.order_id == result.order.id
        assert saga.completed_at is not None
        assert saga.duration_ms is not None
        assert step_statuses(saga) == [
            (STEP_ORDER_CREATED, StepStatus.SUCCESS),
            (STEP_PAYMENT_PROCESSED, StepStatus.SUCCESS),
            (STEP_RISK_ANALYZED, StepStatus.SUCCESS),
        ]
        assert [e.event_type for e in events.published_events] == [
            "OrderCreated",
            "PaymentProcessed",
            "SagaCompleted",
        ]

    @pytest.mark.asyncio
    async def test_high_risk_still_completes(self, orchestrator, saga_command, risk):
        risk.level = RiskLevel.HIGH
        result = await orchestrator.execute(saga_command)
        assert result.success
        assert result.order.risk_level is RiskLevel.HIGH

    @pytest.mark.asyncio
    async def test_disabled_risk_analysis(self, make_orchestrator, saga_command, risk, sagas):
        result = await make_orchestrator(risk_enabled=False).execute(saga_command)

        assert result.success
        assert result.order.risk_level is RiskLevel.PENDING
        assert risk.requests == []
        saga = await sagas.find_by_id(result.saga_id)
        assert saga.step(STEP_RISK_ANALYZED).status is StepStatus.SUCCESS


class TestPaymentFailure:
    @pytest.mark.asyncio
    async def test_declined_payment_compensates(
        self, orchestrator, saga_command, payments, risk, orders, sagas, events
    ):
        payments.status = PaymentStatus.FAILED

        result = await orchestrator.execute(saga_command)

        assert not result.success
        assert result.error_message == "Payment failed"
        assert result.order.status is OrderStatus.PAYMENT_FAILED
        assert (await orders.find_by_id(result.order.id)).status is OrderStatus.PAYMENT_FAILED
        assert risk.requests == []

        saga = await sagas.find_by_id(result.saga_id)
        assert saga.status is SagaStatus.COMPENSATED
        assert saga.error_message == "Payment failed"
        assert saga.step(STEP_PAYMENT_PROCESSED).status is StepStatus.FAILED
        assert saga.step(STEP_RISK_ANALYZED) is None

        failed = events.published_events[-1]
        assert failed.event_type == "SagaFailed"
        assert failed.failed_step == STEP_PAYMENT_PROCESSED
        assert failed.compensated is True

    @pytest.mark.asyncio
    async def test_gateway_outage_degrades_to_failed_payment(
        self, saga_command, orders, sagas, events, risk, notifications
    ):
        resilient = ResilientPaymentGateway(
            StubPaymentGateway(error=ConnectionError("refused")),
            CircuitBreaker("payments", failure_threshold=5),
            RetryConfig(max_attempts=1),
        )
        orchestrator = OrderSagaOrchestrator(
            create_order=CreateOrderUseCase(orders, notifications),
            process_payment=ProcessPaymentUseCase(orders, resilient, notifications),
            analyze_risk=AnalyzeRiskUseCase(orders, risk),
            orders=orders,
            sagas=sagas,
            events=events,
            notifications=notifications,
        )

        result = await orchestrator.execute(saga_command)

        assert not result.success
        assert result.order.status is OrderStatus.PAYMENT_FAILED
        assert (await sagas.find_by_id(result.saga_id)).status is SagaStatus.COMPENSATED

    @pytest.mark.asyncio
    async def test_step_two_exception_cancels_pending_order(
        self, orchestrator, saga_command, payments, orders, sagas, notifications
    ):
        payments.error = RuntimeError("gateway exploded")

        result = await orchestrator.execute(saga_command)

        assert not result.success
        assert "Failed to process payment" in result.error_message
        assert result.order.status is OrderStatus.CANCELED
        assert (await orders.find_by_id(result.order.id)).status is OrderStatus.CANCELED
        assert "cancelled" in notifications.kinds()

        saga = await sagas.find_by_id(result.saga_id)
        assert saga.status is SagaStatus.COMPENSATED
        assert saga.step(STEP_PAYMENT_PROCESSED).status is StepStatus.FAILED

    @pytest.mark.asyncio
    async def test_invalid_command_fails_without_order(self, orchestrator, saga_command, orders, sagas):
        result = await orchestrator.execute(replace(saga_command, items=[]))

        assert not result.success
        assert result.order is None
        assert "Failed to create order" in result.error_message
        assert await orders.find_all() == []

        saga = await sagas.find_by_id(result.saga_id)
        assert saga.status is SagaStatus.COMPENSATED
        assert saga.order_id is None
        assert step_statuses(saga) == [(STEP_ORDER_CREATED, StepStatus.FAILED)]

    @pytest.mark.asyncio
    async def test_compensation_error_still_marks_saga_compensated(
        self, orchestrator, saga_command, payments, orders, sagas, events, monkeypatch
    ):
        payments.error = RuntimeError("gateway exploded")
        real_save = orders.save

        async def save(order):
            if order.status is OrderStatus.CANCELED:
                raise RuntimeError("database gone")
            return await real_save(order)

        monkeypatch.setattr(orders, "save", save)

        result = await orchestrator.execute(saga_command)

        assert not result.success
        saga = await sagas.find_by_id(result.saga_id)
        assert saga.status is SagaStatus.COMPENSATED
        assert saga.error_message == result.error_message
        assert (await orders.find_by_id(saga.order_id)).status is OrderStatus.PENDING

        failed = events.published_events[-1]
        assert failed.event_type == "SagaFailed"
        assert failed.compensated is False


class TestRiskFailOpen:
    @pytest.mark.asyncio
    async def test_risk_error_leaves_pending_and_completes(
        self, orchestrator, saga_command, risk, sagas
    ):
        risk.error = RuntimeError("model timeout")

        result = await orchestrator.execute(saga_command)

        assert result.success
        assert result.order.status is OrderStatus.PAID
        assert result.order.risk_level is RiskLevel.PENDING

        saga = await sagas.find_by_id(result.saga_id)
        assert saga.status is SagaStatus.COMPLETED
        assert saga.step(STEP_RISK_ANALYZED).status is StepStatus.FAILED

    @pytest.mark.asyncio
    async def test_risk_use_case_exception_is_recorded(
        self, orchestrator, saga_command, sagas, monkeypatch
    ):
        async def boom(command):
            raise RuntimeError("unexpected")

        monkeypatch.setattr(orchestrator._analyze_risk, "execute", boom)

        result = await orchestrator.execute(saga_command)

        assert result.success
        assert result.order.is_paid
        saga = await sagas.find_by_id(result.saga_id)
        assert saga.status is SagaStatus.COMPLETED
        assert saga.step(STEP_RISK_ANALYZED).error_message == "unexpected"


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_completed_run_is_replayed(self, orchestrator, saga_command, payments, orders):
        command = replace(saga_command, idempotency_key="key-1")

        first = await orchestrator.execute(command)
        second = await orchestrator.execute(command)

        assert second.success
        assert second.saga_id == first.saga_id
        assert second.order.id == first.order.id
        assert len(payments.requests) == 1
        assert len(await orders.find_all()) == 1

    @pytest.mark.asyncio
    async def test_in_progress_run_returns_in_progress(self, orchestrator, saga_command, sagas, payments):
        running = SagaExecution.start("key-2")
        running.advance(SagaStatus.ORDER_CREATED)
        await sagas.save(running)

        result = await orchestrator.execute(replace(saga_command, idempotency_key="key-2"))

        assert not result.success
        assert result.in_progress
        assert result.saga_id == running.id
        assert payments.requests == []

    @pytest.mark.asyncio
    async def test_failed_run_is_retried(self, orchestrator, saga_command, payments, sagas):
        command = replace(saga_command, idempotency_key="key-3")
        payments.status = PaymentStatus.FAILED
        first = await orchestrator.execute(command)

        payments.status = PaymentStatus.SUCCESS
        second = await orchestrator.execute(command)

        assert not first.success
        assert second.success
        assert second.saga_id != first.saga_id
        assert (await sagas.find_by_idempotency_key("key-3")).id == second.saga_id
        assert (await sagas.find_by_id(first.saga_id)).status is SagaStatus.COMPENSATED

    @pytest.mark.asyncio
    async def test_lost_race_returns_in_progress(self, orchestrator, saga_command, sagas, monkeypatch):
        winner = SagaExecution.start("key-4")
        lookups = []
        real_find = sagas.find_by_idempotency_key

        async def find(key):
            # the first lookup happens before the competing run has saved
            lookups.append(key)
            if len(lookups) == 1:
                return None
            return await real_find(key)

        monkeypatch.setattr(sagas, "find_by_idempotency_key", find)
        await sagas.save(winner)

        result = await orchestrator.execute(replace(saga_command, idempotency_key="key-4"))

        assert result.in_progress
        assert result.saga_id == winner.id

    @pytest.mark.asyncio
    async def test_store_rejects_duplicate_key(self, sagas):
        await sagas.save(SagaExecution.start("dup"))
        with pytest.raises(DuplicateIdempotencyKeyError):
            await sagas.save(SagaExecution.start("dup"))

    @pytest.mark.asyncio
    async def test_blank_key_is_ignored(self, orchestrator, saga_command, payments):
        command = replace(saga_command, idempotency_key="   ")
        await orchestrator.execute(command)
        await orchestrator.execute(command)
        assert len(payments.requests) == 2


class TestBestEffortSideEffects:
    @pytest.mark.asyncio
    async def test_publisher_failure_does_not_change_outcome(
        self, orchestrator, saga_command, events, monkeypatch
    ):
        async def broken(event):
            raise ConnectionError("broker down")

        monkeypatch.setattr(events, "publish", broken)

        result = await orchestrator.execute(saga_command)

        assert result.success
        assert result.order.is_paid

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_change_outcome(
        self, orders, sagas, events, payments, risk, saga_command
    ):
        broken = RecordingNotificationService(fail=True)
        orchestrator = OrderSagaOrchestrator(
            create_order=CreateOrderUseCase(orders, broken),
            process_payment=ProcessPaymentUseCase(orders, payments, broken),
            analyze_risk=AnalyzeRiskUseCase(orders, risk),
            orders=orders,
            sagas=sagas,
            events=events,
            notifications=broken,
        )

        result = await orchestrator.execute(saga_command)

        assert result.success
