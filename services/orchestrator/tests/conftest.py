"""
Shared pytest fixtures for the orchestrator tests.

- Stub providers (payment gateway, risk analysis) with scripted outcomes
- Recording notification service
- In-memory repositories and event publisher
- A ready-wired orchestrator and a sample saga command
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID, uuid4

import pytest

from app.aggregate import Order, OrderItem, RiskLevel
from app.commands import AnalyzeRiskUseCase, CreateOrderUseCase, ProcessPaymentUseCase
from app.memory import InMemoryOrderRepository, InMemorySagaExecutionRepository
from app.messaging import InMemoryEventPublisher
from app.orchestrator import OrderSagaCommand, OrderSagaOrchestrator
from app.ports import (
    NotificationService,
    PaymentGateway,
    PaymentRequest,
    PaymentResult,
    PaymentStatus,
    RiskAnalysis,
    RiskAnalysisRequest,
    RiskAnalysisResult,
)


# ============================================================================
# Stub providers
# ============================================================================


class StubPaymentGateway(PaymentGateway):
    def __init__(
        self,
        status: PaymentStatus = PaymentStatus.SUCCESS,
        payment_id: str = "pay_123",
        error: Exception | None = None,
    ) -> None:
        self.status = status
        self.payment_id = payment_id
        self.error = error
        self.remote_status = PaymentStatus.PENDING
        self.requests: list[PaymentRequest] = []
        self.status_checks: list[str] = []

    async def process_payment(self, request: PaymentRequest) -> PaymentResult:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if self.status is PaymentStatus.SUCCESS:
            return PaymentResult(
                payment_id=self.payment_id, status=self.status, amount=request.amount
            )
        return PaymentResult(payment_id=None, status=self.status, message="declined")

    async def refund_payment(self, payment_id: str, amount: Decimal) -> PaymentResult:
        return PaymentResult(payment_id=payment_id, status=PaymentStatus.REFUNDED, amount=amount)

    async def check_payment_status(self, payment_id: str) -> PaymentStatus:
        self.status_checks.append(payment_id)
        if self.error is not None:
            raise self.error
        return self.remote_status


class StubRiskAnalysis(RiskAnalysis):
    def __init__(self, level: RiskLevel = RiskLevel.LOW, error: Exception | None = None) -> None:
        self.level = level
        self.error = error
        self.requests: list[RiskAnalysisRequest] = []

    async def analyze_risk(self, request: RiskAnalysisRequest) -> RiskAnalysisResult:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return RiskAnalysisResult(risk_level=self.level, reason="stub")


class RecordingNotificationService(NotificationService):
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[tuple[str, UUID]] = []

    async def _record(self, kind: str, order: Order) -> None:
        if self.fail:
            raise RuntimeError("notification channel down")
        self.sent.append((kind, order.id))

    async def notify_order_created(self, order: Order) -> None:
        await self._record("created", order)

    async def notify_order_status_changed(self, order: Order) -> None:
        await self._record("status_changed", order)

    async def notify_payment_failed(self, order: Order) -> None:
        await self._record("payment_failed", order)

    async def notify_order_cancelled(self, order: Order) -> None:
        await self._record("cancelled", order)

    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.sent]


# ============================================================================
# Sample data
# ============================================================================


def sample_items() -> list[OrderItem]:
    """2 x 10.50 + 1 x 25.00 = 46.00"""
    return [
        OrderItem(uuid4(), "Notebook", 2, Decimal("10.50")),
        OrderItem(uuid4(), "Backpack", 1, Decimal("25.00")),
    ]


def make_order(**overrides) -> Order:
    fields = dict(
        customer_id=uuid4(),
        customer_name="Maria Silva",
        customer_email="maria@example.com",
        items=sample_items(),
    )
    fields.update(overrides)
    return Order.create(**fields)


@pytest.fixture
def saga_command() -> OrderSagaCommand:
    return OrderSagaCommand(
        customer_id=uuid4(),
        customer_name="Maria Silva",
        customer_email="maria@example.com",
        items=sample_items(),
        payment_method="PIX",
    )


# ============================================================================
# Ports
# ============================================================================


@pytest.fixture
def orders() -> InMemoryOrderRepository:
    return InMemoryOrderRepository()


@pytest.fixture
def sagas() -> InMemorySagaExecutionRepository:
    return InMemorySagaExecutionRepository()


@pytest.fixture
def events() -> InMemoryEventPublisher:
    return InMemoryEventPublisher()


@pytest.fixture
def payments() -> StubPaymentGateway:
    return StubPaymentGateway()


@pytest.fixture
def risk() -> StubRiskAnalysis:
    return StubRiskAnalysis()


@pytest.fixture
def notifications() -> RecordingNotificationService:
    return RecordingNotificationService()


@pytest.fixture
def make_orchestrator(orders, sagas, events, payments, risk, notifications):
    def _make(risk_enabled: bool = True) -> OrderSagaOrchestrator:
        return OrderSagaOrchestrator(
            create_order=CreateOrderUseCase(orders, notifications),
            process_payment=ProcessPaymentUseCase(orders, payments, notifications),
            analyze_risk=AnalyzeRiskUseCase(orders, risk, enabled=risk_enabled),
            orders=orders,
            sagas=sagas,
            events=events,
            notifications=notifications,
        )

    return _make


@pytest.fixture
def orchestrator(make_orchestrator) -> OrderSagaOrchestrator:
    return make_orchestrator()
