"""
Orchestrator Service — FastAPI entry point

Exposes the order saga over HTTP. Command endpoints (POST) run use cases,
query endpoints (GET) read through queries.py.

  POST /api/orders ──▶ OrderSagaOrchestrator ──▶ CreateOrder → ProcessPayment → AnalyzeRisk
                                     │
                                     └──▶ order_events / saga_events
"""

import logging
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from uuid import UUID

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import queries
from .aggregate import OrderItem, OrderStatus
from .commands import (
    AnalyzeRiskUseCase,
    CreateOrderUseCase,
    ProcessPaymentUseCase,
    RefreshPaymentStatusUseCase,
    UpdateOrderStatusCommand,
    UpdateOrderStatusUseCase,
)
from .config import Settings, StorageBackend
from .exceptions import InvalidStateError, NotFoundError, ValidationError
from .gateways import (
    HttpPaymentGateway,
    HttpRiskAnalysis,
    SimulatedPaymentGateway,
    SimulatedRiskAnalysis,
)
from .memory import InMemoryOrderRepository, InMemorySagaExecutionRepository
from .messaging import BrokerType, LoggingNotificationService, create_event_publisher
from .orchestrator import OrderSagaCommand, OrderSagaOrchestrator, OrderSagaResult
from .ports import (
    EventPublisher,
    NotificationService,
    OrderRepository,
    PaymentGateway,
    RiskAnalysis,
    SagaExecutionRepository,
)
from .resilience import CircuitBreaker, ResilientPaymentGateway, ResilientRiskAnalysis, RetryConfig
from .store import SqlOrderRepository, SqlSagaExecutionRepository, create_schema

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Wiring ──────────────────────────────────────


@dataclass
class Services:
    orders: OrderRepository
    sagas: SagaExecutionRepository
    events: EventPublisher
    orchestrator: OrderSagaOrchestrator
    refresh_payment: RefreshPaymentStatusUseCase
    update_status: UpdateOrderStatusUseCase
    closers: list[Callable[[], Awaitable[None]]] = field(default_factory=list)

    async def aclose(self) -> None:
        for close in reversed(self.closers):
            try:
                await close()
            except Exception:
                logger.exception("Failed to release %s", close)


def build_services(
    orders: OrderRepository,
    sagas: SagaExecutionRepository,
    payments: PaymentGateway,
    risk: RiskAnalysis,
    events: EventPublisher,
    notifications: NotificationService | None = None,
    risk_analysis_enabled: bool = True,
) -> Services:
    notifications = notifications or LoggingNotificationService()
    orchestrator = OrderSagaOrchestrator(
        create_order=CreateOrderUseCase(orders, notifications),
        process_payment=ProcessPaymentUseCase(orders, payments, notifications),
        analyze_risk=AnalyzeRiskUseCase(orders, risk, enabled=risk_analysis_enabled),
        orders=orders,
        sagas=sagas,
        events=events,
        notifications=notifications,
    )
    return Services(
        orders=orders,
        sagas=sagas,
        events=events,
        orchestrator=orchestrator,
        refresh_payment=RefreshPaymentStatusUseCase(orders, payments, events),
        update_status=UpdateOrderStatusUseCase(orders, notifications),
    )


async def services_from_settings(settings: Settings) -> Services:
    closers: list[Callable[[], Awaitable[None]]] = []

    if settings.storage_backend is StorageBackend.SQL:
        engine = create_async_engine(settings.database_url, echo=False)
        closers.append(engine.dispose)
        await create_schema(engine)
        async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        orders: OrderRepository = SqlOrderRepository(async_session)
        sagas: SagaExecutionRepository = SqlSagaExecutionRepository(async_session)
    else:
        logger.warning("STORAGE_BACKEND is IN_MEMORY; orders and sagas are lost on restart")
        orders = InMemoryOrderRepository()
        sagas = InMemorySagaExecutionRepository()

    redis_pool: aioredis.Redis | None = None
    if settings.message_broker is BrokerType.REDIS:
        redis_pool = aioredis.from_url(settings.redis_url, decode_responses=True)
        closers.append(redis_pool.aclose)
    events = create_event_publisher(settings.message_broker, redis_pool)

    retry = RetryConfig(
        max_attempts=settings.retry_max_attempts,
        initial_delay=settings.retry_initial_delay,
        max_delay=max(10.0, settings.retry_initial_delay),
    )

    if settings.payment_gateway_url:
        http_payments = HttpPaymentGateway(
            settings.payment_gateway_url,
            settings.payment_gateway_api_key,
            timeout=settings.http_timeout_seconds,
        )
        closers.append(http_payments.aclose)
        inner_payments: PaymentGateway = http_payments
    else:
        logger.warning("PAYMENT_GATEWAY_URL not set; using the simulated payment gateway")
        inner_payments = SimulatedPaymentGateway()

    if settings.risk_analysis_url:
        http_risk = HttpRiskAnalysis(
            settings.risk_analysis_url,
            settings.risk_analysis_api_key,
            model=settings.risk_analysis_model,
            timeout=settings.http_timeout_seconds,
        )
        closers.append(http_risk.aclose)
        inner_risk: RiskAnalysis = http_risk
    else:
        logger.warning("RISK_ANALYSIS_URL not set; using the simulated risk analysis")
        inner_risk = SimulatedRiskAnalysis()

    payments = ResilientPaymentGateway(
        inner_payments,
        CircuitBreaker(
            "paymentGateway",
            failure_threshold=settings.circuit_failure_threshold,
            recovery_timeout=settings.circuit_recovery_timeout,
        ),
        retry,
    )
    risk = ResilientRiskAnalysis(
        inner_risk,
        CircuitBreaker(
            "riskAnalysis",
            failure_threshold=settings.circuit_failure_threshold,
            recovery_timeout=settings.circuit_recovery_timeout,
        ),
        retry,
    )

    services = build_services(
        orders=orders,
        sagas=sagas,
        payments=payments,
        risk=risk,
        events=events,
        risk_analysis_enabled=settings.risk_analysis_enabled,
    )
    services.closers.extend(closers)
    return services


# ── App factory ─────────────────────────────────


def create_app(services: Services | None = None, settings: Settings | None = None) -> FastAPI:
    """
    Without ``services`` the app wires itself from the environment on startup.
    Passing ``services`` (tests) skips that and serves them as given.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is not None:
            yield
            return
        resolved = settings or Settings.from_env()
        configure_logging(resolved.log_level)
        app.state.settings = resolved
        app.state.services = await services_from_settings(resolved)
        logger.info("Orchestrator service started (broker %s)", resolved.message_broker.value)
        yield
        await app.state.services.aclose()

    app = FastAPI(title="Order Saga Orchestrator", lifespan=lifespan)
    app.state.settings = settings or Settings()
    if services is not None:
        app.state.services = services

    @app.exception_handler(ValidationError)
    async def on_validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(NotFoundError)
    async def on_not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidStateError)
    async def on_invalid_state(request: Request, exc: InvalidStateError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    _register_routes(app)
    return app


# ── Request / Response Models ────────────────────


class OrderItemRequest(BaseModel):
    product_id: UUID
    product_name: str
    quantity: int
    unit_price: Decimal


class CreateOrderRequest(BaseModel):
    customer_id: UUID
    customer_name: str | None = None
    customer_email: str
    items: list[OrderItemRequest]
    payment_method: str
    currency: str | None = None
    idempotency_key: str | None = None


class UpdateStatusRequest(BaseModel):
    status: OrderStatus


def get_services(request: Request) -> Services:
    return request.app.state.services


def result_view(result: OrderSagaResult) -> dict:
    return {
        "success": result.success,
        "in_progress": result.in_progress,
        "saga_id": str(result.saga_id),
        "error_message": result.error_message,
        "order": queries.order_view(result.order) if result.order else None,
    }


def _register_routes(app: FastAPI) -> None:
    # ── Command Endpoints ────────────────────────

    @app.post("/api/orders")
    async def place_order(
        req: CreateOrderRequest,
        request: Request,
        idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
        services: Services = Depends(get_services),
    ):
        """
        Run the order saga. 201 when it completed, 202 when a run with the
        same idempotency key is still going, 422 when it failed.
        """
        command = OrderSagaCommand(
            customer_id=req.customer_id,
            customer_name=req.customer_name,
            customer_email=req.customer_email,
            items=[
                OrderItem(
                    product_id=i.product_id,
                    product_name=i.product_name,
                    quantity=i.quantity,
                    unit_price=i.unit_price,
                )
                for i in req.items
            ],
            payment_method=req.payment_method,
            currency=req.currency or request.app.state.settings.default_currency,
            idempotency_key=idempotency_key or req.idempotency_key,
        )
        result = await services.orchestrator.execute(command)
        if result.success:
            status_code = 201
        elif result.in_progress:
            status_code = 202
        else:
            status_code = 422
        return JSONResponse(status_code=status_code, content=result_view(result))

    @app.post("/api/orders/{order_id}/status")
    async def update_order_status(
        order_id: UUID,
        req: UpdateStatusRequest,
        services: Services = Depends(get_services),
    ):
        order = await services.update_status.execute(
            UpdateOrderStatusCommand(order_id=order_id, new_status=req.status)
        )
        return queries.order_view(order)

    @app.post("/api/orders/{order_id}/payment/refresh")
    async def refresh_payment_status(order_id: UUID, services: Services = Depends(get_services)):
        """Reconcile the order with the payment provider."""
        order = await services.refresh_payment.execute(order_id)
        return queries.order_view(order)

    # ── Query Endpoints ──────────────────────────

    @app.get("/api/orders")
    async def list_orders(
        status: OrderStatus | None = None, services: Services = Depends(get_services)
    ):
        return await queries.list_orders(services.orders, status)

    @app.get("/api/orders/number/{order_number}")
    async def get_order_by_number(order_number: str, services: Services = Depends(get_services)):
        order = await queries.get_order_by_number(services.orders, order_number)
        if not order:
            raise HTTPException(404, "Order not found")
        return order

    @app.get("/api/orders/{order_id}")
    async def get_order(order_id: UUID, services: Services = Depends(get_services)):
        order = await queries.get_order(services.orders, order_id)
        if not order:
            raise HTTPException(404, "Order not found")
        return order

    @app.get("/api/orders/{order_id}/sagas")
    async def list_order_sagas(order_id: UUID, services: Services = Depends(get_services)):
        return await queries.list_order_sagas(services.sagas, order_id)

    @app.get("/api/sagas/{saga_id}")
    async def get_saga(saga_id: UUID, services: Services = Depends(get_services)):
        saga = await queries.get_saga_execution(services.sagas, saga_id)
        if not saga:
            raise HTTPException(404, "Saga execution not found")
        return saga

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "orchestrator-service"}


app = create_app()
