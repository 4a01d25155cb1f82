"""
Orchestrator Service — SQL persistence

Order and saga-execution repositories on SQLAlchemy async sessions with raw
SQL. Every call opens its own session and commits before returning, so each
use case is its own transaction and no lock is held across a provider call.

The SQL is plain enough to run on PostgreSQL and SQLite: ids, timestamps and
amounts are stored as text, line items as a JSON document.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from .aggregate import Order, OrderItem, OrderStatus, RiskLevel
from .exceptions import DuplicateIdempotencyKeyError
from .ports import OrderRepository, SagaExecutionRepository
from .saga_log import SagaExecution, SagaStatus, SagaStep, StepStatus

SessionFactory = Callable[[], AsyncSession]

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS orders (
        id              TEXT PRIMARY KEY,
        order_number    TEXT NOT NULL UNIQUE,
        status          TEXT NOT NULL,
        customer_id     TEXT NOT NULL,
        customer_name   TEXT,
        customer_email  TEXT NOT NULL,
        items           TEXT NOT NULL,
        total_amount    TEXT NOT NULL,
        payment_id      TEXT,
        risk_level      TEXT NOT NULL,
        created_at      TEXT NOT NULL,
        updated_at      TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_orders_status ON orders (status)",
    "CREATE INDEX IF NOT EXISTS ix_orders_payment_id ON orders (payment_id)",
    """
    CREATE TABLE IF NOT EXISTS saga_executions (
        id               TEXT PRIMARY KEY,
        idempotency_key  TEXT UNIQUE,
        order_id         TEXT,
        status           TEXT NOT NULL,
        current_step     TEXT,
        error_message    TEXT,
        started_at       TEXT NOT NULL,
        completed_at     TEXT,
        duration_ms      BIGINT
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_saga_executions_order_id ON saga_executions (order_id)",
    """
    CREATE TABLE IF NOT EXISTS saga_steps (
        id                 TEXT PRIMARY KEY,
        saga_execution_id  TEXT NOT NULL,
        position           INTEGER NOT NULL,
        step_name          TEXT NOT NULL,
        status             TEXT NOT NULL,
        error_message      TEXT,
        started_at         TEXT NOT NULL,
        completed_at       TEXT,
        duration_ms        BIGINT
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_saga_steps_saga ON saga_steps (saga_execution_id)",
)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for statement in SCHEMA:
            await conn.execute(text(statement))


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _dt(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


# ── Orders ──────────────────────────────────────


class SqlOrderRepository(OrderRepository):
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def save(self, order: Order) -> Order:
        async with self._session_factory() as session:
            await session.execute(
                text("""
                    INSERT INTO orders
                        (id, order_number, status, customer_id, customer_name, customer_email,
                         items, total_amount, payment_id, risk_level, created_at, updated_at)
                    VALUES
                        (:id, :order_number, :status, :customer_id, :customer_name, :customer_email,
                         :items, :total_amount, :payment_id, :risk_level, :created_at, :updated_at)
                    ON CONFLICT (id) DO UPDATE SET
                        status = excluded.status,
                        customer_name = excluded.customer_name,
                        customer_email = excluded.customer_email,
                        items = excluded.items,
                        total_amount = excluded.total_amount,
                        payment_id = excluded.payment_id,
                        risk_level = excluded.risk_level,
                        updated_at = excluded.updated_at
                """),
                self._to_params(order),
            )
            await session.commit()
        return order

    async def find_by_id(self, order_id: UUID) -> Order | None:
        return await self._fetch_one("SELECT * FROM orders WHERE id = :v", str(order_id))

    async def find_by_order_number(self, order_number: str) -> Order | None:
        return await self._fetch_one("SELECT * FROM orders WHERE order_number = :v", order_number)

    async def find_by_payment_id(self, payment_id: str) -> Order | None:
        return await self._fetch_one("SELECT * FROM orders WHERE payment_id = :v", payment_id)

    async def find_all(self) -> list[Order]:
        return await self._fetch_all("SELECT * FROM orders ORDER BY created_at DESC", {})

    async def find_by_status(self, status: OrderStatus) -> list[Order]:
        return await self._fetch_all(
            "SELECT * FROM orders WHERE status = :status ORDER BY created_at DESC",
            {"status": OrderStatus(status).value},
        )

    async def delete_by_id(self, order_id: UUID) -> None:
        async with self._session_factory() as session:
            await session.execute(text("DELETE FROM orders WHERE id = :id"), {"id": str(order_id)})
            await session.commit()

    async def exists_by_id(self, order_id: UUID) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                text("SELECT 1 FROM orders WHERE id = :id"), {"id": str(order_id)}
            )
            return result.fetchone() is not None

    async def _fetch_one(self, sql: str, value: str) -> Order | None:
        async with self._session_factory() as session:
            result = await session.execute(text(sql), {"v": value})
            row = result.fetchone()
        return self._to_order(row) if row else None

    async def _fetch_all(self, sql: str, params: dict) -> list[Order]:
        async with self._session_factory() as session:
            result = await session.execute(text(sql), params)
            rows = result.fetchall()
        return [self._to_order(row) for row in rows]

    @staticmethod
    def _to_params(order: Order) -> dict:
        return {
            "id": str(order.id),
            "order_number": order.order_number,
            "status": order.status.value,
            "customer_id": str(order.customer_id),
            "customer_name": order.customer_name,
            "customer_email": order.customer_email,
            "items": json.dumps(
                [
                    {
                        "product_id": str(item.product_id),
                        "product_name": item.product_name,
                        "quantity": item.quantity,
                        "unit_price": item.unit_price,
                    }
                    for item in order.items
                ],
                default=str,
            ),
            "total_amount": str(order.total_amount),
            "payment_id": order.payment_id,
            "risk_level": order.risk_level.value,
            "created_at": _iso(order.created_at),
            "updated_at": _iso(order.updated_at),
        }

    @staticmethod
    def _to_order(row: Any) -> Order:
        items = json.loads(row.items) if isinstance(row.items, str) else row.items
        return Order(
            id=UUID(str(row.id)),
            order_number=row.order_number,
            status=OrderStatus(row.status),
            customer_id=UUID(str(row.customer_id)),
            customer_name=row.customer_name,
            customer_email=row.customer_email,
            items=tuple(
                OrderItem(
                    product_id=UUID(i["product_id"]),
                    product_name=i["product_name"],
                    quantity=i["quantity"],
                    unit_price=Decimal(i["unit_price"]) if i["unit_price"] is not None else None,
                )
                for i in items
            ),
            payment_id=row.payment_id,
            risk_level=RiskLevel(row.risk_level),
            created_at=_dt(row.created_at),
            updated_at=_dt(row.updated_at),
        )


# ── Saga executions ─────────────────────────────


class SqlSagaExecutionRepository(SagaExecutionRepository):
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def save(self, saga: SagaExecution) -> SagaExecution:
        async with self._session_factory() as session:
            try:
                await session.execute(
                    text("""
                        INSERT INTO saga_executions
                            (id, idempotency_key, order_id, status, current_step, error_message,
                             started_at, completed_at, duration_ms)
                        VALUES
                            (:id, :idempotency_key, :order_id, :status, :current_step, :error_message,
                             :started_at, :completed_at, :duration_ms)
                        ON CONFLICT (id) DO UPDATE SET
                            idempotency_key = excluded.idempotency_key,
                            order_id = excluded.order_id,
                            status = excluded.status,
                            current_step = excluded.current_step,
                            error_message = excluded.error_message,
                            completed_at = excluded.completed_at,
                            duration_ms = excluded.duration_ms
                    """),
                    {
                        "id": str(saga.id),
                        "idempotency_key": saga.idempotency_key,
                        "order_id": str(saga.order_id) if saga.order_id else None,
                        "status": saga.status.value,
                        "current_step": saga.current_step,
                        "error_message": saga.error_message,
                        "started_at": _iso(saga.started_at),
                        "completed_at": _iso(saga.completed_at),
                        "duration_ms": saga.duration_ms,
                    },
                )
            except IntegrityError as e:
                await session.rollback()
                if saga.idempotency_key is not None:
                    raise DuplicateIdempotencyKeyError(saga.idempotency_key) from e
                raise

            # steps are append-only in the model; rewriting them keeps save() idempotent
            await session.execute(
                text("DELETE FROM saga_steps WHERE saga_execution_id = :sid"),
                {"sid": str(saga.id)},
            )
            for position, step in enumerate(saga.steps):
                await session.execute(
                    text("""
                        INSERT INTO saga_steps
                            (id, saga_execution_id, position, step_name, status, error_message,
                             started_at, completed_at, duration_ms)
                        VALUES
                            (:id, :sid, :position, :step_name, :status, :error_message,
                             :started_at, :completed_at, :duration_ms)
                    """),
                    {
                        "id": str(step.id),
                        "sid": str(saga.id),
                        "position": position,
                        "step_name": step.step_name,
                        "status": step.status.value,
                        "error_message": step.error_message,
                        "started_at": _iso(step.started_at),
                        "completed_at": _iso(step.completed_at),
                        "duration_ms": step.duration_ms,
                    },
                )
            await session.commit()
        return saga

    async def find_by_id(self, saga_id: UUID) -> SagaExecution | None:
        sagas = await self._query("WHERE id = :v", {"v": str(saga_id)})
        return sagas[0] if sagas else None

    async def find_by_order_id(self, order_id: UUID) -> list[SagaExecution]:
        return await self._query("WHERE order_id = :v ORDER BY started_at", {"v": str(order_id)})

    async def find_by_status(self, status: SagaStatus) -> list[SagaExecution]:
        return await self._query(
            "WHERE status = :v ORDER BY started_at", {"v": SagaStatus(status).value}
        )

    async def find_by_idempotency_key(self, idempotency_key: str) -> SagaExecution | None:
        sagas = await self._query("WHERE idempotency_key = :v", {"v": idempotency_key})
        return sagas[0] if sagas else None

    async def _query(self, where: str, params: dict) -> list[SagaExecution]:
        async with self._session_factory() as session:
            result = await session.execute(text(f"SELECT * FROM saga_executions {where}"), params)
            rows = result.fetchall()
            sagas = []
            for row in rows:
                steps = await session.execute(
                    text("""
                        SELECT * FROM saga_steps
                        WHERE saga_execution_id = :sid
                        ORDER BY position ASC
                    """),
                    {"sid": str(row.id)},
                )
                sagas.append(self._to_saga(row, steps.fetchall()))
        return sagas

    @staticmethod
    def _to_saga(row: Any, step_rows: list[Any]) -> SagaExecution:
        saga_id = UUID(str(row.id))
        return SagaExecution(
            id=saga_id,
            idempotency_key=row.idempotency_key,
            order_id=UUID(str(row.order_id)) if row.order_id else None,
            status=SagaStatus(row.status),
            current_step=row.current_step,
            error_message=row.error_message,
            started_at=_dt(row.started_at),
            completed_at=_dt(row.completed_at),
            duration_ms=row.duration_ms,
            steps=[
                SagaStep(
                    id=UUID(str(s.id)),
                    saga_execution_id=saga_id,
                    step_name=s.step_name,
                    status=StepStatus(s.status),
                    error_message=s.error_message,
                    started_at=_dt(s.started_at),
                    completed_at=_dt(s.completed_at),
                    duration_ms=s.duration_ms,
                )
                for s in step_rows
            ],
        )
