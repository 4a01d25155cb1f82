"""
Orchestrator Service — in-memory repositories

Process-local stores, selected with STORAGE_BACKEND=IN_MEMORY and used by
the tests. Values are deep-copied on the way in and out so callers never
share state with the store, the same as a database round trip.
"""

from __future__ import annotations

import copy
from uuid import UUID

from .aggregate import Order, OrderStatus
from .exceptions import DuplicateIdempotencyKeyError
from .ports import OrderRepository, SagaExecutionRepository
from .saga_log import SagaExecution, SagaStatus


class InMemoryOrderRepository(OrderRepository):
    def __init__(self) -> None:
        self._orders: dict[UUID, Order] = {}

    async def save(self, order: Order) -> Order:
        self._orders[order.id] = copy.deepcopy(order)
        return order

    async def find_by_id(self, order_id: UUID) -> Order | None:
        order = self._orders.get(order_id)
        return copy.deepcopy(order) if order is not None else None

    async def find_by_order_number(self, order_number: str) -> Order | None:
        return self._first(lambda o: o.order_number == order_number)

    async def find_by_payment_id(self, payment_id: str) -> Order | None:
        return self._first(lambda o: o.payment_id == payment_id)

    async def find_all(self) -> list[Order]:
        orders = sorted(self._orders.values(), key=lambda o: o.created_at, reverse=True)
        return [copy.deepcopy(o) for o in orders]

    async def find_by_status(self, status: OrderStatus) -> list[Order]:
        return [o for o in await self.find_all() if o.status is status]

    async def delete_by_id(self, order_id: UUID) -> None:
        self._orders.pop(order_id, None)

    async def exists_by_id(self, order_id: UUID) -> bool:
        return order_id in self._orders

    def _first(self, predicate) -> Order | None:
        for order in self._orders.values():
            if predicate(order):
                return copy.deepcopy(order)
        return None


class InMemorySagaExecutionRepository(SagaExecutionRepository):
    def __init__(self) -> None:
        self._sagas: dict[UUID, SagaExecution] = {}

    async def save(self, saga: SagaExecution) -> SagaExecution:
        if saga.idempotency_key is not None:
            for other in self._sagas.values():
                if other.id != saga.id and other.idempotency_key == saga.idempotency_key:
                    raise DuplicateIdempotencyKeyError(saga.idempotency_key)
        self._sagas[saga.id] = copy.deepcopy(saga)
        return saga

    async def find_by_id(self, saga_id: UUID) -> SagaExecution | None:
        saga = self._sagas.get(saga_id)
        return copy.deepcopy(saga) if saga is not None else None

    async def find_by_order_id(self, order_id: UUID) -> list[SagaExecution]:
        return [copy.deepcopy(s) for s in self._sagas.values() if s.order_id == order_id]

    async def find_by_status(self, status: SagaStatus) -> list[SagaExecution]:
        return [copy.deepcopy(s) for s in self._sagas.values() if s.status is status]

    async def find_by_idempotency_key(self, idempotency_key: str) -> SagaExecution | None:
        for saga in self._sagas.values():
            if saga.idempotency_key == idempotency_key:
                return copy.deepcopy(saga)
        return None
