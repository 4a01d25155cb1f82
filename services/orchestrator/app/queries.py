"""
Orchestrator Service — query handlers (read side)

Plain-dict views of orders and saga executions for the HTTP layer. Nothing
here changes state.
"""

from uuid import UUID

from .aggregate import Order, OrderStatus
from .ports import OrderRepository, SagaExecutionRepository
from .saga_log import SagaExecution


def order_view(order: Order) -> dict:
    return {
        "id": str(order.id),
        "order_number": order.order_number,
        "status": order.status.value,
        "customer_id": str(order.customer_id),
        "customer_name": order.customer_name,
        "customer_email": order.customer_email,
        "items": [
            {
                "product_id": str(item.product_id),
                "product_name": item.product_name,
                "quantity": item.quantity,
                "unit_price": str(item.unit_price) if item.unit_price is not None else None,
                "subtotal": str(item.subtotal),
            }
            for item in order.items
        ],
        "total_amount": str(order.total_amount),
        "payment_id": order.payment_id,
        "risk_level": order.risk_level.value,
        "created_at": order.created_at.isoformat() if order.created_at else None,
        "updated_at": order.updated_at.isoformat() if order.updated_at else None,
    }


def saga_view(saga: SagaExecution) -> dict:
    return {
        "id": str(saga.id),
        "idempotency_key": saga.idempotency_key,
        "order_id": str(saga.order_id) if saga.order_id else None,
        "status": saga.status.value,
        "current_step": saga.current_step,
        "error_message": saga.error_message,
        "started_at": saga.started_at.isoformat() if saga.started_at else None,
        "completed_at": saga.completed_at.isoformat() if saga.completed_at else None,
        "duration_ms": saga.duration_ms,
        "steps": [
            {
                "step_name": step.step_name,
                "status": step.status.value,
                "error_message": step.error_message,
                "started_at": step.started_at.isoformat() if step.started_at else None,
                "completed_at": step.completed_at.isoformat() if step.completed_at else None,
                "duration_ms": step.duration_ms,
            }
            for step in saga.steps
        ],
    }


async def get_order(orders: OrderRepository, order_id: UUID) -> dict | None:
    order = await orders.find_by_id(order_id)
    return order_view(order) if order else None


async def get_order_by_number(orders: OrderRepository, order_number: str) -> dict | None:
    order = await orders.find_by_order_number(order_number)
    return order_view(order) if order else None


async def list_orders(
    orders: OrderRepository, status: OrderStatus | None = None
) -> list[dict]:
    """Newest first, optionally filtered by status."""
    found = await (orders.find_by_status(status) if status else orders.find_all())
    return [order_view(o) for o in found]


async def get_saga_execution(sagas: SagaExecutionRepository, saga_id: UUID) -> dict | None:
    saga = await sagas.find_by_id(saga_id)
    return saga_view(saga) if saga else None


async def list_order_sagas(sagas: SagaExecutionRepository, order_id: UUID) -> list[dict]:
    return [saga_view(s) for s in await sagas.find_by_order_id(order_id)]
