"""HTTP surface tests through httpx.ASGITransport with in-memory ports."""

from uuid import uuid4

import httpx
import pytest
import pytest_asyncio

from app.config import Settings, StorageBackend
from app.main import build_services, create_app, services_from_settings
from app.memory import InMemoryOrderRepository, InMemorySagaExecutionRepository
from app.ports import PaymentStatus


@pytest_asyncio.fixture
async def client(orders, sagas, events, payments, risk, notifications):
    services = build_services(orders, sagas, payments, risk, events, notifications)
    app = create_app(services=services)
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://orchestrator.test"
    ) as client:
        yield client


def order_payload(**overrides) -> dict:
    payload = {
        "customer_id": str(uuid4()),
        "customer_name": "Maria Silva",
        "customer_email": "maria@example.com",
        "payment_method": "PIX",
        "items": [
            {"product_id": str(uuid4()), "product_name": "Notebook", "quantity": 2, "unit_price": "10.50"},
            {"product_id": str(uuid4()), "product_name": "Backpack", "quantity": 1, "unit_price": "25.00"},
        ],
    }
    payload.update(overrides)
    return payload


class TestPlaceOrder:
    @pytest.mark.asyncio
    async def test_success_returns_201(self, client):
        resp = await client.post("/api/orders", json=order_payload())

        assert resp.status_code == 201
        body = resp.json()
        assert body["success"] is True
        assert body["order"]["status"] == "PAID"
        assert body["order"]["total_amount"] == "46.00"
        assert body["order"]["risk_level"] == "LOW"

    @pytest.mark.asyncio
    async def test_payment_failure_returns_422(self, client, payments):
        payments.status = PaymentStatus.FAILED

        resp = await client.post("/api/orders", json=order_payload())

        assert resp.status_code == 422
        body = resp.json()
        assert body["success"] is False
        assert body["error_message"] == "Payment failed"
        assert body["order"]["status"] == "PAYMENT_FAILED"

    @pytest.mark.asyncio
    async def test_idempotency_key_header_replays(self, client, payments):
        headers = {"Idempotency-Key": "abc-123"}
        first = await client.post("/api/orders", json=order_payload(), headers=headers)
        second = await client.post("/api/orders", json=order_payload(), headers=headers)

        assert second.status_code == 201
        assert second.json()["saga_id"] == first.json()["saga_id"]
        assert len(payments.requests) == 1

    @pytest.mark.asyncio
    async def test_invalid_item_returns_400(self, client):
        payload = order_payload()
        payload["items"][0]["quantity"] = 0
        resp = await client.post("/api/orders", json=payload)
        assert resp.status_code == 400


class TestQueries:
    @pytest.mark.asyncio
    async def test_order_and_saga_lookups(self, client):
        created = (await client.post("/api/orders", json=order_payload())).json()
        order = created["order"]

        by_id = await client.get(f"/api/orders/{order['id']}")
        by_number = await client.get(f"/api/orders/number/{order['order_number']}")
        listed = await client.get("/api/orders", params={"status": "PAID"})
        saga = await client.get(f"/api/sagas/{created['saga_id']}")
        order_sagas = await client.get(f"/api/orders/{order['id']}/sagas")

        assert by_id.json()["id"] == order["id"]
        assert by_number.json()["id"] == order["id"]
        assert [o["id"] for o in listed.json()] == [order["id"]]
        assert saga.json()["status"] == "COMPLETED"
        assert [s["step_name"] for s in saga.json()["steps"]] == [
            "ORDER_CREATED",
            "PAYMENT_PROCESSED",
            "RISK_ANALYZED",
        ]
        assert [s["id"] for s in order_sagas.json()] == [created["saga_id"]]

    @pytest.mark.asyncio
    async def test_unknown_order_returns_404(self, client):
        assert (await client.get(f"/api/orders/{uuid4()}")).status_code == 404
        assert (await client.get(f"/api/sagas/{uuid4()}")).status_code == 404

    @pytest.mark.asyncio
    async def test_health(self, client):
        assert (await client.get("/health")).json()["status"] == "ok"


class TestOrderCommands:
    @pytest.mark.asyncio
    async def test_illegal_status_change_returns_409(self, client):
        order = (await client.post("/api/orders", json=order_payload())).json()["order"]

        resp = await client.post(f"/api/orders/{order['id']}/status", json={"status": "CANCELED"})

        assert resp.status_code == 409
        assert "Cannot transition from PAID to CANCELED" in resp.json()["detail"]

    @pytest.mark.asyncio
    async def test_refresh_unknown_order_returns_404(self, client):
        resp = await client.post(f"/api/orders/{uuid4()}/payment/refresh")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_refresh_paid_order(self, client, payments, events):
        order = (await client.post("/api/orders", json=order_payload())).json()["order"]
        payments.remote_status = PaymentStatus.SUCCESS
        published = len(events.published_events)

        resp = await client.post(f"/api/orders/{order['id']}/payment/refresh")

        assert resp.status_code == 200
        assert resp.json()["status"] == "PAID"
        assert len(events.published_events) == published


class TestWiring:
    @pytest.mark.asyncio
    async def test_in_memory_backend_runs_a_saga(self):
        services = await services_from_settings(Settings(storage_backend=StorageBackend.IN_MEMORY))
        try:
            assert isinstance(services.orders, InMemoryOrderRepository)
            assert isinstance(services.sagas, InMemorySagaExecutionRepository)

            app = create_app(services=services)
            async with httpx.AsyncClient(
                transport=httpx.ASGITransport(app=app), base_url="http://orchestrator.test"
            ) as client:
                response = await client.post("/api/orders", json=order_payload())
                assert response.status_code == 201
                assert response.json()["order"]["status"] == "PAID"
                assert len(await services.orders.find_all()) == 1
        finally:
            await services.aclose()
