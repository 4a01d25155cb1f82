"""
Orchestrator Service — provider adapters

Outbound HTTP adapters for the payment and risk ports, plus simulated
providers used when no provider URL is configured. The HTTP adapters raise
on transport / status errors; ResilientPaymentGateway and
ResilientRiskAnalysis turn those into degraded values.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from uuid import uuid4

import httpx

from .aggregate import RiskLevel
from .ports import (
    PaymentGateway,
    PaymentRequest,
    PaymentResult,
    PaymentStatus,
    RiskAnalysis,
    RiskAnalysisRequest,
    RiskAnalysisResult,
)

logger = logging.getLogger(__name__)

_PROVIDER_STATUS = {
    "PAID": PaymentStatus.SUCCESS,
    "FAILED": PaymentStatus.FAILED,
    "CANCELLED": PaymentStatus.FAILED,
    "REFUNDED": PaymentStatus.REFUNDED,
    "PENDING": PaymentStatus.PENDING,
}


def map_provider_status(status: str | None) -> PaymentStatus:
    if not status:
        return PaymentStatus.PENDING
    return _PROVIDER_STATUS.get(status.upper(), PaymentStatus.PENDING)


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value())


# ── Payment ─────────────────────────────────────


class HttpPaymentGateway(PaymentGateway):
    """Billing API: ``POST /billing/create`` and ``GET /billing/list``."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(
            base_url=base_url, headers=headers, timeout=timeout
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def process_payment(self, request: PaymentRequest) -> PaymentResult:
        resp = await self._client.post(
            "/billing/create",
            json={
                "frequency": "ONE_TIME",
                "methods": [request.payment_method.upper()],
                "products": [
                    {
                        "externalId": str(request.order_id),
                        "name": f"Order {request.order_id}",
                        "quantity": 1,
                        "price": to_cents(request.amount),
                    }
                ],
                "customer": {"email": request.customer_email},
            },
        )
        resp.raise_for_status()
        body = resp.json()

        data = body.get("data")
        if body.get("error") or not data:
            return PaymentResult.failed(
                request.amount, body.get("error") or "Unknown error from payment provider"
            )

        status = map_provider_status(data.get("status"))
        amount = data.get("amount")
        return PaymentResult(
            payment_id=data.get("id"),
            status=status,
            message=(
                "Payment processed successfully"
                if status is PaymentStatus.SUCCESS
                else f"Payment {status.value.lower()}"
            ),
            amount=Decimal(amount) / 100 if amount is not None else request.amount,
        )

    async def refund_payment(self, payment_id: str, amount: Decimal) -> PaymentResult:
        logger.warning("Refund requested for payment %s but the provider offers none", payment_id)
        return PaymentResult.failed(amount, "Refund not supported by provider")

    async def check_payment_status(self, payment_id: str) -> PaymentStatus:
        resp = await self._client.get("/billing/list")
        resp.raise_for_status()
        for billing in resp.json().get("data") or []:
            if billing.get("id") == payment_id:
                return map_provider_status(billing.get("status"))
        return PaymentStatus.PENDING


class SimulatedPaymentGateway(PaymentGateway):
    """Approves every payment up to ``decline_above`` and remembers the result."""

    def __init__(self, decline_above: Decimal | None = None) -> None:
        self._decline_above = decline_above
        self._statuses: dict[str, PaymentStatus] = {}

    async def process_payment(self, request: PaymentRequest) -> PaymentResult:
        if self._decline_above is not None and request.amount > self._decline_above:
            return PaymentResult.failed(request.amount, "Declined by simulated provider")
        payment_id = f"sim_{uuid4().hex}"
        self._statuses[payment_id] = PaymentStatus.SUCCESS
        return PaymentResult(
            payment_id=payment_id,
            status=PaymentStatus.SUCCESS,
            message="Payment processed successfully",
            amount=request.amount,
        )

    async def refund_payment(self, payment_id: str, amount: Decimal) -> PaymentResult:
        if payment_id not in self._statuses:
            return PaymentResult.failed(amount, f"Unknown payment {payment_id}")
        self._statuses[payment_id] = PaymentStatus.REFUNDED
        return PaymentResult(payment_id=payment_id, status=PaymentStatus.REFUNDED, amount=amount)

    async def check_payment_status(self, payment_id: str) -> PaymentStatus:
        return self._statuses.get(payment_id, PaymentStatus.PENDING)


# ── Risk ────────────────────────────────────────

_SYSTEM_PROMPT = "You are a risk analysis assistant. Always respond with only 'LOW' or 'HIGH'."


def build_risk_prompt(request: RiskAnalysisRequest) -> str:
    return (
        "You are a risk analysis system for e-commerce orders. "
        "Analyze the following order and classify the risk.\n\n"
        "Order Information:\n"
        f"- Order ID: {request.order_id}\n"
        f"- Amount: {request.order_amount}\n"
        f"- Customer ID: {request.customer_id}\n"
        f"- Customer Email: {request.customer_email}\n"
        f"- Payment Method: {request.payment_method}\n"
        f"- Additional Context: {request.additional_context}\n\n"
        "Return 'LOW' if the order appears safe and normal. Return 'HIGH' if there are "
        "risk indicators such as unusually high value for new customers, suspicious "
        "payment patterns or other fraud indicators.\n\n"
        "Line 1: ONLY the word LOW or HIGH.\n"
        "Line 2: A short explanation (max 2 sentences)."
    )


def parse_risk_level(content: str | None) -> RiskLevel:
    if not content or not content.strip():
        return RiskLevel.PENDING
    first_line = content.strip().splitlines()[0].upper()
    if "LOW" in first_line:
        return RiskLevel.LOW
    if "HIGH" in first_line:
        return RiskLevel.HIGH
    return RiskLevel.PENDING


class HttpRiskAnalysis(RiskAnalysis):
    """OpenAI-compatible ``POST /chat/completions``."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        model: str = "gpt-3.5-turbo",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._model = model
        self._client = client or httpx.AsyncClient(
            base_url=base_url, headers=headers, timeout=timeout
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def analyze_risk(self, request: RiskAnalysisRequest) -> RiskAnalysisResult:
        resp = await self._client.post(
            "/chat/completions",
            json={
                "model": self._model,
                "messages": [
                    {"role": "system", "content": _SYSTEM_PROMPT},
                    {"role": "user", "content": build_risk_prompt(request)},
                ],
                "temperature": 0.0,
                "max_tokens": 60,
            },
        )
        resp.raise_for_status()
        choices = resp.json().get("choices") or []
        if not choices:
            return RiskAnalysisResult.pending("Invalid response from risk service")
        content = (choices[0].get("message") or {}).get("content")
        if not content or not content.strip():
            return RiskAnalysisResult.pending("Empty response from risk service")
        return RiskAnalysisResult(risk_level=parse_risk_level(content), reason=content.strip())


class SimulatedRiskAnalysis(RiskAnalysis):
    """HIGH above ``high_risk_threshold``, LOW otherwise."""

    def __init__(self, high_risk_threshold: Decimal = Decimal("5000")) -> None:
        self._threshold = high_risk_threshold

    async def analyze_risk(self, request: RiskAnalysisRequest) -> RiskAnalysisResult:
        if request.order_amount > self._threshold:
            return RiskAnalysisResult(
                risk_level=RiskLevel.HIGH,
                reason=f"Amount above {self._threshold}",
            )
        return RiskAnalysisResult(risk_level=RiskLevel.LOW, reason="Amount within normal range")
