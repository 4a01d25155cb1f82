"""
Orchestrator Service — resilient external ports

Retry with exponential backoff plus a circuit breaker, wrapped around the
payment and risk providers. The wrappers own the fail-open contract: no
provider exception ever reaches a use case.

    use case ──▶ Resilient*Port ──▶ CircuitBreaker ──▶ retry_async ──▶ provider
                     │
                     └── on any failure: FAILED payment / PENDING status / PENDING risk
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import TypeVar

import httpx

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

T = TypeVar("T")


class CircuitOpenError(Exception):
    def __init__(self, name: str, retry_at: float) -> None:
        super().__init__(f"Circuit breaker '{name}' is open")
        self.name = name
        self.retry_at = retry_at


class RetryExhaustedError(Exception):
    def __init__(self, name: str, attempts: int, last_error: Exception | None) -> None:
        super().__init__(f"{name} failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


# ── Retry ───────────────────────────────────────


@dataclass(frozen=True)
class RetryConfig:
    """``max_attempts`` counts the first call, so 3 means up to two retries."""

    max_attempts: int = 3
    initial_delay: float = 0.5
    max_delay: float = 10.0
    exponential_base: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.initial_delay < 0:
            raise ValueError(f"initial_delay must be >= 0, got {self.initial_delay}")
        if self.max_delay < self.initial_delay:
            raise ValueError(
                f"max_delay ({self.max_delay}) must be >= initial_delay ({self.initial_delay})"
            )
        if self.exponential_base < 1.0:
            raise ValueError(f"exponential_base must be >= 1.0, got {self.exponential_base}")


def calculate_backoff(attempt: int, config: RetryConfig) -> float:
    """Delay after the ``attempt``-th failure (0-based)."""
    return min(config.initial_delay * (config.exponential_base ** attempt), config.max_delay)


def is_transient(error: BaseException) -> bool:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code >= 500
    return isinstance(error, (httpx.TransportError, ConnectionError, TimeoutError))


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    retry_on: Callable[[BaseException], bool] = is_transient,
    name: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    config = config or RetryConfig()
    last_error: Exception | None = None
    for attempt in range(config.max_attempts):
        try:
            return await operation()
        except Exception as e:
            if not retry_on(e):
                raise
            last_error = e
            if attempt + 1 < config.max_attempts:
                delay = calculate_backoff(attempt, config)
                logger.warning(
                    "Retrying %s after failure (attempt %d/%d, delay %.2fs): %s",
                    name, attempt + 1, config.max_attempts, delay, e,
                )
                await sleep(delay)
    logger.error("All %d attempts of %s failed: %s", config.max_attempts, name, last_error)
    raise RetryExhaustedError(name, config.max_attempts, last_error)


# ── Circuit breaker ─────────────────────────────


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """
    CLOSED:    calls flow; ``failure_threshold`` consecutive failures open it.
    OPEN:      calls are rejected with CircuitOpenError until
               ``recovery_timeout`` seconds have passed.
    HALF_OPEN: a single trial call; success closes, failure reopens.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError(f"failure_threshold must be >= 1, got {failure_threshold}")
        if recovery_timeout <= 0:
            raise ValueError(f"recovery_timeout must be positive, got {recovery_timeout}")
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: float | None = None
        self._trial_in_flight = False
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        if (
            self._state is CircuitState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.recovery_timeout
        ):
            return CircuitState.HALF_OPEN
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        await self._before_call()
        try:
            result = await operation()
        except Exception:
            await self._on_failure()
            raise
        await self._on_success()
        return result

    async def _before_call(self) -> None:
        async with self._lock:
            state = self.state
            if state is CircuitState.CLOSED:
                return
            if state is CircuitState.HALF_OPEN and not self._trial_in_flight:
                if self._state is not CircuitState.HALF_OPEN:
                    logger.info("Circuit breaker %s entering HALF_OPEN", self.name)
                self._state = CircuitState.HALF_OPEN
                self._trial_in_flight = True
                return
            retry_at = (self._opened_at or self._clock()) + self.recovery_timeout
            raise CircuitOpenError(self.name, retry_at)

    async def _on_success(self) -> None:
        async with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                logger.info("Circuit breaker %s closed after successful trial call", self.name)
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._opened_at = None
            self._trial_in_flight = False

    async def _on_failure(self) -> None:
        async with self._lock:
            self._failures += 1
            if self._state is CircuitState.HALF_OPEN:
                self._open()
                logger.warning("Circuit breaker %s reopened after failed trial call", self.name)
            elif self._failures >= self.failure_threshold:
                self._open()
                logger.warning(
                    "Circuit breaker %s opened after %d consecutive failures",
                    self.name, self._failures,
                )

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False


# ── Resilient ports ─────────────────────────────


class _Guard:
    def __init__(self, breaker: CircuitBreaker, retry: RetryConfig | None) -> None:
        self.breaker = breaker
        self.retry = retry or RetryConfig()

    async def run(self, name: str, operation: Callable[[], Awaitable[T]]) -> T:
        return await self.breaker.call(
            lambda: retry_async(operation, self.retry, name=name)
        )


class ResilientPaymentGateway(PaymentGateway):
    def __init__(
        self,
        inner: PaymentGateway,
        breaker: CircuitBreaker | None = None,
        retry: RetryConfig | None = None,
    ) -> None:
        self._inner = inner
        self._guard = _Guard(breaker or CircuitBreaker("paymentGateway"), retry)

    @property
    def breaker(self) -> CircuitBreaker:
        return self._guard.breaker

    async def process_payment(self, request: PaymentRequest) -> PaymentResult:
        try:
            return await self._guard.run(
                "process_payment", lambda: self._inner.process_payment(request)
            )
        except CircuitOpenError:
            logger.warning("Payment gateway circuit open; failing payment for order %s", request.order_id)
            return PaymentResult.failed(
                request.amount, "Payment gateway temporarily unavailable (circuit breaker open)"
            )
        except Exception as e:
            logger.warning("Payment for order %s degraded to FAILED: %s", request.order_id, e)
            return PaymentResult.failed(request.amount, f"Error: {e}")

    async def refund_payment(self, payment_id: str, amount: Decimal) -> PaymentResult:
        try:
            return await self._guard.run(
                "refund_payment", lambda: self._inner.refund_payment(payment_id, amount)
            )
        except Exception as e:
            logger.warning("Refund of payment %s degraded to FAILED: %s", payment_id, e)
            return PaymentResult.failed(amount, "Refund gateway temporarily unavailable")

    async def check_payment_status(self, payment_id: str) -> PaymentStatus:
        try:
            return await self._guard.run(
                "check_payment_status", lambda: self._inner.check_payment_status(payment_id)
            )
        except Exception as e:
            logger.warning("Status check of payment %s degraded to PENDING: %s", payment_id, e)
            return PaymentStatus.PENDING


class ResilientRiskAnalysis(RiskAnalysis):
    def __init__(
        self,
        inner: RiskAnalysis,
        breaker: CircuitBreaker | None = None,
        retry: RetryConfig | None = None,
    ) -> None:
        self._inner = inner
        self._guard = _Guard(breaker or CircuitBreaker("riskAnalysis"), retry)

    @property
    def breaker(self) -> CircuitBreaker:
        return self._guard.breaker

    async def analyze_risk(self, request: RiskAnalysisRequest) -> RiskAnalysisResult:
        try:
            return await self._guard.run(
                "analyze_risk", lambda: self._inner.analyze_risk(request)
            )
        except CircuitOpenError:
            return RiskAnalysisResult.pending(
                "Risk analysis temporarily unavailable (circuit breaker open)"
            )
        except Exception as e:
            logger.warning("Risk analysis for order %s degraded to PENDING: %s", request.order_id, e)
            return RiskAnalysisResult.pending(f"Error: {e}")
