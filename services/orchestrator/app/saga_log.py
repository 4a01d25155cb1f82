"""
Orchestrator Service — saga execution record

Audit trail of one orchestrator run. Steps are only ever appended, the record
is persisted after each step transition, and it reaches a terminal status
(COMPLETED, FAILED or COMPENSATED) exactly once. Nothing reads it back to
drive recovery; it is observability only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from .aggregate import utcnow
from .exceptions import InvalidStateError

STEP_ORDER_CREATED = "ORDER_CREATED"
STEP_PAYMENT_PROCESSED = "PAYMENT_PROCESSED"
STEP_RISK_ANALYZED = "RISK_ANALYZED"


class SagaStatus(str, Enum):
    STARTED = "STARTED"
    ORDER_CREATED = "ORDER_CREATED"
    PAYMENT_PROCESSED = "PAYMENT_PROCESSED"
    RISK_ANALYZED = "RISK_ANALYZED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    COMPENSATED = "COMPENSATED"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL

    @property
    def is_in_progress(self) -> bool:
        return not self.is_terminal


_TERMINAL = frozenset({SagaStatus.COMPLETED, SagaStatus.FAILED, SagaStatus.COMPENSATED})


class StepStatus(str, Enum):
    STARTED = "STARTED"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


def _elapsed_ms(start: datetime | None, end: datetime | None) -> int | None:
    if start is None or end is None:
        return None
    return int((end - start).total_seconds() * 1000)


@dataclass
class SagaStep:
    saga_execution_id: UUID
    step_name: str
    id: UUID = field(default_factory=uuid4)
    status: StepStatus = StepStatus.STARTED
    error_message: str | None = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    duration_ms: int | None = None

    def finish(self, success: bool, error_message: str | None = None) -> None:
        self.status = StepStatus.SUCCESS if success else StepStatus.FAILED
        self.error_message = error_message
        self.completed_at = utcnow()
        self.duration_ms = _elapsed_ms(self.started_at, self.completed_at)


@dataclass
class SagaExecution:
    id: UUID = field(default_factory=uuid4)
    idempotency_key: str | None = None
    order_id: UUID | None = None
    status: SagaStatus = SagaStatus.STARTED
    current_step: str | None = None
    error_message: str | None = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    duration_ms: int | None = None
    steps: list[SagaStep] = field(default_factory=list)

    @classmethod
    def start(cls, idempotency_key: str | None = None) -> "SagaExecution":
        return cls(idempotency_key=idempotency_key or None)

    def start_step(self, step_name: str) -> SagaStep:
        self._require_open()
        step = SagaStep(saga_execution_id=self.id, step_name=step_name)
        self.steps.append(step)
        self.current_step = step_name
        return step

    def complete_step(
        self, step_name: str, success: bool, error_message: str | None = None
    ) -> SagaStep:
        """Closes the open (STARTED) step named ``step_name``."""
        for step in reversed(self.steps):
            if step.step_name == step_name and step.status is StepStatus.STARTED:
                step.finish(success, error_message)
                return step
        raise InvalidStateError(
            StepStatus.SUCCESS if success else StepStatus.FAILED,
            StepStatus.STARTED,
            message=f"No open step {step_name} on saga {self.id}",
        )

    def advance(self, status: SagaStatus) -> None:
        self._require_open()
        if status.is_terminal:
            raise InvalidStateError(
                self.status, status, message="Use finish() for terminal statuses"
            )
        self.status = status

    def finish(self, status: SagaStatus, error_message: str | None = None) -> None:
        self._require_open()
        if not status.is_terminal:
            raise InvalidStateError(self.status, status, _TERMINAL)
        self.status = status
        if error_message is not None:
            self.error_message = error_message
        self.completed_at = utcnow()
        self.duration_ms = _elapsed_ms(self.started_at, self.completed_at)

    def step(self, step_name: str) -> SagaStep | None:
        for step in reversed(self.steps):
            if step.step_name == step_name:
                return step
        return None

    def _require_open(self) -> None:
        if self.status.is_terminal:
            raise InvalidStateError(
                self.status,
                None,
                message=f"Saga {self.id} already finished with status {self.status.value}",
            )
