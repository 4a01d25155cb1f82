"""
Orchestrator Service — exception taxonomy

Only ValidationError, NotFoundError and InvalidStateError are meant to reach
a caller as explicit failures. External-service failures never show up here:
the resilient ports turn them into FAILED / PENDING values instead.
"""

from typing import Any, Iterable


class DomainError(Exception):
    """Base class for every error raised by the orchestrator core."""


class ValidationError(DomainError):
    """Malformed or missing input, raised before anything is persisted."""


class NotFoundError(DomainError):
    def __init__(self, resource: str, key: Any) -> None:
        self.resource = resource
        self.key = key
        super().__init__(f"{resource} not found: {key}")


class InvalidStateError(DomainError):
    """A transition or operation the current status does not allow."""

    def __init__(
        self,
        current: Any,
        requested: Any,
        allowed: Iterable[Any] = (),
        message: str | None = None,
    ) -> None:
        self.current = current
        self.requested = requested
        self.allowed = frozenset(allowed)
        names = sorted(getattr(a, "value", str(a)) for a in self.allowed)
        super().__init__(
            message
            or (
                f"Cannot transition from {_name(current)} to {_name(requested)}. "
                f"Allowed transitions: {names}"
            )
        )


class SagaStepError(DomainError):
    """Any failure of the ORDER_CREATED or PAYMENT_PROCESSED step."""

    def __init__(self, step: str, message: str) -> None:
        self.step = step
        super().__init__(message)


class DuplicateIdempotencyKeyError(DomainError):
    def __init__(self, idempotency_key: str) -> None:
        self.idempotency_key = idempotency_key
        super().__init__(f"Saga execution already exists for key: {idempotency_key}")


def _name(value: Any) -> str:
    return getattr(value, "value", str(value))
