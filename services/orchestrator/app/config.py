"""
Orchestrator Service — settings

Read once at startup from the process environment.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

from .messaging import BrokerType

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean, got {value!r}")


def _number(name: str, value: str, kind: type):
    try:
        return kind(value)
    except ValueError:
        raise ValueError(f"{name} must be {kind.__name__}, got {value!r}") from None


class StorageBackend(str, Enum):
    SQL = "SQL"
    IN_MEMORY = "IN_MEMORY"

    @classmethod
    def parse(cls, value: str) -> "StorageBackend":
        try:
            return cls(value.strip().upper())
        except ValueError:
            raise ValueError(f"Unsupported storage backend: {value}") from None


@dataclass(frozen=True)
class Settings:
    storage_backend: StorageBackend = StorageBackend.SQL
    database_url: str = "sqlite+aiosqlite:///./orchestrator.db"
    redis_url: str = "redis://localhost:6379"
    message_broker: BrokerType = BrokerType.IN_MEMORY
    risk_analysis_enabled: bool = True
    default_currency: str = "BRL"
    payment_gateway_url: str | None = None
    payment_gateway_api_key: str | None = None
    risk_analysis_url: str | None = None
    risk_analysis_api_key: str | None = None
    risk_analysis_model: str = "gpt-3.5-turbo"
    http_timeout_seconds: float = 10.0
    retry_max_attempts: int = 3
    retry_initial_delay: float = 0.5
    circuit_failure_threshold: int = 5
    circuit_recovery_timeout: float = 30.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            storage_backend=StorageBackend.parse(env.get("STORAGE_BACKEND", "SQL")),
            database_url=env.get("DATABASE_URL", cls.database_url),
            redis_url=env.get("REDIS_URL", cls.redis_url),
            message_broker=BrokerType.parse(env.get("MESSAGE_BROKER", "IN_MEMORY")),
            risk_analysis_enabled=_bool(
                "RISK_ANALYSIS_ENABLED", env.get("RISK_ANALYSIS_ENABLED", "true")
            ),
            default_currency=env.get("DEFAULT_CURRENCY", cls.default_currency),
            payment_gateway_url=env.get("PAYMENT_GATEWAY_URL") or None,
            payment_gateway_api_key=env.get("PAYMENT_GATEWAY_API_KEY") or None,
            risk_analysis_url=env.get("RISK_ANALYSIS_URL") or None,
            risk_analysis_api_key=env.get("RISK_ANALYSIS_API_KEY") or None,
            risk_analysis_model=env.get("RISK_ANALYSIS_MODEL", cls.risk_analysis_model),
            http_timeout_seconds=_number(
                "HTTP_TIMEOUT_SECONDS", env.get("HTTP_TIMEOUT_SECONDS", "10.0"), float
            ),
            retry_max_attempts=_number(
                "RETRY_MAX_ATTEMPTS", env.get("RETRY_MAX_ATTEMPTS", "3"), int
            ),
            retry_initial_delay=_number(
                "RETRY_INITIAL_DELAY", env.get("RETRY_INITIAL_DELAY", "0.5"), float
            ),
            circuit_failure_threshold=_number(
                "CIRCUIT_FAILURE_THRESHOLD", env.get("CIRCUIT_FAILURE_THRESHOLD", "5"), int
            ),
            circuit_recovery_timeout=_number(
                "CIRCUIT_RECOVERY_TIMEOUT", env.get("CIRCUIT_RECOVERY_TIMEOUT", "30.0"), float
            ),
            log_level=env.get("LOG_LEVEL", cls.log_level).upper(),
        )
