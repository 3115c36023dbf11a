"""Models used by the retry executor and recovery operations."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, model_validator


class RetryPolicy(BaseModel):
    """Retry/backoff policy for one dependency or operation.

    ``max_retries`` is the total attempt budget: a policy with
    ``max_retries=3`` invokes the operation at most three times.
    """

    max_retries: int = Field(default=3, ge=1, le=20)
    base_delay_ms: float = Field(default=1000.0, ge=0.0)
    max_delay_ms: float = Field(default=10_000.0, ge=0.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    jitter: float = Field(
        default=0.25,
        ge=0.0,
        le=1.0,
        description="Fraction of the computed delay that may be randomly removed.",
    )
    attempt_timeout_seconds: float | None = Field(default=30.0, gt=0.0)

    @model_validator(mode="after")
    def _check_delays(self) -> RetryPolicy:
        if self.max_delay_ms < self.base_delay_ms:
            msg = "max_delay_ms must be >= base_delay_ms"
            raise ValueError(msg)
        return self

    def delay_ms(self, attempt: int) -> float:
        """Un-jittered delay that follows ``attempt`` (1-based)."""
        raw = self.base_delay_ms * self.backoff_multiplier ** max(attempt - 1, 0)
        return min(raw, self.max_delay_ms)

    def delay_schedule(self) -> list[float]:
        """Un-jittered delays for attempts ``1..max_retries``."""
        return [self.delay_ms(attempt) for attempt in range(1, self.max_retries + 1)]


class OperationStatus(StrEnum):
    """Lifecycle of a durable recovery operation."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABANDONED = "abandoned"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {OperationStatus.SUCCEEDED, OperationStatus.ABANDONED, OperationStatus.CANCELLED}
)


def generate_operation_id() -> str:
    return f"op_{uuid.uuid4().hex[:16]}"


def _now() -> datetime:
    return datetime.now(tz=UTC)


class RetryOperation(BaseModel):
    """One attempt-series for a single logical unit of work."""

    id: str = Field(default_factory=generate_operation_id)
    operation_name: str
    policy_name: str | None = None
    attempt_count: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=1, ge=1)
    status: OperationStatus = OperationStatus.PENDING
    next_attempt_at: datetime | None = None
    last_error_id: str | None = None
    context_payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ManualRetryResult(BaseModel):
    """Outcome of an administrative re-trigger."""

    success: bool
    message: str
    operation: RetryOperation | None = None
    error_id: str | None = None
    result: Any = None


class RetryStatistics(BaseModel):
    """Retry outcomes grouped by operation name."""

    operation_name: str
    total: int = Field(default=0, ge=0)
    succeeded: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    average_attempts: float = Field(default=0.0, ge=0.0)
    success_rate: float = Field(default=0.0, ge=0.0, le=100.0)
