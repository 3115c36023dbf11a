"""Retry execution and recovery-operation exports."""

from submission_resilience.recovery.executor import RetryExecutor
from submission_resilience.recovery.models import (
    ManualRetryResult,
    OperationStatus,
    RetryOperation,
    RetryPolicy,
    RetryStatistics,
)

__all__ = [
    "ManualRetryResult",
    "OperationStatus",
    "RetryExecutor",
    "RetryOperation",
    "RetryPolicy",
    "RetryStatistics",
]
