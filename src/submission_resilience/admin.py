"""Administrative queries and actions over the resilience layer."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import TYPE_CHECKING

import structlog

from submission_resilience.exceptions import (
    InvalidOperationStateError,
    OperationNotFoundError,
)
from submission_resilience.health.models import SystemHealth, aggregate_status
from submission_resilience.recovery.models import OperationStatus

if TYPE_CHECKING:
    from datetime import datetime

    from submission_resilience.circuit_breaker import (
        CircuitBreakerRegistry,
        CircuitBreakerState,
    )
    from submission_resilience.config import RetentionSettings
    from submission_resilience.errors import ErrorFilter, ErrorStatistics, StandardError
    from submission_resilience.handler import ErrorHandler
    from submission_resilience.health.models import HealthCheckResult
    from submission_resilience.health.monitor import HealthMonitor
    from submission_resilience.recovery.executor import RetryExecutor
    from submission_resilience.recovery.models import (
        ManualRetryResult,
        RetryOperation,
        RetryStatistics,
    )
    from submission_resilience.store import PurgeReport, RecoveryStore

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_CANCELLABLE = frozenset({OperationStatus.PENDING, OperationStatus.FAILED})


class RecoveryAdmin:
    """Operator-facing facade used by the HTTP API and the CLI."""

    def __init__(
        self,
        store: RecoveryStore,
        registry: CircuitBreakerRegistry,
        executor: RetryExecutor,
        monitor: HealthMonitor,
        handler: ErrorHandler,
        retention: RetentionSettings,
    ) -> None:
        self._store = store
        self._registry = registry
        self._executor = executor
        self._monitor = monitor
        self._handler = handler
        self._retention = retention

    # -- errors -------------------------------------------------------------

    async def list_unresolved_errors(
        self, error_filter: ErrorFilter | None = None
    ) -> list[StandardError]:
        return await asyncio.to_thread(self._store.list_unresolved_errors, error_filter)

    async def resolve_error(self, error_id: str) -> bool:
        """Resolve an error. Returns ``False`` if it was already resolved.

        Raises:
            OperationNotFoundError: If no error has this id.
        """
        error = await asyncio.to_thread(self._store.get_error, error_id)
        if error is None:
            msg = f"Error not found: {error_id}"
            raise OperationNotFoundError(msg)
        return await self._handler.resolve(error_id)

    async def error_statistics(self, hours: int = 24) -> list[ErrorStatistics]:
        return await asyncio.to_thread(
            self._store.error_statistics, timedelta(hours=hours)
        )

    # -- recovery operations ------------------------------------------------

    async def list_recovery_operations(
        self, status: OperationStatus | None = None, limit: int = 200
    ) -> list[RetryOperation]:
        return await asyncio.to_thread(
            self._store.list_recovery_operations, status, limit
        )

    async def manual_retry(self, operation_id: str) -> ManualRetryResult:
        return await self._executor.manual_retry(operation_id)

    async def cancel_operation(self, operation_id: str) -> RetryOperation:
        """Cancel a pending or failed operation.

        Raises:
            OperationNotFoundError: Unknown operation id.
            InvalidOperationStateError: The operation is in any other status.
        """
        cancelled = await asyncio.to_thread(
            self._store.transition_operation,
            operation_id,
            _CANCELLABLE,
            OperationStatus.CANCELLED,
        )
        if cancelled is not None:
            logger.info("recovery_operation_cancelled", operation_id=operation_id)
            return cancelled

        current = await asyncio.to_thread(self._store.get_operation, operation_id)
        if current is None:
            msg = f"Recovery operation not found: {operation_id}"
            raise OperationNotFoundError(msg)
        msg = (
            f"Operation {operation_id} is {current.status.value}; "
            "only pending or failed operations can be cancelled"
        )
        raise InvalidOperationStateError(msg)

    async def retry_statistics(self, hours: int = 24) -> list[RetryStatistics]:
        return await asyncio.to_thread(
            self._store.retry_statistics, timedelta(hours=hours)
        )

    # -- circuit breakers ---------------------------------------------------

    async def get_circuit_breaker_states(self) -> list[CircuitBreakerState]:
        """Persisted breaker rows overlaid with the live in-memory state."""
        persisted = await asyncio.to_thread(self._store.get_circuit_breaker_states)
        merged = {**persisted, **self._registry.snapshot()}
        return [merged[name] for name in sorted(merged)]

    async def reset_circuit_breaker(self, operation_name: str) -> CircuitBreakerState:
        state = self._registry.reset(operation_name)
        await self._executor.drain()
        return state

    # -- health -------------------------------------------------------------

    async def current_health(self) -> SystemHealth:
        """Latest health per component, falling back to persisted results."""
        health = self._monitor.latest()
        if health.components:
            return health
        latest = await asyncio.to_thread(self._store.latest_health_results)
        return SystemHealth(
            overall=aggregate_status(result.status for result in latest.values()),
            checked_at=max((r.checked_at for r in latest.values()), default=None),
            components=latest,
        )

    async def get_health_history(
        self,
        component: str | None = None,
        window: timedelta | None = timedelta(hours=24),
    ) -> list[HealthCheckResult]:
        return await asyncio.to_thread(
            self._store.get_health_history, component, window
        )

    # -- retention ----------------------------------------------------------

    async def purge_expired(self, now: datetime | None = None) -> PurgeReport:
        return await asyncio.to_thread(
            self._store.purge_expired, self._retention, now
        )
