"""Unit tests for the administrative facade."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import pytest

from submission_resilience.admin import RecoveryAdmin
from submission_resilience.circuit_breaker import CircuitBreakerState, CircuitState
from submission_resilience.config import RetentionSettings
from submission_resilience.errors import ErrorCode, ErrorFilter, ErrorKind
from submission_resilience.exceptions import (
    InvalidOperationStateError,
    OperationNotFoundError,
)
from submission_resilience.health import HealthMonitor
from submission_resilience.health.models import (
    HealthCheckResult,
    HealthStatus,
    ProbeOutcome,
)
from submission_resilience.recovery.models import OperationStatus, RetryOperation

if TYPE_CHECKING:
    from conftest import FakeClock

    from submission_resilience.circuit_breaker import CircuitBreakerRegistry
    from submission_resilience.handler import ErrorHandler
    from submission_resilience.recovery import RetryExecutor
    from submission_resilience.store import RecoveryStore


@pytest.fixture()
def monitor(store: RecoveryStore) -> HealthMonitor:
    return HealthMonitor(store=store)


@pytest.fixture()
def admin(
    store: RecoveryStore,
    registry: CircuitBreakerRegistry,
    executor: RetryExecutor,
    monitor: HealthMonitor,
    handler: ErrorHandler,
) -> RecoveryAdmin:
    return RecoveryAdmin(store, registry, executor, monitor, handler, RetentionSettings())


class TestErrors:
    @pytest.mark.asyncio
    async def test_list_and_resolve(
        self, admin: RecoveryAdmin, handler: ErrorHandler
    ) -> None:
        first = await handler.handle(
            ErrorKind.INTEGRATION,
            ErrorCode.GEMINI_API_ERROR,
            "quota",
            context={"operation_name": "gemini"},
        )
        await handler.handle(ErrorKind.TEMPORARY, ErrorCode.TIMEOUT, "slow")

        listed = await admin.list_unresolved_errors(ErrorFilter(operation_name="gemini"))
        assert [e.id for e in listed] == [first.id]

        assert await admin.resolve_error(first.id) is True
        assert await admin.resolve_error(first.id) is False
        remaining = await admin.list_unresolved_errors()
        assert first.id not in {e.id for e in remaining}

    @pytest.mark.asyncio
    async def test_resolve_unknown(self, admin: RecoveryAdmin) -> None:
        with pytest.raises(OperationNotFoundError):
            await admin.resolve_error("err_missing")

    @pytest.mark.asyncio
    async def test_statistics(self, admin: RecoveryAdmin, handler: ErrorHandler) -> None:
        for _ in range(2):
            await handler.handle(ErrorKind.TEMPORARY, ErrorCode.TIMEOUT, "slow")
        [stats] = await admin.error_statistics(hours=1)
        assert stats.code is ErrorCode.TIMEOUT
        assert stats.count == 2


class TestOperations:
    @pytest.mark.asyncio
    async def test_cancel_failed(self, admin: RecoveryAdmin, store: RecoveryStore) -> None:
        op = store.create_operation(
            RetryOperation(operation_name="docgen", status=OperationStatus.FAILED)
        )
        cancelled = await admin.cancel_operation(op.id)
        assert cancelled.status is OperationStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_refused_for_succeeded(
        self, admin: RecoveryAdmin, store: RecoveryStore
    ) -> None:
        op = store.create_operation(
            RetryOperation(operation_name="docgen", status=OperationStatus.SUCCEEDED)
        )
        with pytest.raises(InvalidOperationStateError, match="succeeded"):
            await admin.cancel_operation(op.id)

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, admin: RecoveryAdmin) -> None:
        with pytest.raises(OperationNotFoundError):
            await admin.cancel_operation("op_missing")

    @pytest.mark.asyncio
    async def test_list_by_status(self, admin: RecoveryAdmin, store: RecoveryStore) -> None:
        store.create_operation(
            RetryOperation(operation_name="docgen", status=OperationStatus.FAILED)
        )
        store.create_operation(
            RetryOperation(operation_name="email", status=OperationStatus.SUCCEEDED)
        )
        failed = await admin.list_recovery_operations(OperationStatus.FAILED)
        assert [op.operation_name for op in failed] == ["docgen"]
        assert len(await admin.list_recovery_operations()) == 2

    @pytest.mark.asyncio
    async def test_manual_retry_delegates(
        self, admin: RecoveryAdmin, executor: RetryExecutor, store: RecoveryStore
    ) -> None:
        op = store.create_operation(
            RetryOperation(
                operation_name="email",
                status=OperationStatus.FAILED,
                context_payload={"to": "a@example.test"},
            )
        )

        async def send(payload: dict[str, Any]) -> str:
            return f"sent to {payload['to']}"

        executor.register_operation("email", send)
        result = await admin.manual_retry(op.id)

        assert result.success is True
        assert result.result == "sent to a@example.test"

    @pytest.mark.asyncio
    async def test_retry_statistics(self, admin: RecoveryAdmin, store: RecoveryStore) -> None:
        store.create_operation(
            RetryOperation(
                operation_name="docgen",
                status=OperationStatus.SUCCEEDED,
                attempt_count=2,
            )
        )
        [stats] = await admin.retry_statistics(hours=1)
        assert stats.success_rate == 100.0


class TestCircuitBreakers:
    @pytest.mark.asyncio
    async def test_states_merge_persisted_and_live(
        self,
        admin: RecoveryAdmin,
        registry: CircuitBreakerRegistry,
        store: RecoveryStore,
    ) -> None:
        store.save_circuit_state(
            CircuitBreakerState(
                operation_name="action_network",
                state=CircuitState.OPEN,
                consecutive_failures=5,
            )
        )
        registry.try_acquire("docgen")

        states = await admin.get_circuit_breaker_states()

        assert [s.operation_name for s in states] == ["action_network", "docgen"]
        assert states[0].state is CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_reset_persists(
        self,
        admin: RecoveryAdmin,
        registry: CircuitBreakerRegistry,
        store: RecoveryStore,
        clock: FakeClock,
    ) -> None:
        for _ in range(3):
            registry.record_failure("docgen")
        clock.advance(5)

        state = await admin.reset_circuit_breaker("docgen")

        assert state.state is CircuitState.CLOSED
        persisted = store.get_circuit_breaker_states()
        assert persisted["docgen"].state is CircuitState.CLOSED


class TestHealth:
    @pytest.mark.asyncio
    async def test_current_health_from_monitor(
        self, admin: RecoveryAdmin, monitor: HealthMonitor
    ) -> None:
        async def degraded() -> ProbeOutcome:
            return ProbeOutcome(status=HealthStatus.DEGRADED, detail="slow")

        monitor.register("openai", degraded)
        await monitor.run_cycle()

        health = await admin.current_health()
        assert health.overall is HealthStatus.DEGRADED

    @pytest.mark.asyncio
    async def test_current_health_falls_back_to_store(
        self, admin: RecoveryAdmin, store: RecoveryStore
    ) -> None:
        store.append_health_result(
            HealthCheckResult(component="email", status=HealthStatus.UNHEALTHY)
        )
        health = await admin.current_health()
        assert health.overall is HealthStatus.UNHEALTHY
        assert set(health.components) == {"email"}

    @pytest.mark.asyncio
    async def test_empty_health_is_unknown(self, admin: RecoveryAdmin) -> None:
        health = await admin.current_health()
        assert health.overall is HealthStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_history(self, admin: RecoveryAdmin, store: RecoveryStore) -> None:
        now = datetime.now(tz=UTC)
        store.append_health_result(
            HealthCheckResult(
                component="email",
                status=HealthStatus.HEALTHY,
                checked_at=now - timedelta(hours=30),
            )
        )
        store.append_health_result(
            HealthCheckResult(component="email", status=HealthStatus.DEGRADED)
        )
        history = await admin.get_health_history("email")
        assert [r.status for r in history] == [HealthStatus.DEGRADED]
        assert len(await admin.get_health_history("email", window=None)) == 2


class TestRetention:
    @pytest.mark.asyncio
    async def test_purge(self, admin: RecoveryAdmin, store: RecoveryStore) -> None:
        now = datetime.now(tz=UTC)
        store.create_operation(
            RetryOperation(
                operation_name="docgen",
                status=OperationStatus.FAILED,
                updated_at=now - timedelta(days=4),
            )
        )
        report = await admin.purge_expired()
        assert report.operations_abandoned == 1
