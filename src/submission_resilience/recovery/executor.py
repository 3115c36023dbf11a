"""Retry executor: runs unreliable operations under a policy and a breaker."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, NamedTuple, TypeVar

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from submission_resilience.errors import ErrorCode, ErrorKind, StandardError
from submission_resilience.exceptions import (
    CircuitOpenError,
    InvalidOperationStateError,
    OperationFailedError,
    OperationNotFoundError,
    RecoveryStoreError,
)
from submission_resilience.logging import operation_logging_context
from submission_resilience.recovery.models import (
    ManualRetryResult,
    OperationStatus,
    RetryOperation,
    RetryPolicy,
)

if TYPE_CHECKING:
    from submission_resilience.circuit_breaker import (
        CircuitBreakerRegistry,
        CircuitBreakerState,
        CircuitPermit,
        CircuitTransition,
    )
    from submission_resilience.handler import ErrorHandler
    from submission_resilience.store import RecoveryStore

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]
OperationFactory = Callable[[dict[str, Any]], Awaitable[Any]]
Sleep = Callable[[float], Awaitable[None]]

# Manual retry is refused for these; anything else may be re-triggered.
_MANUAL_RETRY_REFUSED = frozenset(
    {OperationStatus.SUCCEEDED, OperationStatus.CANCELLED, OperationStatus.IN_PROGRESS}
)
_MANUAL_RETRY_ALLOWED = frozenset(
    {OperationStatus.PENDING, OperationStatus.FAILED, OperationStatus.ABANDONED}
)


class RegisteredOperation(NamedTuple):
    factory: OperationFactory
    policy_name: str | None


class _AttemptFailed(Exception):
    """Internal carrier between one attempt and the tenacity loop."""

    def __init__(self, error: StandardError, retryable: bool) -> None:
        super().__init__(error.message)
        self.error = error
        self.retryable = retryable


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, _AttemptFailed) and exc.retryable


def _now() -> datetime:
    return datetime.now(tz=UTC)


def next_attempt_at(policy: RetryPolicy, attempt: int) -> datetime:
    """When the attempt after ``attempt`` is due, ignoring jitter."""
    return _now() + timedelta(milliseconds=policy.delay_ms(attempt))


class RetryExecutor:
    """Execute operations with backoff, circuit breaking and error recording.

    One executor is built per process. It consults the breaker registry
    before every attempt, reports every failure through the error
    handler, and, when a recovery payload is supplied, keeps a durable
    ``RetryOperation`` row current so an operator can re-trigger the
    work later.
    """

    def __init__(
        self,
        handler: ErrorHandler,
        registry: CircuitBreakerRegistry,
        store: RecoveryStore | None = None,
        default_policy: RetryPolicy | None = None,
        policies: dict[str, RetryPolicy] | None = None,
        sleep: Sleep = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._handler = handler
        self._registry = registry
        self._store = store
        self._default_policy = default_policy or RetryPolicy()
        self._policies = dict(policies or {})
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._operations: dict[str, RegisteredOperation] = {}
        self._persist_tasks: set[asyncio.Task[None]] = set()
        self._last_persist: asyncio.Task[None] | None = None
        if store is not None:
            registry.add_listener(self._persist_transition)

    # -- policies -----------------------------------------------------------

    def policy_for(self, policy_name: str | None) -> RetryPolicy:
        if policy_name is None:
            return self._default_policy
        return self._policies.get(policy_name, self._default_policy)

    @staticmethod
    def delay_schedule(policy: RetryPolicy) -> list[float]:
        """Un-jittered delays (ms) following each attempt of ``policy``."""
        return policy.delay_schedule()

    def compute_delay(self, policy: RetryPolicy, attempt: int) -> float:
        """Jittered delay in milliseconds after ``attempt`` (1-based)."""
        base = policy.delay_ms(attempt)
        if policy.jitter <= 0:
            return base
        return base * (1.0 - policy.jitter * self._rng.random())

    # -- registry of re-triggerable operations ------------------------------

    def register_operation(
        self,
        operation_name: str,
        factory: OperationFactory,
        policy_name: str | None = None,
    ) -> None:
        """Make ``operation_name`` re-triggerable from its stored payload."""
        self._operations[operation_name] = RegisteredOperation(factory, policy_name)

    def registered_operations(self) -> list[str]:
        return sorted(self._operations)

    # -- execution ----------------------------------------------------------

    async def execute_with_retry(
        self,
        operation: Operation[T],
        *,
        operation_name: str,
        policy: RetryPolicy | None = None,
        policy_name: str | None = None,
        error_context: dict[str, Any] | None = None,
        recovery_payload: dict[str, Any] | None = None,
        operation_id: str | None = None,
    ) -> T:
        """Run ``operation`` until it succeeds or the policy gives up.

        Returns:
            Whatever the operation returned on its successful attempt.

        Raises:
            CircuitOpenError: If the breaker rejected an attempt.
            OperationFailedError: If the operation failed terminally. The
                carried ``StandardError`` has ``context["attempts"]`` set.
            OperationNotFoundError: If ``operation_id`` names no stored row.
        """
        existing: RetryOperation | None = None
        if operation_id is not None:
            existing = await self._load_operation(operation_id)
        return await self._execute(
            operation,
            operation_name=operation_name,
            policy=policy or self.policy_for(policy_name),
            policy_name=policy_name,
            error_context=error_context,
            recovery_payload=recovery_payload,
            existing=existing,
        )

    async def _execute(
        self,
        operation: Operation[T],
        *,
        operation_name: str,
        policy: RetryPolicy,
        policy_name: str | None,
        error_context: dict[str, Any] | None,
        recovery_payload: dict[str, Any] | None,
        existing: RetryOperation | None,
    ) -> T:
        base_context = {**(error_context or {}), "operation_name": operation_name}
        series_error_ids: list[str] = []
        if existing is not None and existing.last_error_id:
            series_error_ids.append(existing.last_error_id)

        record = await self._start_record(
            operation_name, policy, policy_name, recovery_payload, existing
        )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_retries),
            wait=self._wait_strategy(policy),
            retry=retry_if_exception(_is_retryable),
            sleep=self._sleep,
            reraise=True,
        )

        with operation_logging_context(operation_name, policy=policy_name) as log:
            attempts = 0
            try:
                async for attempt in retrying:
                    with attempt:
                        attempts = attempt.retry_state.attempt_number
                        try:
                            result = await self._run_attempt(
                                operation,
                                operation_name=operation_name,
                                attempt_number=attempts,
                                policy=policy,
                                context=base_context,
                            )
                        except _AttemptFailed as failed:
                            series_error_ids.append(failed.error.id)
                            rejected = failed.error.code is ErrorCode.CIRCUIT_OPEN
                            will_retry = (
                                failed.retryable and attempts < policy.max_retries
                            )
                            record = await self._save_record(
                                record,
                                attempt_count=attempts - 1 if rejected else attempts,
                                last_error_id=failed.error.id,
                                next_attempt_at=(
                                    next_attempt_at(policy, attempts)
                                    if will_retry
                                    else None
                                ),
                            )
                            raise
            except asyncio.CancelledError:
                # The row must not stay in_progress; park it for manual retry.
                await self._save_record(
                    record,
                    attempt_count=attempts,
                    status=OperationStatus.FAILED,
                    next_attempt_at=None,
                )
                log.warning("retry_cancelled", attempts=attempts)
                raise
            except _AttemptFailed as failed:
                await self._save_record(record, status=OperationStatus.FAILED)
                if failed.error.code is ErrorCode.CIRCUIT_OPEN:
                    invoked = attempts - 1
                    final = failed.error.with_context(attempts=invoked)
                    raise CircuitOpenError(final, invoked) from None
                final = failed.error.with_context(attempts=attempts)
                log.error(
                    "retry_exhausted",
                    attempts=attempts,
                    code=final.code.value,
                    error_id=final.id,
                    retryable=failed.retryable,
                )
                raise OperationFailedError(final, attempts) from None

            await self._save_record(
                record,
                attempt_count=attempts,
                status=OperationStatus.SUCCEEDED,
                next_attempt_at=None,
            )
            await self._resolve_series(series_error_ids)
            if attempts > 1:
                log.info("retry_succeeded", attempts=attempts)
            return result

    async def _run_attempt(
        self,
        operation: Operation[T],
        *,
        operation_name: str,
        attempt_number: int,
        policy: RetryPolicy,
        context: dict[str, Any],
    ) -> T:
        """Run one attempt. Raises ``_AttemptFailed`` on failure."""
        attempt_context = {
            **context,
            "attempt": attempt_number,
            "max_attempts": policy.max_retries,
        }

        permit = self._registry.acquire(operation_name)
        if permit is None:
            error = await self._handler.handle(
                ErrorKind.TEMPORARY,
                ErrorCode.CIRCUIT_OPEN,
                f"Circuit breaker for {operation_name!r} is open",
                context=attempt_context,
            )
            raise _AttemptFailed(error, retryable=False)

        try:
            if policy.attempt_timeout_seconds is None:
                result = await operation()
            else:
                result = await asyncio.wait_for(
                    operation(), timeout=policy.attempt_timeout_seconds
                )
        except asyncio.CancelledError:
            self._registry.release(operation_name, permit)
            raise
        except Exception as exc:
            classification = self._handler.classify_exception(exc)
            error = await self._handler.handle(
                classification.kind,
                classification.code,
                classification.message,
                context={**classification.context, **attempt_context},
                cause=exc,
            )
            retryable = self._record_outcome(permit, error)
            logger.warning(
                "retry_attempt_failed",
                attempt=attempt_number,
                max_attempts=policy.max_retries,
                kind=error.kind.value,
                code=error.code.value,
                error_id=error.id,
                will_retry=retryable and attempt_number < policy.max_retries,
            )
            raise _AttemptFailed(error, retryable=retryable) from exc

        self._registry.record_success(operation_name, permit)
        return result

    def _record_outcome(self, permit: CircuitPermit, error: StandardError) -> bool:
        """Report a failed attempt to the breaker; return whether to retry."""
        if error.kind in (ErrorKind.USER, ErrorKind.SYSTEM):
            self._registry.release(permit.operation_name, permit)
            return False
        self._registry.record_failure(permit.operation_name, permit)
        return error.is_recoverable

    def _wait_strategy(self, policy: RetryPolicy) -> Callable[[RetryCallState], float]:
        def _wait(retry_state: RetryCallState) -> float:
            delay_ms = self.compute_delay(policy, retry_state.attempt_number)
            outcome = retry_state.outcome
            exc = outcome.exception() if outcome is not None else None
            if isinstance(exc, _AttemptFailed):
                retry_after = exc.error.context.get("retry_after")
                if isinstance(retry_after, int | float):
                    delay_ms = max(delay_ms, min(retry_after * 1000, policy.max_delay_ms))
            return delay_ms / 1000.0

        return _wait

    # -- manual retry -------------------------------------------------------

    async def manual_retry(self, operation_id: str) -> ManualRetryResult:
        """Re-trigger a stored operation from its payload.

        Raises:
            OperationNotFoundError: Unknown id, or no factory registered
                for the row's operation name.
            InvalidOperationStateError: The row is succeeded, cancelled or
                already in progress.
        """
        operation = await self._load_operation(operation_id)
        if operation.status in _MANUAL_RETRY_REFUSED:
            msg = (
                f"Operation {operation_id} is {operation.status.value}; "
                "manual retry is not allowed"
            )
            raise InvalidOperationStateError(msg)

        registered = self._operations.get(operation.operation_name)
        if registered is None:
            msg = f"No operation registered under {operation.operation_name!r}"
            raise OperationNotFoundError(msg)

        if self._store is None:
            claimed: RetryOperation | None = operation
        else:
            claimed = await asyncio.to_thread(
                self._store.transition_operation,
                operation_id,
                _MANUAL_RETRY_ALLOWED,
                OperationStatus.IN_PROGRESS,
            )
        if claimed is None:
            msg = f"Operation {operation_id} changed state; manual retry aborted"
            raise InvalidOperationStateError(msg)

        policy_name = registered.policy_name or operation.policy_name
        payload = dict(operation.context_payload)
        logger.info(
            "manual_retry_started",
            operation_id=operation_id,
            operation_name=operation.operation_name,
        )
        try:
            result = await self._execute(
                lambda: registered.factory(payload),
                operation_name=operation.operation_name,
                policy=self.policy_for(policy_name),
                policy_name=policy_name,
                error_context={"operation_id": operation_id, "manual_retry": True},
                recovery_payload=payload,
                existing=claimed,
            )
        except OperationFailedError as exc:
            logger.info(
                "manual_retry_finished",
                operation_id=operation_id,
                success=False,
                error_id=exc.error.id,
            )
            return ManualRetryResult(
                success=False,
                message=f"Retry failed: {exc.error.message}",
                operation=await self._reload(operation_id, claimed),
                error_id=exc.error.id,
            )

        logger.info("manual_retry_finished", operation_id=operation_id, success=True)
        return ManualRetryResult(
            success=True,
            message="Operation completed successfully",
            operation=await self._reload(operation_id, claimed),
            result=result,
        )

    # -- durable operation rows ---------------------------------------------

    async def _load_operation(self, operation_id: str) -> RetryOperation:
        if self._store is None:
            msg = f"Recovery operation not found: {operation_id}"
            raise OperationNotFoundError(msg)
        operation = await asyncio.to_thread(self._store.get_operation, operation_id)
        if operation is None:
            msg = f"Recovery operation not found: {operation_id}"
            raise OperationNotFoundError(msg)
        return operation

    async def _reload(
        self, operation_id: str, fallback: RetryOperation
    ) -> RetryOperation:
        if self._store is None:
            return fallback
        try:
            reloaded = await asyncio.to_thread(self._store.get_operation, operation_id)
        except RecoveryStoreError:
            return fallback
        return reloaded or fallback

    async def _start_record(
        self,
        operation_name: str,
        policy: RetryPolicy,
        policy_name: str | None,
        payload: dict[str, Any] | None,
        existing: RetryOperation | None,
    ) -> RetryOperation | None:
        if self._store is None:
            return None
        if existing is not None:
            return await self._save_record(
                existing.model_copy(
                    update={
                        "attempt_count": 0,
                        "max_attempts": policy.max_retries,
                        "policy_name": policy_name or existing.policy_name,
                    }
                ),
                status=OperationStatus.IN_PROGRESS,
            )
        if payload is None:
            return None
        record = RetryOperation(
            operation_name=operation_name,
            policy_name=policy_name,
            max_attempts=policy.max_retries,
            status=OperationStatus.IN_PROGRESS,
            context_payload=payload,
        )
        try:
            return await asyncio.to_thread(self._store.create_operation, record)
        except RecoveryStoreError as exc:
            logger.warning(
                "recovery_operation_persist_failed",
                operation_id=record.id,
                reason=str(exc),
            )
            return None

    async def _save_record(
        self, record: RetryOperation | None, **changes: Any
    ) -> RetryOperation | None:
        if record is None or self._store is None:
            return record
        updated = record.model_copy(update=changes)
        try:
            return await asyncio.to_thread(self._store.update_operation, updated)
        except RecoveryStoreError as exc:
            logger.warning(
                "recovery_operation_persist_failed",
                operation_id=record.id,
                reason=str(exc),
            )
            return updated

    async def _resolve_series(self, error_ids: list[str]) -> None:
        for error_id in error_ids:
            try:
                await self._handler.resolve(error_id)
            except RecoveryStoreError as exc:
                logger.warning(
                    "error_resolve_failed", error_id=error_id, reason=str(exc)
                )

    # -- breaker persistence -----------------------------------------------

    def _persist_transition(
        self, transition: CircuitTransition, state: CircuitBreakerState
    ) -> None:
        store = self._store
        if store is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            store.save_circuit_state(state)
            return
        # Writes are chained so transitions land in the order they happened.
        previous = self._last_persist
        if previous is not None and (previous.done() or previous.get_loop() is not loop):
            previous = None
        task = asyncio.create_task(self._save_circuit_state(store, state, previous))
        self._last_persist = task
        self._persist_tasks.add(task)
        task.add_done_callback(self._persist_tasks.discard)

    async def _save_circuit_state(
        self,
        store: RecoveryStore,
        state: CircuitBreakerState,
        previous: asyncio.Task[None] | None = None,
    ) -> None:
        if previous is not None:
            await asyncio.wait({previous})
        try:
            await asyncio.to_thread(store.save_circuit_state, state)
        except RecoveryStoreError as exc:
            logger.warning(
                "circuit_state_persist_failed",
                operation_name=state.operation_name,
                reason=str(exc),
            )

    async def drain(self) -> None:
        """Wait for pending breaker-state writes."""
        if self._persist_tasks:
            await asyncio.gather(*list(self._persist_tasks), return_exceptions=True)
