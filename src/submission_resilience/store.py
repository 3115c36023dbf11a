"""Recovery store: durable errors, recovery operations, breaker states, health.

Backed by SQLAlchemy Core. SQLite is the default, any SQLAlchemy URL is
accepted. All methods are synchronous; async callers offload them with
``asyncio.to_thread`` so store I/O never blocks the event loop.
"""

from __future__ import annotations

import time
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    case,
    create_engine,
    delete,
    func,
    insert,
    or_,
    select,
    text,
    update,
)
from sqlalchemy.engine import Engine, RowMapping
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from submission_resilience.circuit_breaker import CircuitBreakerState, CircuitState
from submission_resilience.errors import (
    ErrorCode,
    ErrorFilter,
    ErrorKind,
    ErrorStatistics,
    StandardError,
)
from submission_resilience.exceptions import RecoveryStoreError
from submission_resilience.health.models import HealthCheckResult, HealthStatus
from submission_resilience.recovery.models import (
    TERMINAL_STATUSES,
    OperationStatus,
    RetryOperation,
    RetryStatistics,
)

if TYPE_CHECKING:
    from submission_resilience.config import RetentionSettings, StoreSettings

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


class UTCDateTime(TypeDecorator[datetime]):
    """Store naive UTC, always hand back timezone-aware UTC."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> Any:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC).replace(tzinfo=None)

    def process_result_value(self, value: Any, dialect: Any) -> datetime | None:
        if value is None:
            return None
        return value.replace(tzinfo=UTC)


metadata = MetaData()

error_logs = Table(
    "error_logs",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("kind", String(32), nullable=False, index=True),
    Column("code", String(64), nullable=False, index=True),
    Column("message", Text, nullable=False),
    Column("context_json", JSON, nullable=False),
    Column("cause_text", Text, nullable=True),
    Column("operation_name", String(255), nullable=True, index=True),
    Column("created_at", UTCDateTime, nullable=False, index=True),
    Column("resolved", Boolean, nullable=False, default=False, index=True),
    Column("resolved_at", UTCDateTime, nullable=True),
)

recovery_operations = Table(
    "recovery_operations",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("operation_name", String(255), nullable=False, index=True),
    Column("policy_name", String(255), nullable=True),
    Column("attempt_count", Integer, nullable=False, default=0),
    Column("max_attempts", Integer, nullable=False, default=1),
    Column("status", String(32), nullable=False, index=True),
    Column("next_attempt_at", UTCDateTime, nullable=True, index=True),
    # No FK: an orphaned error row is tolerated, a dangling reference is not.
    Column("last_error_id", String(64), nullable=True),
    Column("context_payload_json", JSON, nullable=False),
    Column("created_at", UTCDateTime, nullable=False, index=True),
    Column("updated_at", UTCDateTime, nullable=False),
)

circuit_breaker_states = Table(
    "circuit_breaker_states",
    metadata,
    Column("operation_name", String(255), primary_key=True),
    Column("state", String(32), nullable=False),
    Column("consecutive_failures", Integer, nullable=False, default=0),
    Column("consecutive_successes", Integer, nullable=False, default=0),
    Column("failure_threshold", Integer, nullable=False),
    Column("success_threshold", Integer, nullable=False),
    Column("open_timeout_ms", Integer, nullable=False),
    Column("opened_at", UTCDateTime, nullable=True),
    Column("last_transition_at", UTCDateTime, nullable=False),
)

health_check_results = Table(
    "health_check_results",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("component", String(255), nullable=False, index=True),
    Column("status", String(32), nullable=False),
    Column("latency_ms", Float, nullable=False, default=0.0),
    Column("detail", Text, nullable=False, default=""),
    Column("checked_at", UTCDateTime, nullable=False, index=True),
)


class PurgeReport(BaseModel):
    """Row counts affected by a retention pass."""

    errors_deleted: int = Field(default=0, ge=0)
    operations_abandoned: int = Field(default=0, ge=0)
    operations_released: int = Field(default=0, ge=0)
    operations_deleted: int = Field(default=0, ge=0)
    health_results_deleted: int = Field(default=0, ge=0)


def _now() -> datetime:
    return datetime.now(tz=UTC)


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------


def _error_from_row(row: RowMapping) -> StandardError:
    return StandardError(
        id=row["id"],
        kind=ErrorKind(row["kind"]),
        code=ErrorCode(row["code"]),
        message=row["message"],
        context=row["context_json"] or {},
        cause=row["cause_text"],
        timestamp=row["created_at"],
        resolved=bool(row["resolved"]),
        resolved_at=row["resolved_at"],
    )


def _operation_from_row(row: RowMapping) -> RetryOperation:
    return RetryOperation(
        id=row["id"],
        operation_name=row["operation_name"],
        policy_name=row["policy_name"],
        attempt_count=row["attempt_count"],
        max_attempts=row["max_attempts"],
        status=OperationStatus(row["status"]),
        next_attempt_at=row["next_attempt_at"],
        last_error_id=row["last_error_id"],
        context_payload=row["context_payload_json"] or {},
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _operation_values(operation: RetryOperation) -> dict[str, Any]:
    return {
        "operation_name": operation.operation_name,
        "policy_name": operation.policy_name,
        "attempt_count": operation.attempt_count,
        "max_attempts": operation.max_attempts,
        "status": operation.status.value,
        "next_attempt_at": operation.next_attempt_at,
        "last_error_id": operation.last_error_id,
        "context_payload_json": operation.context_payload,
        "created_at": operation.created_at,
        "updated_at": operation.updated_at,
    }


def _circuit_from_row(row: RowMapping) -> CircuitBreakerState:
    return CircuitBreakerState(
        operation_name=row["operation_name"],
        state=CircuitState(row["state"]),
        consecutive_failures=row["consecutive_failures"],
        consecutive_successes=row["consecutive_successes"],
        failure_threshold=row["failure_threshold"],
        success_threshold=row["success_threshold"],
        open_timeout_ms=row["open_timeout_ms"],
        opened_at=row["opened_at"],
        last_transition_at=row["last_transition_at"],
    )


def _health_from_row(row: RowMapping) -> HealthCheckResult:
    return HealthCheckResult(
        id=row["id"],
        component=row["component"],
        status=HealthStatus(row["status"]),
        latency_ms=row["latency_ms"],
        detail=row["detail"] or "",
        checked_at=row["checked_at"],
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class RecoveryStore:
    """SQLAlchemy-backed persistence for the resilience layer."""

    def __init__(self, database_url: str, echo: bool = False) -> None:
        self._database_url = database_url
        self._engine = self._create_engine(database_url, echo)

    @classmethod
    def from_settings(cls, settings: StoreSettings) -> RecoveryStore:
        return cls(settings.database_url, echo=settings.echo)

    @staticmethod
    def _create_engine(database_url: str, echo: bool) -> Engine:
        kwargs: dict[str, Any] = {"echo": echo}
        if database_url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in {"sqlite://", "sqlite:///:memory:"}:
                # One shared connection, otherwise each thread sees an empty DB.
                kwargs["poolclass"] = StaticPool
            else:
                db_path = database_url.split("///", 1)[-1]
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return create_engine(database_url, **kwargs)

    @property
    def engine(self) -> Engine:
        return self._engine

    def initialize(self) -> None:
        """Create the four tables if they do not exist."""
        with self._guard("initialize"):
            metadata.create_all(self._engine)
        logger.info("recovery_store_initialized", url=self._safe_url())

    def dispose(self) -> None:
        self._engine.dispose()

    def ping(self) -> float:
        """Run a trivial query and return its latency in milliseconds."""
        started = time.perf_counter()
        with self._guard("ping"), self._engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return (time.perf_counter() - started) * 1000.0

    # -- error_logs ---------------------------------------------------------

    def save_error(self, error: StandardError) -> None:
        operation_name = error.context.get("operation_name")
        with self._guard("save_error"), self._engine.begin() as conn:
            conn.execute(
                insert(error_logs).values(
                    id=error.id,
                    kind=error.kind.value,
                    code=error.code.value,
                    message=error.message,
                    context_json=error.context,
                    cause_text=error.cause,
                    operation_name=(
                        str(operation_name) if operation_name is not None else None
                    ),
                    created_at=error.timestamp,
                    resolved=error.resolved,
                    resolved_at=error.resolved_at,
                )
            )

    def get_error(self, error_id: str) -> StandardError | None:
        with self._guard("get_error"), self._engine.connect() as conn:
            row = (
                conn.execute(select(error_logs).where(error_logs.c.id == error_id))
                .mappings()
                .first()
            )
        return _error_from_row(row) if row is not None else None

    def resolve_error(self, error_id: str, resolved_at: datetime | None = None) -> bool:
        """Mark an error resolved. Returns ``False`` if it was already resolved."""
        with self._guard("resolve_error"), self._engine.begin() as conn:
            result = conn.execute(
                update(error_logs)
                .where(
                    and_(error_logs.c.id == error_id, error_logs.c.resolved.is_(False))
                )
                .values(resolved=True, resolved_at=resolved_at or _now())
            )
        return result.rowcount > 0

    def list_unresolved_errors(
        self, error_filter: ErrorFilter | None = None
    ) -> list[StandardError]:
        criteria = error_filter or ErrorFilter()
        query = select(error_logs).where(error_logs.c.resolved.is_(False))
        if criteria.kind is not None:
            query = query.where(error_logs.c.kind == criteria.kind.value)
        if criteria.code is not None:
            query = query.where(error_logs.c.code == criteria.code.value)
        if criteria.operation_name is not None:
            query = query.where(error_logs.c.operation_name == criteria.operation_name)
        if criteria.since is not None:
            query = query.where(error_logs.c.created_at >= criteria.since)
        query = query.order_by(error_logs.c.created_at.desc()).limit(criteria.limit)

        with self._guard("list_unresolved_errors"), self._engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
        return [_error_from_row(row) for row in rows]

    def error_statistics(
        self, window: timedelta, now: datetime | None = None
    ) -> list[ErrorStatistics]:
        since = (now or _now()) - window
        resolved_count = func.sum(case((error_logs.c.resolved.is_(True), 1), else_=0))
        query = (
            select(
                error_logs.c.kind,
                error_logs.c.code,
                func.count().label("count"),
                resolved_count.label("resolved_count"),
            )
            .where(error_logs.c.created_at >= since)
            .group_by(error_logs.c.kind, error_logs.c.code)
            .order_by(func.count().desc())
        )
        with self._guard("error_statistics"), self._engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
        return [
            ErrorStatistics(
                kind=ErrorKind(row["kind"]),
                code=ErrorCode(row["code"]),
                count=row["count"],
                resolved_count=row["resolved_count"] or 0,
                unresolved_count=row["count"] - (row["resolved_count"] or 0),
            )
            for row in rows
        ]

    # -- recovery_operations -----------------------------------------------

    def create_operation(self, operation: RetryOperation) -> RetryOperation:
        with self._guard("create_operation"), self._engine.begin() as conn:
            conn.execute(
                insert(recovery_operations).values(
                    id=operation.id, **_operation_values(operation)
                )
            )
        return operation

    def update_operation(self, operation: RetryOperation) -> RetryOperation:
        updated = operation.model_copy(update={"updated_at": _now()})
        with self._guard("update_operation"), self._engine.begin() as conn:
            result = conn.execute(
                update(recovery_operations)
                .where(recovery_operations.c.id == operation.id)
                .values(**_operation_values(updated))
            )
        if result.rowcount == 0:
            msg = f"Recovery operation not found: {operation.id}"
            raise RecoveryStoreError(msg)
        return updated

    def transition_operation(
        self,
        operation_id: str,
        allowed_from: Iterable[OperationStatus],
        to_status: OperationStatus,
    ) -> RetryOperation | None:
        """Atomically move an operation between statuses.

        Returns the updated operation, or ``None`` when the row is missing
        or its current status is not in ``allowed_from``.
        """
        allowed = [status.value for status in allowed_from]
        with self._guard("transition_operation"), self._engine.begin() as conn:
            result = conn.execute(
                update(recovery_operations)
                .where(
                    and_(
                        recovery_operations.c.id == operation_id,
                        recovery_operations.c.status.in_(allowed),
                    )
                )
                .values(status=to_status.value, updated_at=_now())
            )
            if result.rowcount == 0:
                return None
            row = (
                conn.execute(
                    select(recovery_operations).where(
                        recovery_operations.c.id == operation_id
                    )
                )
                .mappings()
                .one()
            )
        return _operation_from_row(row)

    def get_operation(self, operation_id: str) -> RetryOperation | None:
        with self._guard("get_operation"), self._engine.connect() as conn:
            row = (
                conn.execute(
                    select(recovery_operations).where(
                        recovery_operations.c.id == operation_id
                    )
                )
                .mappings()
                .first()
            )
        return _operation_from_row(row) if row is not None else None

    def list_recovery_operations(
        self,
        status: OperationStatus | None = None,
        limit: int = 200,
    ) -> list[RetryOperation]:
        query = select(recovery_operations)
        if status is not None:
            query = query.where(recovery_operations.c.status == status.value)
        query = query.order_by(recovery_operations.c.created_at.desc()).limit(limit)
        with self._guard("list_recovery_operations"), self._engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
        return [_operation_from_row(row) for row in rows]

    def count_operations(self, statuses: Iterable[OperationStatus]) -> int:
        values = [status.value for status in statuses]
        query = select(func.count()).where(recovery_operations.c.status.in_(values))
        with self._guard("count_operations"), self._engine.connect() as conn:
            return int(conn.execute(query).scalar_one())

    def retry_statistics(
        self, window: timedelta, now: datetime | None = None
    ) -> list[RetryStatistics]:
        since = (now or _now()) - window
        status = recovery_operations.c.status
        succeeded = func.sum(
            case((status == OperationStatus.SUCCEEDED.value, 1), else_=0)
        )
        failed = func.sum(
            case(
                (
                    status.in_(
                        [OperationStatus.FAILED.value, OperationStatus.ABANDONED.value]
                    ),
                    1,
                ),
                else_=0,
            )
        )
        query = (
            select(
                recovery_operations.c.operation_name,
                func.count().label("total"),
                succeeded.label("succeeded"),
                failed.label("failed"),
                func.avg(recovery_operations.c.attempt_count).label("avg_attempts"),
            )
            .where(recovery_operations.c.created_at >= since)
            .group_by(recovery_operations.c.operation_name)
            .order_by(func.count().desc())
        )
        with self._guard("retry_statistics"), self._engine.connect() as conn:
            rows = conn.execute(query).mappings().all()

        stats: list[RetryStatistics] = []
        for row in rows:
            total = int(row["total"])
            ok = int(row["succeeded"] or 0)
            stats.append(
                RetryStatistics(
                    operation_name=row["operation_name"],
                    total=total,
                    succeeded=ok,
                    failed=int(row["failed"] or 0),
                    average_attempts=round(float(row["avg_attempts"] or 0.0), 2),
                    success_rate=round(ok * 100.0 / total, 2) if total else 0.0,
                )
            )
        return stats

    # -- circuit_breaker_states --------------------------------------------

    def save_circuit_state(self, state: CircuitBreakerState) -> None:
        """Upsert a breaker snapshot; older snapshots never overwrite newer ones."""
        values = {
            "state": state.state.value,
            "consecutive_failures": state.consecutive_failures,
            "consecutive_successes": state.consecutive_successes,
            "failure_threshold": state.failure_threshold,
            "success_threshold": state.success_threshold,
            "open_timeout_ms": state.open_timeout_ms,
            "opened_at": state.opened_at,
            "last_transition_at": state.last_transition_at,
        }
        table = circuit_breaker_states
        with self._guard("save_circuit_state"), self._engine.begin() as conn:
            existing = (
                conn.execute(
                    select(table.c.last_transition_at).where(
                        table.c.operation_name == state.operation_name
                    )
                )
                .mappings()
                .first()
            )
            if existing is None:
                conn.execute(
                    insert(table).values(operation_name=state.operation_name, **values)
                )
            elif existing["last_transition_at"] <= state.last_transition_at:
                conn.execute(
                    update(table)
                    .where(table.c.operation_name == state.operation_name)
                    .values(**values)
                )

    def get_circuit_breaker_states(self) -> dict[str, CircuitBreakerState]:
        with self._guard("get_circuit_breaker_states"), self._engine.connect() as conn:
            rows = conn.execute(select(circuit_breaker_states)).mappings().all()
        return {row["operation_name"]: _circuit_from_row(row) for row in rows}

    # -- health_check_results ----------------------------------------------

    def append_health_result(self, result: HealthCheckResult) -> HealthCheckResult:
        with self._guard("append_health_result"), self._engine.begin() as conn:
            inserted = conn.execute(
                insert(health_check_results).values(
                    component=result.component,
                    status=result.status.value,
                    latency_ms=result.latency_ms,
                    detail=result.detail,
                    checked_at=result.checked_at,
                )
            )
            new_id = inserted.inserted_primary_key[0]
        return result.model_copy(update={"id": new_id})

    def get_health_history(
        self,
        component: str | None = None,
        window: timedelta | None = None,
        now: datetime | None = None,
    ) -> list[HealthCheckResult]:
        """Results ordered by ``checked_at`` ascending."""
        query = select(health_check_results)
        if component is not None:
            query = query.where(health_check_results.c.component == component)
        if window is not None:
            since = (now or _now()) - window
            query = query.where(health_check_results.c.checked_at >= since)
        query = query.order_by(
            health_check_results.c.checked_at, health_check_results.c.id
        )
        with self._guard("get_health_history"), self._engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
        return [_health_from_row(row) for row in rows]

    def latest_health_results(self) -> dict[str, HealthCheckResult]:
        """Most recent result per component."""
        latest = (
            select(
                health_check_results.c.component,
                func.max(health_check_results.c.id).label("latest_id"),
            )
            .group_by(health_check_results.c.component)
            .subquery()
        )
        query = select(health_check_results).join(
            latest, health_check_results.c.id == latest.c.latest_id
        )
        with self._guard("latest_health_results"), self._engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
        return {row["component"]: _health_from_row(row) for row in rows}

    # -- retention ----------------------------------------------------------

    def purge_expired(
        self, retention: RetentionSettings, now: datetime | None = None
    ) -> PurgeReport:
        """Apply retention windows to every table.

        Unresolved errors are kept for ``unresolved_error_days``; resolved
        ones only for ``resolved_error_days`` after resolution. Failed
        operations nobody re-queued within ``abandon_failed_after_hours``
        become ``abandoned``. Rows left ``in_progress`` past
        ``stale_in_progress_hours`` (their worker died or was cancelled
        before finalizing) are released back to ``failed``.
        """
        moment = now or _now()
        unresolved_cutoff = moment - timedelta(days=retention.unresolved_error_days)
        resolved_cutoff = moment - timedelta(days=retention.resolved_error_days)
        abandon_cutoff = moment - timedelta(hours=retention.abandon_failed_after_hours)
        stale_cutoff = moment - timedelta(hours=retention.stale_in_progress_hours)
        operation_cutoff = moment - timedelta(days=retention.recovery_operation_days)
        health_cutoff = moment - timedelta(days=retention.health_result_days)
        terminal = [status.value for status in TERMINAL_STATUSES]

        with self._guard("purge_expired"), self._engine.begin() as conn:
            errors_deleted = conn.execute(
                delete(error_logs).where(
                    or_(
                        error_logs.c.created_at < unresolved_cutoff,
                        and_(
                            error_logs.c.resolved.is_(True),
                            error_logs.c.resolved_at < resolved_cutoff,
                        ),
                    )
                )
            ).rowcount
            abandoned = conn.execute(
                update(recovery_operations)
                .where(
                    and_(
                        recovery_operations.c.status == OperationStatus.FAILED.value,
                        recovery_operations.c.updated_at < abandon_cutoff,
                    )
                )
                .values(status=OperationStatus.ABANDONED.value, updated_at=moment)
            ).rowcount
            released = conn.execute(
                update(recovery_operations)
                .where(
                    and_(
                        recovery_operations.c.status
                        == OperationStatus.IN_PROGRESS.value,
                        recovery_operations.c.updated_at < stale_cutoff,
                    )
                )
                .values(
                    status=OperationStatus.FAILED.value,
                    next_attempt_at=None,
                    updated_at=moment,
                )
            ).rowcount
            operations_deleted = conn.execute(
                delete(recovery_operations).where(
                    and_(
                        recovery_operations.c.status.in_(terminal),
                        recovery_operations.c.updated_at < operation_cutoff,
                    )
                )
            ).rowcount
            health_deleted = conn.execute(
                delete(health_check_results).where(
                    health_check_results.c.checked_at < health_cutoff
                )
            ).rowcount

        report = PurgeReport(
            errors_deleted=errors_deleted,
            operations_abandoned=abandoned,
            operations_released=released,
            operations_deleted=operations_deleted,
            health_results_deleted=health_deleted,
        )
        logger.info("retention_purge_completed", **report.model_dump())
        return report

    # -- internals ----------------------------------------------------------

    @contextmanager
    def _guard(self, action: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            logger.warning("recovery_store_error", action=action, error=str(exc))
            msg = f"Recovery store {action} failed: {exc}"
            raise RecoveryStoreError(msg) from exc

    def _safe_url(self) -> str:
        return self._engine.url.render_as_string(hide_password=True)
