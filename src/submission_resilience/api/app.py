"""FastAPI application exposing health and recovery administration."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from submission_resilience.circuit_breaker import CircuitBreakerState
from submission_resilience.config import Settings
from submission_resilience.errors import (
    ErrorCode,
    ErrorFilter,
    ErrorKind,
    ErrorStatistics,
    StandardError,
)
from submission_resilience.exceptions import (
    InvalidOperationStateError,
    OperationNotFoundError,
)
from submission_resilience.handler import ErrorHandler
from submission_resilience.health.models import HealthCheckResult, HealthStatus
from submission_resilience.recovery.models import (
    OperationStatus,
    RetryOperation,
    RetryStatistics,
)
from submission_resilience.runtime import ResilienceRuntime

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


def create_app(
    settings: Settings | None = None,
    runtime: ResilienceRuntime | None = None,
) -> FastAPI:
    """Create and configure the admin API app."""
    app_settings = settings or (runtime.settings if runtime else Settings.load())
    app_runtime = runtime or ResilienceRuntime.from_settings(app_settings)
    admin = app_runtime.admin

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        await app_runtime.start()
        try:
            yield
        finally:
            await app_runtime.stop()

    app = FastAPI(title="submission-resilience API", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = app_settings
    app.state.runtime = app_runtime

    @app.exception_handler(OperationNotFoundError)
    async def not_found(_: Request, exc: OperationNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidOperationStateError)
    async def invalid_state(
        _: Request, exc: InvalidOperationStateError
    ) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(Exception)
    async def unhandled(request: Request, exc: Exception) -> JSONResponse:
        error = await app_runtime.handler.handle_exception(
            exc, context={"operation_name": f"{request.method} {request.url.path}"}
        )
        return JSONResponse(
            status_code=error.http_status, content=ErrorHandler.to_response(error)
        )

    # -- health -------------------------------------------------------------

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/health/system")
    async def system_health() -> JSONResponse:
        current = await admin.current_health()
        status_code = 503 if current.overall is HealthStatus.UNHEALTHY else 200
        return JSONResponse(
            status_code=status_code, content=current.model_dump(mode="json")
        )

    @app.get("/api/health/history")
    async def health_history(
        component: str | None = None,
        window_minutes: int = Query(default=60, ge=1, le=60 * 24 * 7),
    ) -> list[HealthCheckResult]:
        return await admin.get_health_history(
            component, timedelta(minutes=window_minutes)
        )

    # -- errors -------------------------------------------------------------

    @app.get("/api/admin/errors/statistics")
    async def error_statistics(
        hours: int = Query(default=24, ge=1, le=24 * 90),
    ) -> list[ErrorStatistics]:
        return await admin.error_statistics(hours)

    @app.get("/api/admin/errors")
    async def list_errors(
        kind: ErrorKind | None = None,
        code: ErrorCode | None = None,
        operation_name: str | None = None,
        limit: int = Query(default=100, ge=1, le=1000),
    ) -> list[StandardError]:
        return await admin.list_unresolved_errors(
            ErrorFilter(
                kind=kind, code=code, operation_name=operation_name, limit=limit
            )
        )

    @app.post("/api/admin/errors/{error_id}/resolve")
    async def resolve_error(error_id: str) -> dict[str, Any]:
        changed = await admin.resolve_error(error_id)
        return {"error_id": error_id, "resolved": True, "changed": changed}

    # -- recovery operations ------------------------------------------------

    @app.get("/api/admin/recovery-operations")
    async def list_operations(
        status: OperationStatus | None = None,
        limit: int = Query(default=200, ge=1, le=1000),
    ) -> list[RetryOperation]:
        return await admin.list_recovery_operations(status, limit)

    @app.get("/api/admin/retry/statistics")
    async def retry_statistics(
        hours: int = Query(default=24, ge=1, le=24 * 90),
    ) -> list[RetryStatistics]:
        return await admin.retry_statistics(hours)

    @app.post("/api/admin/retry/{operation_id}")
    async def manual_retry(operation_id: str) -> dict[str, Any]:
        result = await admin.manual_retry(operation_id)
        return result.model_dump(mode="json", exclude={"result"})

    @app.post("/api/admin/recovery-operations/{operation_id}/cancel")
    async def cancel_operation(operation_id: str) -> RetryOperation:
        return await admin.cancel_operation(operation_id)

    # -- circuit breakers ---------------------------------------------------

    @app.get("/api/admin/circuit-breakers")
    async def circuit_breakers() -> list[CircuitBreakerState]:
        return await admin.get_circuit_breaker_states()

    @app.post("/api/admin/circuit-breakers/{name}/reset")
    async def reset_circuit_breaker(name: str) -> CircuitBreakerState:
        return await admin.reset_circuit_breaker(name)

    return app
