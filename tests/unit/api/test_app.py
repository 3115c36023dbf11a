"""Tests for the FastAPI admin endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

pytest.importorskip("fastapi")
from fastapi.testclient import TestClient

from submission_resilience.api.app import create_app
from submission_resilience.circuit_breaker import CircuitState
from submission_resilience.config import Settings
from submission_resilience.errors import ErrorCode, ErrorKind, StandardError
from submission_resilience.health.models import HealthCheckResult, HealthStatus
from submission_resilience.recovery.models import OperationStatus, RetryOperation
from submission_resilience.runtime import ResilienceRuntime

if TYPE_CHECKING:
    from pathlib import Path


def _settings(tmp_path: Path) -> Settings:
    settings = Settings()
    settings.store.database_url = f"sqlite:///{tmp_path / 'api.db'}"
    settings.health.enabled = False
    settings.api.cors_origins = ["http://localhost:3000"]
    return settings


@pytest.fixture()
def runtime(tmp_path: Path) -> ResilienceRuntime:
    return ResilienceRuntime.from_settings(_settings(tmp_path))


def test_openapi_and_cors_headers(runtime: ResilienceRuntime) -> None:
    app = create_app(runtime=runtime)
    with TestClient(app) as client:
        assert client.get("/openapi.json").status_code == 200

        resp = client.get("/health", headers={"Origin": "http://localhost:3000"})
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}
        assert (
            resp.headers.get("access-control-allow-origin") == "http://localhost:3000"
        )


class TestHealthEndpoints:
    def test_system_health_ok(self, runtime: ResilienceRuntime) -> None:
        runtime.store.append_health_result(
            HealthCheckResult(component="datastore", status=HealthStatus.HEALTHY)
        )
        with TestClient(create_app(runtime=runtime)) as client:
            resp = client.get("/api/health/system")
        assert resp.status_code == 200
        body = resp.json()
        assert body["overall"] == "healthy"
        assert body["components"]["datastore"]["status"] == "healthy"

    def test_system_health_unhealthy_is_503(self, runtime: ResilienceRuntime) -> None:
        runtime.store.append_health_result(
            HealthCheckResult(component="email", status=HealthStatus.UNHEALTHY)
        )
        with TestClient(create_app(runtime=runtime)) as client:
            resp = client.get("/api/health/system")
        assert resp.status_code == 503
        assert resp.json()["overall"] == "unhealthy"

    def test_history(self, runtime: ResilienceRuntime) -> None:
        for status in (HealthStatus.HEALTHY, HealthStatus.DEGRADED):
            runtime.store.append_health_result(
                HealthCheckResult(component="openai", status=status)
            )
        runtime.store.append_health_result(
            HealthCheckResult(component="email", status=HealthStatus.HEALTHY)
        )
        with TestClient(create_app(runtime=runtime)) as client:
            resp = client.get("/api/health/history", params={"component": "openai"})
        assert resp.status_code == 200
        assert [r["status"] for r in resp.json()] == ["healthy", "degraded"]


class TestErrorEndpoints:
    def _seed(self, runtime: ResilienceRuntime) -> str:
        error = StandardError(
            kind=ErrorKind.INTEGRATION,
            code=ErrorCode.GOOGLE_API_ERROR,
            message="Docs API 502",
            context={"operation_name": "docgen"},
        )
        runtime.store.save_error(error)
        return error.id

    def test_list_filter_and_resolve(self, runtime: ResilienceRuntime) -> None:
        with TestClient(create_app(runtime=runtime)) as client:
            error_id = self._seed(runtime)

            listed = client.get(
                "/api/admin/errors", params={"operation_name": "docgen"}
            ).json()
            assert [e["id"] for e in listed] == [error_id]
            assert client.get(
                "/api/admin/errors", params={"kind": "user"}
            ).json() == []

            resolved = client.post(f"/api/admin/errors/{error_id}/resolve")
            assert resolved.json() == {
                "error_id": error_id,
                "resolved": True,
                "changed": True,
            }
            again = client.post(f"/api/admin/errors/{error_id}/resolve")
            assert again.json()["changed"] is False
            assert client.get("/api/admin/errors").json() == []

    def test_resolve_unknown_is_404(self, runtime: ResilienceRuntime) -> None:
        with TestClient(create_app(runtime=runtime)) as client:
            resp = client.post("/api/admin/errors/err_missing/resolve")
        assert resp.status_code == 404

    def test_statistics(self, runtime: ResilienceRuntime) -> None:
        with TestClient(create_app(runtime=runtime)) as client:
            self._seed(runtime)
            stats = client.get("/api/admin/errors/statistics", params={"hours": 1})
        assert stats.status_code == 200
        [row] = stats.json()
        assert row["code"] == "GOOGLE_API_ERROR"
        assert row["unresolved_count"] == 1

    def test_invalid_kind_rejected(self, runtime: ResilienceRuntime) -> None:
        with TestClient(create_app(runtime=runtime)) as client:
            resp = client.get("/api/admin/errors", params={"kind": "cosmic"})
        assert resp.status_code == 422


class TestRecoveryEndpoints:
    def _failed(self, runtime: ResilienceRuntime, name: str = "docgen") -> str:
        op = runtime.store.create_operation(
            RetryOperation(
                operation_name=name,
                status=OperationStatus.FAILED,
                context_payload={"submission_id": 42},
            )
        )
        return op.id

    def test_list_operations(self, runtime: ResilienceRuntime) -> None:
        op_id = self._failed(runtime)
        with TestClient(create_app(runtime=runtime)) as client:
            resp = client.get(
                "/api/admin/recovery-operations", params={"status": "failed"}
            )
        assert [op["id"] for op in resp.json()] == [op_id]

    def test_manual_retry(self, runtime: ResilienceRuntime) -> None:
        op_id = self._failed(runtime)

        async def regenerate(payload: dict[str, Any]) -> dict[str, Any]:
            return {"doc": payload["submission_id"]}

        runtime.executor.register_operation("docgen", regenerate)
        with TestClient(create_app(runtime=runtime)) as client:
            resp = client.post(f"/api/admin/retry/{op_id}")
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["operation"]["status"] == "succeeded"
        assert "result" not in body

    def test_manual_retry_unregistered_is_404(self, runtime: ResilienceRuntime) -> None:
        op_id = self._failed(runtime, name="unknown_job")
        with TestClient(create_app(runtime=runtime)) as client:
            resp = client.post(f"/api/admin/retry/{op_id}")
        assert resp.status_code == 404

    def test_cancel_then_retry_conflicts(self, runtime: ResilienceRuntime) -> None:
        op_id = self._failed(runtime)

        async def regenerate(payload: dict[str, Any]) -> None:
            return None

        runtime.executor.register_operation("docgen", regenerate)
        with TestClient(create_app(runtime=runtime)) as client:
            cancelled = client.post(f"/api/admin/recovery-operations/{op_id}/cancel")
            assert cancelled.status_code == 200
            assert cancelled.json()["status"] == "cancelled"

            assert client.post(f"/api/admin/retry/{op_id}").status_code == 409
            again = client.post(f"/api/admin/recovery-operations/{op_id}/cancel")
            assert again.status_code == 409

    def test_retry_statistics(self, runtime: ResilienceRuntime) -> None:
        self._failed(runtime)
        with TestClient(create_app(runtime=runtime)) as client:
            [row] = client.get("/api/admin/retry/statistics").json()
        assert row["operation_name"] == "docgen"
        assert row["failed"] == 1


class TestCircuitBreakerEndpoints:
    def test_list_and_reset(self, runtime: ResilienceRuntime) -> None:
        with TestClient(create_app(runtime=runtime)) as client:
            for _ in range(5):
                runtime.registry.record_failure("openai")
            states = client.get("/api/admin/circuit-breakers").json()
            assert [s["operation_name"] for s in states] == ["openai"]
            assert states[0]["state"] == CircuitState.OPEN.value

            reset = client.post("/api/admin/circuit-breakers/openai/reset")
            assert reset.status_code == 200
            assert reset.json()["state"] == "closed"


class TestUnhandledErrors:
    def test_generic_500_hides_details(self, runtime: ResilienceRuntime) -> None:
        app = create_app(runtime=runtime)

        @app.get("/boom")
        async def boom() -> None:
            raise RuntimeError("connection string postgres://admin:secret@db")

        with TestClient(app, raise_server_exceptions=False) as client:
            resp = client.get("/boom")

        assert resp.status_code == 500
        body = resp.json()["error"]
        assert body["code"] == "INTERNAL_ERROR"
        assert body["retryable"] is False
        assert "secret" not in resp.text
        stored = runtime.store.get_error(body["correlation_id"])
        assert stored is not None
        assert stored.context["operation_name"] == "GET /boom"
