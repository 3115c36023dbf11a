"""Built-in health probes.

Each factory returns an async callable producing a ``ProbeOutcome``.
Probes report problems through the outcome; the monitor turns raised
exceptions and timeouts into ``unhealthy`` on its own.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING

import httpx

from submission_resilience.exceptions import RecoveryStoreError
from submission_resilience.health.models import HealthStatus, ProbeOutcome
from submission_resilience.recovery.models import OperationStatus

if TYPE_CHECKING:
    from submission_resilience.circuit_breaker import CircuitBreakerRegistry
    from submission_resilience.config import DependencyProbeSettings, HealthSettings
    from submission_resilience.health.monitor import HealthMonitor, Probe
    from submission_resilience.store import RecoveryStore

_QUEUED_STATUSES = (OperationStatus.PENDING, OperationStatus.IN_PROGRESS)


def datastore_probe(store: RecoveryStore, degraded_ms: float = 1000.0) -> Probe:
    """Round-trip a trivial query; slow is degraded, failing is unhealthy."""

    async def _probe() -> ProbeOutcome:
        try:
            latency_ms = await asyncio.to_thread(store.ping)
        except RecoveryStoreError as exc:
            return ProbeOutcome(status=HealthStatus.UNHEALTHY, detail=str(exc))
        if latency_ms > degraded_ms:
            return ProbeOutcome(
                status=HealthStatus.DEGRADED,
                detail=f"slow query: {latency_ms:.0f}ms",
            )
        return ProbeOutcome(
            status=HealthStatus.HEALTHY, detail=f"query: {latency_ms:.0f}ms"
        )

    return _probe


def queue_depth_probe(
    store: RecoveryStore,
    degraded_depth: int = 25,
    unhealthy_depth: int = 100,
) -> Probe:
    """Backlog of pending and in-progress recovery operations."""

    async def _probe() -> ProbeOutcome:
        depth = await asyncio.to_thread(store.count_operations, _QUEUED_STATUSES)
        detail = f"{depth} queued operations"
        if depth > unhealthy_depth:
            return ProbeOutcome(status=HealthStatus.UNHEALTHY, detail=detail)
        if depth > degraded_depth:
            return ProbeOutcome(status=HealthStatus.DEGRADED, detail=detail)
        return ProbeOutcome(status=HealthStatus.HEALTHY, detail=detail)

    return _probe


def circuit_breaker_probe(registry: CircuitBreakerRegistry) -> Probe:
    """Any open breaker degrades the system."""

    async def _probe() -> ProbeOutcome:
        open_names = registry.open_breakers()
        if open_names:
            return ProbeOutcome(
                status=HealthStatus.DEGRADED,
                detail="open: " + ", ".join(open_names),
            )
        return ProbeOutcome(status=HealthStatus.HEALTHY, detail="all closed")

    return _probe


def http_dependency_probe(
    settings: DependencyProbeSettings,
    client: httpx.AsyncClient | None = None,
    timeout: float = 5.0,
) -> Probe:
    """Probe an external dependency over HTTP.

    2xx/3xx is healthy, 429 degraded, 401/403 unhealthy (credentials),
    5xx unhealthy. A response slower than ``degraded_latency_ms`` is
    degraded. Without a URL the dependency is ``unknown``.
    """

    async def _request(http: httpx.AsyncClient, url: str) -> httpx.Response:
        return await http.request(settings.method, url, headers=settings.headers)

    async def _probe() -> ProbeOutcome:
        url = settings.url
        if not url:
            return ProbeOutcome(status=HealthStatus.UNKNOWN, detail="not configured")

        started = time.perf_counter()
        try:
            if client is not None:
                response = await _request(client, url)
            else:
                async with httpx.AsyncClient(timeout=timeout) as http:
                    response = await _request(http, url)
        except httpx.HTTPError as exc:
            return ProbeOutcome(
                status=HealthStatus.UNHEALTHY,
                detail=f"request failed: {exc}" if str(exc) else "request failed",
            )
        latency_ms = (time.perf_counter() - started) * 1000.0

        status = response.status_code
        if status in (401, 403):
            return ProbeOutcome(
                status=HealthStatus.UNHEALTHY, detail=f"auth rejected ({status})"
            )
        if status == 429:
            return ProbeOutcome(status=HealthStatus.DEGRADED, detail="rate limited")
        if status >= 500:
            return ProbeOutcome(
                status=HealthStatus.UNHEALTHY, detail=f"server error ({status})"
            )
        if status >= 400:
            return ProbeOutcome(
                status=HealthStatus.DEGRADED, detail=f"unexpected status ({status})"
            )
        if latency_ms > settings.degraded_latency_ms:
            return ProbeOutcome(
                status=HealthStatus.DEGRADED, detail=f"slow: {latency_ms:.0f}ms"
            )
        return ProbeOutcome(status=HealthStatus.HEALTHY, detail=f"HTTP {status}")

    return _probe


def register_default_probes(
    monitor: HealthMonitor,
    settings: HealthSettings,
    store: RecoveryStore | None,
    registry: CircuitBreakerRegistry,
) -> None:
    """Register the datastore, queue, breaker and configured HTTP probes."""
    if store is not None:
        monitor.register(
            "datastore", datastore_probe(store, settings.datastore_degraded_ms)
        )
        monitor.register(
            "recovery_queue",
            queue_depth_probe(
                store, settings.queue_degraded_depth, settings.queue_unhealthy_depth
            ),
        )
    monitor.register("circuit_breakers", circuit_breaker_probe(registry))
    for name, dependency in sorted(settings.dependencies.items()):
        monitor.register(
            name,
            http_dependency_probe(dependency, timeout=settings.probe_timeout_seconds),
        )
