"""Periodic health monitor for the application's dependencies."""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections import deque
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import structlog

from submission_resilience.exceptions import RecoveryStoreError
from submission_resilience.health.models import (
    HealthCheckResult,
    HealthStatus,
    ProbeOutcome,
    SystemHealth,
    aggregate_status,
)

if TYPE_CHECKING:
    from submission_resilience.config import HealthSettings
    from submission_resilience.store import RecoveryStore

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

Probe = Callable[[], Awaitable[ProbeOutcome]]


class HealthMonitor:
    """Run registered probes concurrently and keep their latest results.

    Every probe is individually bounded by ``probe_timeout_seconds``; one
    hanging dependency cannot delay the others. Results are kept in a
    bounded in-memory history per component and appended to the store.
    """

    def __init__(
        self,
        store: RecoveryStore | None = None,
        probe_timeout_seconds: float = 5.0,
        interval_seconds: float = 30.0,
        history_limit: int = 100,
    ) -> None:
        self._store = store
        self._probe_timeout = probe_timeout_seconds
        self._interval = interval_seconds
        self._history_limit = history_limit
        self._probes: dict[str, Probe] = {}
        self._history: dict[str, deque[HealthCheckResult]] = {}
        self._task: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(
        cls, settings: HealthSettings, store: RecoveryStore | None = None
    ) -> HealthMonitor:
        return cls(
            store=store,
            probe_timeout_seconds=settings.probe_timeout_seconds,
            interval_seconds=settings.interval_seconds,
            history_limit=settings.history_limit,
        )

    # -- registration -------------------------------------------------------

    def register(self, component: str, probe: Probe) -> None:
        """Add a probe. Component names are unique."""
        if component in self._probes:
            msg = f"Health probe already registered: {component!r}"
            raise ValueError(msg)
        self._probes[component] = probe
        self._history[component] = deque(maxlen=self._history_limit)

    @property
    def components(self) -> list[str]:
        return sorted(self._probes)

    # -- cycles -------------------------------------------------------------

    async def run_cycle(self) -> SystemHealth:
        """Run every probe once and return the refreshed system health."""
        results = await asyncio.gather(
            *(self._run_probe(name, probe) for name, probe in self._probes.items())
        )

        health = self.latest()
        logger.info(
            "health_cycle_completed",
            overall=health.overall.value,
            components=len(results),
            unhealthy=[
                r.component for r in results if r.status is HealthStatus.UNHEALTHY
            ],
        )
        return health

    async def _run_probe(self, component: str, probe: Probe) -> HealthCheckResult:
        started = time.perf_counter()
        try:
            outcome = await asyncio.wait_for(probe(), timeout=self._probe_timeout)
        except TimeoutError:
            outcome = ProbeOutcome(status=HealthStatus.UNHEALTHY, detail="timeout")
            logger.warning("health_probe_failed", component=component, reason="timeout")
        except Exception as exc:
            outcome = ProbeOutcome(
                status=HealthStatus.UNHEALTHY, detail=str(exc) or type(exc).__name__
            )
            logger.warning("health_probe_failed", component=component, reason=str(exc))
        latency_ms = (time.perf_counter() - started) * 1000.0
        result = HealthCheckResult(
            component=component,
            status=outcome.status,
            latency_ms=latency_ms,
            detail=outcome.detail,
        )
        await self._record(result)
        return result

    async def _record(self, result: HealthCheckResult) -> None:
        # Recorded per probe so a hanging probe never holds back the others.
        self._history[result.component].append(result)
        if self._store is None:
            return
        try:
            await asyncio.to_thread(self._store.append_health_result, result)
        except RecoveryStoreError as exc:
            logger.warning(
                "health_persist_failed", component=result.component, reason=str(exc)
            )

    # -- reads --------------------------------------------------------------

    def latest(self) -> SystemHealth:
        """Latest result per component; never triggers a probe."""
        components = {
            name: history[-1] for name, history in self._history.items() if history
        }
        checked_at = max(
            (result.checked_at for result in components.values()), default=None
        )
        return SystemHealth(
            overall=aggregate_status(r.status for r in components.values()),
            checked_at=checked_at,
            components=components,
        )

    def history(self, component: str) -> list[HealthCheckResult]:
        return list(self._history.get(component, ()))

    # -- background loop ----------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the periodic loop on the running event loop."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop(), name="health-monitor")
        logger.info(
            "health_monitor_started",
            interval_seconds=self._interval,
            components=self.components,
        )

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("health_monitor_stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_cycle()
            except Exception:
                logger.exception("health_cycle_failed")
            await asyncio.sleep(self._interval)
