"""Unit tests for the health monitor and status aggregation."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest

from submission_resilience.health import HealthMonitor
from submission_resilience.health.models import (
    HealthStatus,
    ProbeOutcome,
    aggregate_status,
)

if TYPE_CHECKING:
    from submission_resilience.health.monitor import Probe
    from submission_resilience.store import RecoveryStore


def _fixed(status: HealthStatus, detail: str = "") -> Probe:
    async def _probe() -> ProbeOutcome:
        return ProbeOutcome(status=status, detail=detail)

    return _probe


class TestAggregateStatus:
    def test_empty_is_unknown(self) -> None:
        assert aggregate_status([]) is HealthStatus.UNKNOWN

    def test_all_healthy(self) -> None:
        assert (
            aggregate_status([HealthStatus.HEALTHY, HealthStatus.HEALTHY])
            is HealthStatus.HEALTHY
        )

    @pytest.mark.parametrize(
        ("statuses", "expected"),
        [
            ([HealthStatus.HEALTHY, HealthStatus.DEGRADED], HealthStatus.DEGRADED),
            ([HealthStatus.DEGRADED, HealthStatus.UNHEALTHY], HealthStatus.UNHEALTHY),
            ([HealthStatus.HEALTHY, HealthStatus.UNKNOWN], HealthStatus.UNKNOWN),
            ([HealthStatus.UNKNOWN, HealthStatus.DEGRADED], HealthStatus.DEGRADED),
        ],
    )
    def test_worst_wins(
        self, statuses: list[HealthStatus], expected: HealthStatus
    ) -> None:
        assert aggregate_status(statuses) is expected


class TestRunCycle:
    @pytest.mark.asyncio
    async def test_hanging_probe_times_out(self) -> None:
        monitor = HealthMonitor(probe_timeout_seconds=0.05)

        async def hangs() -> ProbeOutcome:
            await asyncio.sleep(10)
            return ProbeOutcome(status=HealthStatus.HEALTHY)

        monitor.register("google_docs", hangs)
        monitor.register("datastore", _fixed(HealthStatus.HEALTHY, "query: 1ms"))

        health = await monitor.run_cycle()

        docs = health.components["google_docs"]
        assert docs.status is HealthStatus.UNHEALTHY
        assert docs.detail == "timeout"
        assert health.components["datastore"].status is HealthStatus.HEALTHY
        assert health.overall is HealthStatus.UNHEALTHY

    @pytest.mark.asyncio
    async def test_fast_result_recorded_while_slow_probe_pending(
        self, store: RecoveryStore
    ) -> None:
        monitor = HealthMonitor(store=store, probe_timeout_seconds=5.0)
        release = asyncio.Event()

        async def slow() -> ProbeOutcome:
            await release.wait()
            return ProbeOutcome(status=HealthStatus.HEALTHY)

        monitor.register("google_docs", slow)
        monitor.register("datastore", _fixed(HealthStatus.HEALTHY, "query: 1ms"))

        cycle = asyncio.create_task(monitor.run_cycle())
        for _ in range(200):
            if monitor.history("datastore") and store.latest_health_results():
                break
            await asyncio.sleep(0.01)

        assert [r.status for r in monitor.history("datastore")] == [
            HealthStatus.HEALTHY
        ]
        assert monitor.history("google_docs") == []
        assert not cycle.done()
        assert set(store.latest_health_results()) == {"datastore"}

        release.set()
        health = await cycle
        assert set(health.components) == {"datastore", "google_docs"}

    @pytest.mark.asyncio
    async def test_raising_probe_is_unhealthy(self) -> None:
        monitor = HealthMonitor()

        async def broken() -> ProbeOutcome:
            raise RuntimeError("dns lookup failed")

        monitor.register("openai", broken)
        health = await monitor.run_cycle()

        assert health.components["openai"].status is HealthStatus.UNHEALTHY
        assert health.components["openai"].detail == "dns lookup failed"

    @pytest.mark.asyncio
    async def test_degraded_overall(self) -> None:
        monitor = HealthMonitor()
        monitor.register("a", _fixed(HealthStatus.HEALTHY))
        monitor.register("b", _fixed(HealthStatus.DEGRADED, "slow"))
        health = await monitor.run_cycle()
        assert health.overall is HealthStatus.DEGRADED
        assert health.checked_at is not None

    @pytest.mark.asyncio
    async def test_results_persisted(self, store: RecoveryStore) -> None:
        monitor = HealthMonitor(store=store)
        monitor.register("datastore", _fixed(HealthStatus.HEALTHY))
        monitor.register("email", _fixed(HealthStatus.DEGRADED))

        await monitor.run_cycle()
        await monitor.run_cycle()

        history = store.get_health_history()
        assert len(history) == 4
        latest = store.latest_health_results()
        assert latest["email"].status is HealthStatus.DEGRADED

    @pytest.mark.asyncio
    async def test_no_probes(self) -> None:
        health = await HealthMonitor().run_cycle()
        assert health.overall is HealthStatus.UNKNOWN
        assert health.components == {}


class TestHistory:
    def test_latest_before_any_cycle(self) -> None:
        monitor = HealthMonitor()
        monitor.register("a", _fixed(HealthStatus.HEALTHY))
        health = monitor.latest()
        assert health.overall is HealthStatus.UNKNOWN
        assert health.checked_at is None

    @pytest.mark.asyncio
    async def test_history_is_bounded(self) -> None:
        monitor = HealthMonitor(history_limit=2)
        monitor.register("a", _fixed(HealthStatus.HEALTHY))
        for _ in range(3):
            await monitor.run_cycle()
        assert len(monitor.history("a")) == 2

    def test_unknown_component_history_empty(self) -> None:
        assert HealthMonitor().history("nope") == []

    def test_duplicate_registration_rejected(self) -> None:
        monitor = HealthMonitor()
        monitor.register("a", _fixed(HealthStatus.HEALTHY))
        with pytest.raises(ValueError, match="already registered"):
            monitor.register("a", _fixed(HealthStatus.HEALTHY))
        assert monitor.components == ["a"]


class TestBackgroundLoop:
    @pytest.mark.asyncio
    async def test_start_and_stop(self) -> None:
        monitor = HealthMonitor(interval_seconds=60)
        monitor.register("a", _fixed(HealthStatus.HEALTHY))

        monitor.start()
        assert monitor.is_running
        for _ in range(100):
            if monitor.history("a"):
                break
            await asyncio.sleep(0.01)
        assert len(monitor.history("a")) == 1

        await monitor.stop()
        assert monitor.is_running is False

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self) -> None:
        monitor = HealthMonitor(interval_seconds=60)
        monitor.start()
        first = monitor._task
        monitor.start()
        assert monitor._task is first
        await monitor.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start(self) -> None:
        await HealthMonitor().stop()
