"""Process-level wiring of the resilience components."""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING

import structlog

from submission_resilience.admin import RecoveryAdmin
from submission_resilience.circuit_breaker import CircuitBreakerRegistry
from submission_resilience.handler import ErrorHandler, Notifier
from submission_resilience.health.monitor import HealthMonitor
from submission_resilience.health.probes import register_default_probes
from submission_resilience.notifications import AlertNotifier
from submission_resilience.recovery.executor import RetryExecutor, Sleep
from submission_resilience.store import RecoveryStore

if TYPE_CHECKING:
    from submission_resilience.circuit_breaker import Clock
    from submission_resilience.config import Settings

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


class ResilienceRuntime:
    """Owns one instance of every component and passes them explicitly.

    Built once at process start with :meth:`from_settings`; the HTTP app
    and the CLI both go through it instead of module-level singletons.
    """

    def __init__(
        self,
        settings: Settings,
        store: RecoveryStore,
        registry: CircuitBreakerRegistry,
        handler: ErrorHandler,
        executor: RetryExecutor,
        monitor: HealthMonitor,
    ) -> None:
        self.settings = settings
        self.store = store
        self.registry = registry
        self.handler = handler
        self.executor = executor
        self.monitor = monitor
        self.admin = RecoveryAdmin(
            store=store,
            registry=registry,
            executor=executor,
            monitor=monitor,
            handler=handler,
            retention=settings.retention,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        notifier: Notifier | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = time.time,
    ) -> ResilienceRuntime:
        store = RecoveryStore.from_settings(settings.store)
        store.initialize()

        registry = CircuitBreakerRegistry(
            default_config=settings.circuit_breaker.default,
            overrides=settings.circuit_breaker.overrides,
            clock=clock,
        )
        if notifier is None:
            alerts = AlertNotifier(settings.alerts)
            notifier = alerts if alerts.enabled else None

        handler = ErrorHandler(store, notifier)
        executor = RetryExecutor(
            handler,
            registry,
            store,
            default_policy=settings.retry.default_policy,
            policies=settings.retry.policies,
            sleep=sleep,
        )
        monitor = HealthMonitor.from_settings(settings.health, store)
        register_default_probes(monitor, settings.health, store, registry)
        return cls(settings, store, registry, handler, executor, monitor)

    async def start(self) -> None:
        if self.settings.health.enabled:
            self.monitor.start()
        logger.info("resilience_runtime_started", components=self.monitor.components)

    async def stop(self) -> None:
        await self.monitor.stop()
        await self.executor.drain()
        await self.handler.drain()
        self.store.dispose()
        logger.info("resilience_runtime_stopped")
