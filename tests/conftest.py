"""Shared pytest fixtures for the submission-resilience test suite."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from submission_resilience.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
)
from submission_resilience.handler import ErrorHandler
from submission_resilience.recovery.executor import RetryExecutor
from submission_resilience.recovery.models import RetryPolicy
from submission_resilience.store import RecoveryStore

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

    from submission_resilience.errors import StandardError


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced wall clock in epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class RecordingNotifier:
    def __init__(self) -> None:
        self.errors: list[StandardError] = []

    async def notify(self, error: StandardError) -> None:
        self.errors.append(error)


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def store(tmp_path: Path) -> Iterator[RecoveryStore]:
    """A fresh SQLite-backed recovery store on ``tmp_path``."""
    recovery_store = RecoveryStore(f"sqlite:///{tmp_path / 'resilience.db'}")
    recovery_store.initialize()
    yield recovery_store
    recovery_store.dispose()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def breaker_config() -> CircuitBreakerConfig:
    return CircuitBreakerConfig(
        failure_threshold=3,
        success_threshold=2,
        open_timeout_seconds=30.0,
        monitoring_window_seconds=300.0,
    )


@pytest.fixture()
def registry(breaker_config: CircuitBreakerConfig, clock: FakeClock) -> CircuitBreakerRegistry:
    return CircuitBreakerRegistry(default_config=breaker_config, clock=clock)


@pytest.fixture()
def handler(store: RecoveryStore, notifier: RecordingNotifier) -> ErrorHandler:
    return ErrorHandler(store, notifier)


@pytest.fixture()
def fast_policy() -> RetryPolicy:
    return RetryPolicy(
        max_retries=3,
        base_delay_ms=100,
        max_delay_ms=1000,
        backoff_multiplier=2.0,
        jitter=0.0,
        attempt_timeout_seconds=5.0,
    )


@pytest.fixture()
def executor(
    handler: ErrorHandler,
    registry: CircuitBreakerRegistry,
    store: RecoveryStore,
    fast_policy: RetryPolicy,
    recording_sleep: RecordingSleep,
) -> RetryExecutor:
    return RetryExecutor(
        handler,
        registry,
        store,
        default_policy=fast_policy,
        sleep=recording_sleep,
    )
