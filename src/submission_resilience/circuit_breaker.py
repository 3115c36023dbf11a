"""Per-operation circuit breakers.

One state machine per ``operation_name``:

* **closed** - attempts pass. Failures inside the monitoring window are
  counted; reaching ``failure_threshold`` opens the breaker.
* **open** - attempts are rejected. Once ``open_timeout_seconds`` has
  elapsed since ``opened_at`` the *next* permission request moves the
  breaker to half-open. There is no background timer, so a breaker
  that sees no traffic stays open.
* **half_open** - one trial at a time. ``success_threshold`` trial
  successes close the breaker; any trial failure reopens it.

Callers that hold a :class:`CircuitPermit` from :meth:`acquire` report
outcomes against it. Every transition bumps the breaker's generation,
so an outcome from a call admitted under an earlier state is dropped
instead of being mistaken for the half-open trial.

Each breaker has its own lock, so callers on different operation names
never contend. The registry lock only guards lazy creation.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime
from enum import StrEnum
from typing import NamedTuple

import structlog
from pydantic import BaseModel, ConfigDict, Field

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

Clock = Callable[[], float]


class CircuitState(StrEnum):
    """Enumeration of possible circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerConfig(BaseModel):
    """Thresholds for a single breaker; fixed once the breaker exists."""

    model_config = ConfigDict(frozen=True)

    failure_threshold: int = Field(default=5, ge=1)
    success_threshold: int = Field(default=2, ge=1)
    open_timeout_seconds: float = Field(default=60.0, ge=0.0)
    monitoring_window_seconds: float = Field(default=300.0, gt=0.0)


class CircuitBreakerState(BaseModel):
    """Point-in-time view of one breaker, as persisted and reported."""

    operation_name: str
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = Field(default=0, ge=0)
    consecutive_successes: int = Field(default=0, ge=0)
    failure_threshold: int = Field(default=5, ge=1)
    success_threshold: int = Field(default=2, ge=1)
    open_timeout_ms: int = Field(default=60_000, ge=0)
    opened_at: datetime | None = None
    last_transition_at: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))


class CircuitTransition(BaseModel):
    """A single state change."""

    operation_name: str
    from_state: CircuitState
    to_state: CircuitState
    at: datetime


TransitionListener = Callable[[CircuitTransition, CircuitBreakerState], None]


class CircuitPermit(NamedTuple):
    """Admission for one attempt, tied to the breaker state that granted it."""

    operation_name: str
    generation: int
    trial: bool


def _to_datetime(ts: float | None) -> datetime | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=UTC)


class _Breaker:
    """Mutable per-key state. Only touched while holding ``lock``."""

    __slots__ = (
        "config",
        "consecutive_successes",
        "failure_times",
        "generation",
        "last_transition_at",
        "lock",
        "name",
        "opened_at",
        "state",
        "trial_in_flight",
    )

    def __init__(self, name: str, config: CircuitBreakerConfig, now: float) -> None:
        self.name = name
        self.config = config
        self.lock = threading.Lock()
        self.state = CircuitState.CLOSED
        self.failure_times: deque[float] = deque()
        self.consecutive_successes = 0
        self.opened_at: float | None = None
        self.last_transition_at = now
        self.trial_in_flight = False
        self.generation = 0

    def is_stale(self, permit: CircuitPermit | None) -> bool:
        return permit is not None and permit.generation != self.generation

    def prune(self, now: float) -> None:
        cutoff = now - self.config.monitoring_window_seconds
        while self.failure_times and self.failure_times[0] < cutoff:
            self.failure_times.popleft()

    def snapshot(self) -> CircuitBreakerState:
        return CircuitBreakerState(
            operation_name=self.name,
            state=self.state,
            consecutive_failures=len(self.failure_times),
            consecutive_successes=self.consecutive_successes,
            failure_threshold=self.config.failure_threshold,
            success_threshold=self.config.success_threshold,
            open_timeout_ms=int(self.config.open_timeout_seconds * 1000),
            opened_at=_to_datetime(self.opened_at),
            last_transition_at=_to_datetime(self.last_transition_at)
            or datetime.now(tz=UTC),
        )


class CircuitBreakerRegistry:
    """Registry of live breakers keyed by operation name.

    Constructed once per process and passed explicitly to the retry
    executor and the health monitor. The in-memory state here is the
    source of truth for gating; the recovery store only receives copies
    through transition listeners.
    """

    def __init__(
        self,
        default_config: CircuitBreakerConfig | None = None,
        overrides: dict[str, CircuitBreakerConfig] | None = None,
        clock: Clock = time.time,
    ) -> None:
        self._default_config = default_config or CircuitBreakerConfig()
        self._overrides = dict(overrides or {})
        self._clock = clock
        self._breakers: dict[str, _Breaker] = {}
        self._registry_lock = threading.Lock()
        self._listeners: list[TransitionListener] = []

    # -- configuration ------------------------------------------------------

    def configure(self, operation_name: str, config: CircuitBreakerConfig) -> None:
        """Set thresholds for a breaker that has not been used yet.

        Raises:
            ValueError: If the breaker already exists with another config.
        """
        with self._registry_lock:
            existing = self._breakers.get(operation_name)
            if existing is not None and existing.config != config:
                msg = f"Circuit breaker {operation_name!r} is already configured"
                raise ValueError(msg)
            self._overrides[operation_name] = config

    def config_for(self, operation_name: str) -> CircuitBreakerConfig:
        return self._overrides.get(operation_name, self._default_config)

    def add_listener(self, listener: TransitionListener) -> None:
        """Register a callback invoked after every state transition."""
        self._listeners.append(listener)

    # -- gating -------------------------------------------------------------

    def acquire(self, operation_name: str) -> CircuitPermit | None:
        """Ask permission for one attempt.

        Returns a permit when the attempt may proceed, ``None`` when it is
        rejected. In half-open state the permit reserves the single trial
        slot until its outcome is recorded or it is released.
        """
        breaker = self._breaker(operation_name)
        transition: CircuitTransition | None = None
        with breaker.lock:
            now = self._clock()
            if breaker.state is CircuitState.CLOSED:
                return CircuitPermit(operation_name, breaker.generation, trial=False)

            if breaker.state is CircuitState.OPEN:
                opened_at = breaker.opened_at if breaker.opened_at is not None else now
                if now - opened_at < breaker.config.open_timeout_seconds:
                    allowed = False
                else:
                    transition = self._transition(breaker, CircuitState.HALF_OPEN, now)
                    breaker.consecutive_successes = 0
                    breaker.trial_in_flight = True
                    allowed = True
            elif breaker.trial_in_flight:
                allowed = False
            else:
                breaker.trial_in_flight = True
                allowed = True

            permit = (
                CircuitPermit(operation_name, breaker.generation, trial=True)
                if allowed
                else None
            )
            snapshot = breaker.snapshot() if transition else None

        if transition is not None and snapshot is not None:
            self._notify(transition, snapshot)
        if permit is None:
            logger.debug("circuit_rejected", operation_name=operation_name)
        return permit

    def try_acquire(self, operation_name: str) -> bool:
        """Like :meth:`acquire`, for callers that report without a permit."""
        return self.acquire(operation_name) is not None

    def release(
        self, operation_name: str, permit: CircuitPermit | None = None
    ) -> None:
        """Free a reserved half-open trial without recording an outcome."""
        breaker = self._breaker(operation_name)
        with breaker.lock:
            if permit is None or (permit.trial and not breaker.is_stale(permit)):
                breaker.trial_in_flight = False

    def record_success(
        self, operation_name: str, permit: CircuitPermit | None = None
    ) -> CircuitBreakerState:
        breaker = self._breaker(operation_name)
        transition: CircuitTransition | None = None
        with breaker.lock:
            now = self._clock()
            if breaker.is_stale(permit):
                logger.debug("circuit_stale_outcome", operation_name=operation_name)
                return breaker.snapshot()
            breaker.trial_in_flight = False
            # A straggler admitted before the breaker opened does not close it.
            if breaker.state is not CircuitState.OPEN:
                breaker.failure_times.clear()
                breaker.consecutive_successes += 1
            if (
                breaker.state is CircuitState.HALF_OPEN
                and breaker.consecutive_successes >= breaker.config.success_threshold
            ):
                transition = self._transition(breaker, CircuitState.CLOSED, now)
                breaker.consecutive_successes = 0
                breaker.opened_at = None
            snapshot = breaker.snapshot()

        if transition is not None:
            self._notify(transition, snapshot)
        return snapshot

    def record_failure(
        self, operation_name: str, permit: CircuitPermit | None = None
    ) -> CircuitBreakerState:
        breaker = self._breaker(operation_name)
        transition: CircuitTransition | None = None
        with breaker.lock:
            now = self._clock()
            if breaker.is_stale(permit):
                logger.debug("circuit_stale_outcome", operation_name=operation_name)
                return breaker.snapshot()
            breaker.trial_in_flight = False
            breaker.consecutive_successes = 0
            breaker.prune(now)
            breaker.failure_times.append(now)

            if breaker.state is CircuitState.HALF_OPEN or (
                breaker.state is CircuitState.CLOSED
                and len(breaker.failure_times) >= breaker.config.failure_threshold
            ):
                transition = self._transition(breaker, CircuitState.OPEN, now)
                breaker.opened_at = now
            snapshot = breaker.snapshot()

        if transition is not None:
            self._notify(transition, snapshot)
        return snapshot

    # -- administration -----------------------------------------------------

    def reset(self, operation_name: str) -> CircuitBreakerState:
        """Force a breaker back to closed with zeroed counters."""
        breaker = self._breaker(operation_name)
        transition: CircuitTransition | None = None
        with breaker.lock:
            now = self._clock()
            if breaker.state is not CircuitState.CLOSED:
                transition = self._transition(breaker, CircuitState.CLOSED, now)
            breaker.failure_times.clear()
            breaker.consecutive_successes = 0
            breaker.opened_at = None
            breaker.trial_in_flight = False
            snapshot = breaker.snapshot()

        if transition is not None:
            self._notify(transition, snapshot)
        logger.info("circuit_reset", operation_name=operation_name)
        return snapshot

    def state_of(self, operation_name: str) -> CircuitBreakerState:
        """Return the current snapshot without triggering lazy transitions."""
        breaker = self._breaker(operation_name)
        with breaker.lock:
            breaker.prune(self._clock())
            return breaker.snapshot()

    def snapshot(self) -> dict[str, CircuitBreakerState]:
        with self._registry_lock:
            names = list(self._breakers)
        return {name: self.state_of(name) for name in names}

    def open_breakers(self) -> list[str]:
        return sorted(
            name
            for name, state in self.snapshot().items()
            if state.state is CircuitState.OPEN
        )

    # -- internals ----------------------------------------------------------

    def _breaker(self, operation_name: str) -> _Breaker:
        breaker = self._breakers.get(operation_name)
        if breaker is not None:
            return breaker
        with self._registry_lock:
            breaker = self._breakers.get(operation_name)
            if breaker is None:
                breaker = _Breaker(
                    operation_name,
                    self.config_for(operation_name),
                    self._clock(),
                )
                self._breakers[operation_name] = breaker
            return breaker

    @staticmethod
    def _transition(
        breaker: _Breaker, to_state: CircuitState, now: float
    ) -> CircuitTransition:
        transition = CircuitTransition(
            operation_name=breaker.name,
            from_state=breaker.state,
            to_state=to_state,
            at=datetime.fromtimestamp(now, tz=UTC),
        )
        breaker.state = to_state
        breaker.generation += 1
        breaker.last_transition_at = now
        return transition

    def _notify(
        self, transition: CircuitTransition, snapshot: CircuitBreakerState
    ) -> None:
        logger.info(
            "circuit_transition",
            operation_name=transition.operation_name,
            from_state=transition.from_state.value,
            to_state=transition.to_state.value,
            consecutive_failures=snapshot.consecutive_failures,
        )
        for listener in self._listeners:
            try:
                listener(transition, snapshot)
            except Exception:
                logger.exception(
                    "circuit_listener_failed",
                    operation_name=transition.operation_name,
                )
