"""Health check records and status aggregation."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, Field


class HealthStatus(StrEnum):
    """Health status of one component or of the whole system."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


# Higher rank wins during aggregation.
_SEVERITY: dict[HealthStatus, int] = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.UNKNOWN: 1,
    HealthStatus.DEGRADED: 2,
    HealthStatus.UNHEALTHY: 3,
}


def aggregate_status(statuses: Iterable[HealthStatus]) -> HealthStatus:
    """Return the worst status, ``unhealthy > degraded > unknown > healthy``.

    An empty input yields ``unknown``.
    """
    worst: HealthStatus | None = None
    for status in statuses:
        if worst is None or _SEVERITY[status] > _SEVERITY[worst]:
            worst = status
    return worst if worst is not None else HealthStatus.UNKNOWN


class ProbeOutcome(BaseModel):
    """What a probe reports; the monitor adds timing and identity."""

    status: HealthStatus
    detail: str = ""


class HealthCheckResult(BaseModel):
    """One probe outcome for one component."""

    id: int | None = None
    component: str
    status: HealthStatus
    latency_ms: float = Field(default=0.0, ge=0.0)
    detail: str = ""
    checked_at: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))


class SystemHealth(BaseModel):
    """Latest result per component plus the aggregated status."""

    overall: HealthStatus
    checked_at: datetime | None = None
    components: dict[str, HealthCheckResult] = Field(default_factory=dict)
