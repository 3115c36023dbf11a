"""Health monitoring exports."""

from submission_resilience.health.models import (
    HealthCheckResult,
    HealthStatus,
    ProbeOutcome,
    SystemHealth,
    aggregate_status,
)
from submission_resilience.health.monitor import HealthMonitor

__all__ = [
    "HealthCheckResult",
    "HealthMonitor",
    "HealthStatus",
    "ProbeOutcome",
    "SystemHealth",
    "aggregate_status",
]
