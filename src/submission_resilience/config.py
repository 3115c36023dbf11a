"""Configuration with 4-layer resolution: defaults -> YAML -> env -> overrides.

Uses pydantic-settings with YamlConfigSettingsSource for layered configuration.
Supports ``.env`` file loading, ``SUBMISSION_RESILIENCE_`` prefixed env vars,
and nested delimiter ``__`` for overriding sub-model fields.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, ClassVar, Literal

from pydantic import BaseModel, Field, ValidationError, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from submission_resilience.circuit_breaker import CircuitBreakerConfig
from submission_resilience.recovery.models import RetryPolicy


# ---------------------------------------------------------------------------
# Sub-models
# ---------------------------------------------------------------------------


def _default_dependency_policies() -> dict[str, RetryPolicy]:
    return {
        "google_docs": RetryPolicy(
            max_retries=3, base_delay_ms=1000, max_delay_ms=10_000
        ),
        "openai": RetryPolicy(max_retries=3, base_delay_ms=1000, max_delay_ms=15_000),
        "gemini": RetryPolicy(max_retries=3, base_delay_ms=1000, max_delay_ms=15_000),
        "action_network": RetryPolicy(
            max_retries=3, base_delay_ms=1000, max_delay_ms=8000
        ),
        "email": RetryPolicy(max_retries=2, base_delay_ms=2000, max_delay_ms=8000),
    }


class RetrySettings(BaseModel):
    """Default and per-dependency retry policies."""

    default_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    policies: dict[str, RetryPolicy] = Field(
        default_factory=_default_dependency_policies
    )


class CircuitBreakerSettings(BaseModel):
    """Default breaker thresholds and per-operation overrides."""

    default: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    overrides: dict[str, CircuitBreakerConfig] = Field(default_factory=dict)


class DependencyProbeSettings(BaseModel):
    """HTTP endpoint used as a lightweight availability probe."""

    url: str | None = None
    method: Literal["GET", "HEAD", "POST"] = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    degraded_latency_ms: float = Field(default=2000.0, gt=0.0)


class HealthSettings(BaseModel):
    """Health monitor scheduling and thresholds."""

    enabled: bool = True
    interval_seconds: float = Field(default=30.0, gt=0.0)
    probe_timeout_seconds: float = Field(default=5.0, gt=0.0)
    history_limit: int = Field(default=100, ge=1, le=10_000)
    datastore_degraded_ms: float = Field(default=1000.0, gt=0.0)
    queue_degraded_depth: int = Field(default=25, ge=0)
    queue_unhealthy_depth: int = Field(default=100, ge=0)
    dependencies: dict[str, DependencyProbeSettings] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_queue_thresholds(self) -> HealthSettings:
        if self.queue_unhealthy_depth < self.queue_degraded_depth:
            msg = "queue_unhealthy_depth must be >= queue_degraded_depth"
            raise ValueError(msg)
        return self


class RetentionSettings(BaseModel):
    """How long each table keeps its rows."""

    resolved_error_days: int = Field(default=30, ge=1)
    unresolved_error_days: int = Field(default=90, ge=1)
    recovery_operation_days: int = Field(default=30, ge=1)
    health_result_days: int = Field(default=7, ge=1)
    abandon_failed_after_hours: int = Field(default=72, ge=1)
    stale_in_progress_hours: int = Field(default=6, ge=1)


class StoreSettings(BaseModel):
    """Recovery store connection."""

    database_url: str = "sqlite:///./data/resilience.db"
    echo: bool = False


class AlertSettings(BaseModel):
    """Admin alert delivery channels."""

    webhook_url: str | None = None
    slack_webhook_url: str | None = None
    smtp_host: str | None = None
    smtp_port: int = Field(default=587, ge=1, le=65535)
    smtp_username: str | None = None
    smtp_password: str | None = None
    recipient: str | None = None
    timeout_seconds: float = Field(default=5.0, gt=0.0)


class APISettings(BaseModel):
    """FastAPI admin server settings."""

    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    """Logging / observability configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["console", "json"] = "console"
    file: Path | None = None


# ---------------------------------------------------------------------------
# Main Settings (4-layer resolution)
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Top-level application settings.

    Resolution order (last wins):
        1. Field defaults (defined above)
        2. YAML config file (``config.yaml`` or ``--config`` path)
        3. Environment variables (prefixed ``SUBMISSION_RESILIENCE_``)
        4. Programmatic overrides (applied after loading)
    """

    model_config = SettingsConfigDict(
        env_prefix="SUBMISSION_RESILIENCE_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        yaml_file="config.yaml",
        yaml_file_encoding="utf-8",
        extra="ignore",
    )

    _config_path_override: ClassVar[Path | None] = None

    retry: RetrySettings = Field(default_factory=RetrySettings)
    circuit_breaker: CircuitBreakerSettings = Field(
        default_factory=CircuitBreakerSettings
    )
    health: HealthSettings = Field(default_factory=HealthSettings)
    retention: RetentionSettings = Field(default_factory=RetentionSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    alerts: AlertSettings = Field(default_factory=AlertSettings)
    api: APISettings = Field(default_factory=APISettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customise settings source priority.

        Resolution order (first = highest priority):
            init_settings > env_settings > dotenv (.env) > yaml > defaults
        """
        yaml_file = cls._config_path_override or settings_cls.model_config.get(
            "yaml_file", "config.yaml"
        )
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls, yaml_file=yaml_file),
        )

    @classmethod
    def load(cls, config_path: Path | None = None, **overrides: Any) -> Settings:
        """Load settings with optional config path and overrides.

        Args:
            config_path: Optional path to a YAML config file.
            **overrides: Key-value overrides applied at highest priority.

        Returns:
            Fully-resolved Settings instance.

        Raises:
            ValidationError: If any setting value fails validation.
        """
        cls._config_path_override = config_path
        try:
            return cls(**overrides)
        finally:
            cls._config_path_override = None

    def policy_for(self, name: str | None) -> RetryPolicy:
        """Return the named retry policy, falling back to the default."""
        if name is None:
            return self.retry.default_policy
        return self.retry.policies.get(name, self.retry.default_policy)


def format_validation_error(exc: ValidationError) -> str:
    """Format a Pydantic ValidationError into a user-friendly message.

    Args:
        exc: The validation error to format.

    Returns:
        A multi-line string with each error on its own line.
    """
    lines: list[str] = []
    for error in exc.errors():
        loc = " -> ".join(str(part) for part in error["loc"])
        msg = error["msg"]
        raw_input = error.get("input")
        if raw_input is not None:
            lines.append(f"  {loc}: {msg} (got {raw_input!r})")
        else:
            lines.append(f"  {loc}: {msg}")
    return "Configuration error:\n" + "\n".join(lines)
