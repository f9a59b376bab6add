"""Strongly typed application configuration."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    """Runtime configuration loaded from environment variables and `.env` files."""

    model_config = SettingsConfigDict(
        env_prefix="ROLLOUT_", env_file=".env", env_nested_delimiter="__"
    )

    service_name: str = Field(default="marty-rollout", description="Service identifier")
    environment: str = Field(default="local", description="Deployment environment name")
    host: str = Field(default="0.0.0.0", description="HTTP bind host")
    port: int = Field(default=8080, description="HTTP bind port")
    log_level: str = Field(default="INFO", description="Application log level")
    version: str = Field(default="0.1.0", description="Service semantic version")

    strategies_file: Path | None = Field(
        default=None, description="YAML strategy catalog replacing the built-in one"
    )

    # Admission control and cancellation policy
    allow_concurrent_rollouts: bool = Field(
        default=False,
        description="Accept a new rollout while another one of the same application is live",
    )
    rollback_on_cancel: bool = Field(
        default=True, description="Roll back cancelled deployments that already shifted traffic"
    )

    # Platform interaction
    provision_max_attempts: int = Field(default=3, ge=1)
    provision_backoff_min: float = Field(default=1.0, ge=0.0)
    provision_backoff_max: float = Field(default=10.0, ge=0.0)
    health_check_timeout_seconds: float = Field(default=120.0, gt=0.0)
    health_check_interval_seconds: float = Field(default=5.0, gt=0.0)

    # Simulated platform (used when no real provisioner is wired in)
    baseline_version: str = Field(
        default="1.0.0", description="Version assumed live for applications never deployed"
    )
    default_replicas: int = Field(default=3, ge=1)
    environment_url_template: str = Field(
        default="https://{environment}.{application}.internal"
    )
    simulated_latency_seconds: float = Field(default=0.0, ge=0.0)

    # Metrics backend
    prometheus_url: str | None = Field(
        default=None, description="Prometheus base URL for analysis queries"
    )
    prometheus_timeout_seconds: float = Field(default=10.0, gt=0.0)

    max_history: int = Field(default=1000, ge=1)

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        allowed = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
        upper_value = value.upper()
        if upper_value not in allowed:
            msg = f"Invalid log level '{value}'. Choose one of: {', '.join(sorted(allowed))}."
            raise ValueError(msg)
        return upper_value

    @property
    def bind(self) -> tuple[str, int]:
        """Return host/port for the HTTP server."""
        return self.host, self.port


@lru_cache
def get_settings() -> AppSettings:
    """Get cached application settings."""
    return AppSettings()
