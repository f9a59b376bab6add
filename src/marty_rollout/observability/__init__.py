"""Logging and metrics for the rollout service."""

from .logging import configure_logging
from .metrics import MetricsMiddleware, RolloutMetrics

__all__ = ["MetricsMiddleware", "RolloutMetrics", "configure_logging"]
