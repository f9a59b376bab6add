"""
Prometheus metrics for rollouts and the HTTP command API.

Metrics are bound to an explicit ``CollectorRegistry`` so several orchestrators
(one per test, for instance) never collide on the process-wide default registry.
"""

from __future__ import annotations

import time
from collections.abc import Callable

from fastapi import Request, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware


class RolloutMetrics:
    """Rollout and HTTP metrics using the Prometheus client."""

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()

        # Rollout lifecycle
        self.deployments_started_total = Counter(
            "rollout_deployments_started_total",
            "Deployments accepted by the orchestrator",
            ["strategy"],
            registry=self.registry,
        )
        self.deployments_finished_total = Counter(
            "rollout_deployments_finished_total",
            "Deployments that reached a terminal status",
            ["strategy", "status"],
            registry=self.registry,
        )
        self.deployment_duration_seconds = Histogram(
            "rollout_deployment_duration_seconds",
            "Wall-clock duration of finished deployments",
            ["strategy"],
            buckets=[1, 10, 30, 60, 300, 600, 1800, 3600],
            registry=self.registry,
        )
        self.active_deployments = Gauge(
            "rollout_active_deployments",
            "Deployments currently pending, progressing or paused",
            registry=self.registry,
        )
        self.rollbacks_total = Counter(
            "rollout_rollbacks_total",
            "Rollbacks executed",
            ["strategy", "trigger"],
            registry=self.registry,
        )
        self.rollback_failures_total = Counter(
            "rollout_rollback_failures_total",
            "Rollback attempts that could not restore the baseline",
            ["strategy", "trigger"],
            registry=self.registry,
        )

        # Phases and analysis
        self.phase_duration_seconds = Histogram(
            "rollout_phase_duration_seconds",
            "Duration of individual rollout phases",
            ["strategy", "outcome"],
            buckets=[0.1, 1, 5, 15, 60, 300, 900],
            registry=self.registry,
        )
        self.analysis_score = Histogram(
            "rollout_analysis_score",
            "Weighted analysis score per checkpoint",
            ["recommendation"],
            buckets=[0, 25, 50, 70, 85, 95, 100],
            registry=self.registry,
        )
        self.provision_retries_total = Counter(
            "rollout_provision_retries_total",
            "Provisioner calls retried after a transient failure",
            ["operation"],
            registry=self.registry,
        )

        # HTTP command API
        self.http_requests_total = Counter(
            "rollout_http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry,
        )
        self.http_request_duration_seconds = Histogram(
            "rollout_http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5],
            registry=self.registry,
        )

    def render(self) -> Response:
        """Prometheus exposition of this registry."""
        return Response(content=generate_latest(self.registry), media_type=CONTENT_TYPE_LATEST)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware for collecting HTTP metrics."""

    def __init__(self, app, metrics: RolloutMetrics):
        super().__init__(app)
        self.metrics = metrics

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Skip metrics collection for metrics endpoint
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.time()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            duration = time.time() - start_time
            # Templated route path once routing has happened, raw path otherwise
            route = request.scope.get("route")
            endpoint = getattr(route, "path", request.url.path)
            self.metrics.http_requests_total.labels(
                method=request.method, endpoint=endpoint, status_code=status_code
            ).inc()
            self.metrics.http_request_duration_seconds.labels(
                method=request.method, endpoint=endpoint
            ).observe(duration)

        return response
