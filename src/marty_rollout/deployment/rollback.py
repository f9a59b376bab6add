"""Rollback execution for failed, cancelled or manually reverted deployments."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from ..observability import RolloutMetrics
from .enums import EnvironmentStatus, RollbackStatus
from .models import utc_now

if TYPE_CHECKING:
    from .phases import PhaseRunner

logger = structlog.get_logger(__name__)


class RollbackController:
    """Restores the baseline environment and routes all traffic back to it.

    Works for every strategy: the baseline environment (blue, stable or the
    single target environment) is converged to the rollback target version
    with the replica count recorded when the deployment started. The router's
    live weight table is then reset in one update when it is not already
    ``{baseline: 100}``, and only after that is the candidate environment torn
    down. The outcome of every attempt is stored on the deployment's
    ``rollback`` record; a failed attempt can be executed again.
    """

    def __init__(self, metrics: RolloutMetrics):
        self.metrics = metrics

    async def execute(self, runner: PhaseRunner) -> bool:
        """Execute the rollback recorded on the deployment; False if it failed."""
        async with runner.registry.mutate(runner.deployment_id, allow_terminal=True) as record:
            rollback = record.rollback
            if rollback is None:
                raise ValueError(f"Deployment {record.id} has no rollback recorded")
            rollback.status = RollbackStatus.PENDING
            rollback.attempts += 1
            rollback.error = None
            record.record_event("rollback_started", attempt=rollback.attempts)
            deployment = record.snapshot()
        rollback = deployment.rollback

        application = deployment.application_name
        baseline = deployment.stable_environment
        candidate = deployment.candidate_environment
        desired = {baseline: 100}
        if candidate is not None:
            desired[candidate] = 0

        logger.info(
            "deployment.rollback.started",
            target_version=rollback.target_version,
            automatic=rollback.automatic,
            triggered_by=rollback.triggered_by,
            reason=rollback.reason,
            attempt=rollback.attempts,
        )

        try:
            instances = await runner.platform(
                "create_or_update_environment",
                application,
                baseline,
                rollback.target_version,
                deployment.baseline_replicas,
            )
            # The router may be ahead of the record when a phase was interrupted mid-update
            release = await runner.platform("live_release", application)
            routed = {name: weight for name, weight in release.weights.items() if weight}
            shifted = routed != {baseline: 100}
            if shifted:
                await runner.platform("set_traffic_weights", application, desired)
            if candidate is not None:
                await runner.platform("decommission_environment", application, candidate)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("deployment.rollback.failed", error=str(exc), attempt=rollback.attempts)
            async with runner.registry.mutate(deployment.id, allow_terminal=True) as record:
                record.rollback.status = RollbackStatus.FAILED
                record.rollback.error = str(exc)
                record.record_event("rollback_failed", error=str(exc), attempt=rollback.attempts)
            self.metrics.rollback_failures_total.labels(
                strategy=deployment.strategy.type.value, trigger=rollback.triggered_by
            ).inc()
            return False

        async with runner.registry.mutate(deployment.id, allow_terminal=True) as record:
            base = record.environment(baseline)
            base.instances = list(instances)
            base.status = EnvironmentStatus.ACTIVE
            if candidate is not None:
                standby = record.environment(candidate)
                standby.instances = []
                standby.status = EnvironmentStatus.INACTIVE
            record.apply_traffic(desired)
            record.rollback.status = RollbackStatus.COMPLETED
            record.rollback.completed_at = utc_now()
            record.record_event(
                "rollback_completed",
                target_version=rollback.target_version,
                traffic_restored=shifted,
                attempt=rollback.attempts,
            )

        self.metrics.rollbacks_total.labels(
            strategy=deployment.strategy.type.value, trigger=rollback.triggered_by
        ).inc()
        logger.info("deployment.rollback.completed", target_version=rollback.target_version)
        return True
