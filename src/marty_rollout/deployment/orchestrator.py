"""Main deployment orchestration engine."""

from __future__ import annotations

import asyncio
import builtins
import uuid
from typing import Any

import structlog

from ..config import AppSettings, get_settings
from ..observability import RolloutMetrics
from ..observability.logging import bind_deployment
from .analysis import AnalysisEngine, MetricsProvider, PrometheusMetricsProvider, StaticMetricsProvider
from .catalog import StrategyCatalog
from .enums import DeploymentStatus, EnvironmentStatus, EnvironmentType, PhaseStatus, RollbackStatus
from .exceptions import (
    AdmissionRejectedError,
    AnalysisFailedError,
    ApprovalNotPendingError,
    DeploymentTerminalError,
    InvalidDeploymentRequestError,
    RollbackFailedError,
)
from .models import (
    Deployment,
    DeploymentEnvironment,
    DeploymentStrategy,
    RollbackConfig,
    utc_now,
)
from .phases import ApprovalGates, PhaseRunner
from .provisioner import EnvironmentProvisioner, InMemoryProvisioner
from .registry import DeploymentRegistry
from .rollback import RollbackController
from .strategies import PhaseSequence, sequence_for

logger = structlog.get_logger(__name__)


class DeploymentOrchestrator:
    """Starts, drives, interrupts and rolls back deployments.

    Every deployment runs as its own asyncio task executing the phase sequence
    of its strategy. Operator commands (cancel, rollback, approve) interact
    with that task; all record changes go through the registry.
    """

    def __init__(
        self,
        settings: AppSettings | None = None,
        *,
        catalog: StrategyCatalog | None = None,
        provisioner: EnvironmentProvisioner | None = None,
        metrics_provider: MetricsProvider | None = None,
        analysis: AnalysisEngine | None = None,
        registry: DeploymentRegistry | None = None,
        metrics: RolloutMetrics | None = None,
    ):
        self.settings = settings or get_settings()

        if catalog is None:
            if self.settings.strategies_file is not None:
                catalog = StrategyCatalog.from_yaml(self.settings.strategies_file)
            else:
                catalog = StrategyCatalog.default()
        self.catalog = catalog

        self.provisioner = provisioner or InMemoryProvisioner(
            baseline_version=self.settings.baseline_version,
            baseline_replicas=self.settings.default_replicas,
            latency_seconds=self.settings.simulated_latency_seconds,
        )

        if analysis is None:
            if metrics_provider is None:
                if self.settings.prometheus_url:
                    metrics_provider = PrometheusMetricsProvider(
                        self.settings.prometheus_url, timeout=self.settings.prometheus_timeout_seconds
                    )
                else:
                    metrics_provider = StaticMetricsProvider()
            analysis = AnalysisEngine(metrics_provider)
        self.analysis = analysis

        self.registry = registry or DeploymentRegistry(max_history=self.settings.max_history)
        self.metrics = metrics or RolloutMetrics()
        self.gates = ApprovalGates()
        self.rollback_controller = RollbackController(self.metrics)

        self._tasks: builtins.dict[str, asyncio.Task] = {}
        self._interrupts: builtins.dict[str, str] = {}
        self._admission = asyncio.Lock()

    # -- commands ----------------------------------------------------------

    async def start_deployment(
        self,
        application_name: str,
        version: str,
        strategy_id: str,
        target_environment: str | EnvironmentType = EnvironmentType.PRODUCTION,
        previous_version: str | None = None,
    ) -> str:
        """Create a deployment and schedule its execution."""
        if not application_name or not version:
            raise InvalidDeploymentRequestError("applicationName and version are required")
        strategy = self.catalog.get(strategy_id)
        try:
            target = EnvironmentType(target_environment)
        except ValueError:
            raise InvalidDeploymentRequestError(
                f"Unknown target environment: {target_environment}",
                details={"allowed": [e.value for e in EnvironmentType]},
            ) from None
        sequence = sequence_for(strategy)

        async with self._admission:
            if not self.settings.allow_concurrent_rollouts:
                live = self.registry.live_for_application(application_name)
                if live:
                    raise AdmissionRejectedError(
                        f"Application {application_name} already has a rollout in progress",
                        details={"application_name": application_name, "deployment_ids": live},
                    )
            deployment = await self._new_deployment(
                application_name, version, strategy, sequence, target, previous_version
            )
            await self.registry.add(deployment)

        self.metrics.deployments_started_total.labels(strategy=strategy.type.value).inc()
        self.metrics.active_deployments.inc()
        task = asyncio.create_task(
            self._execute(deployment.id, sequence), name=f"deployment-{deployment.id}"
        )
        self._tasks[deployment.id] = task

        logger.info(
            "deployment.started",
            deployment_id=deployment.id,
            application=application_name,
            version=version,
            strategy=strategy.id,
            previous_version=deployment.previous_version,
        )
        return deployment.id

    async def _new_deployment(
        self,
        application_name: str,
        version: str,
        strategy: DeploymentStrategy,
        sequence: PhaseSequence,
        target: EnvironmentType,
        previous_version: str | None,
    ) -> Deployment:
        release = await self.provisioner.live_release(application_name)
        live_instances = []
        if release.environment is not None:
            live_instances = await self.provisioner.describe_environment(
                application_name, release.environment
            )

        baseline, candidate = sequence.environment_names(target)
        environments = [
            DeploymentEnvironment(
                name=baseline,
                type=target,
                url=self._environment_url(application_name, baseline),
                status=EnvironmentStatus.ACTIVE,
                instances=list(live_instances),
                traffic_weight=100,
            )
        ]
        if candidate is not None:
            environments.append(
                DeploymentEnvironment(
                    name=candidate,
                    type=target,
                    url=self._environment_url(application_name, candidate),
                )
            )

        if previous_version is None and release.replicas:
            previous_version = release.version

        deployment = Deployment(
            id=str(uuid.uuid4()),
            application_name=application_name,
            version=version,
            strategy=strategy,
            target_environment=target,
            previous_version=previous_version,
            total_steps=sequence.total_steps(strategy),
            environments=environments,
            stable_environment=baseline,
            candidate_environment=candidate,
            baseline_replicas=release.replicas or self.settings.default_replicas,
        )
        deployment.record_event(
            "deployment_created",
            strategy=strategy.id,
            version=version,
            previous_version=previous_version,
        )
        return deployment

    def _environment_url(self, application_name: str, environment: str) -> str:
        return self.settings.environment_url_template.format(
            application=application_name, environment=environment
        )

    async def rollback_deployment(self, deployment_id: str, reason: str = "") -> bool:
        """Manually roll a deployment back; False when the id is unknown.

        A rollback that is running or has completed makes this a no-op. One
        whose last attempt failed is executed again.
        """
        if deployment_id not in self.registry:
            return False
        deployment = await self.registry.get(deployment_id)
        if deployment.rollback is not None:
            if deployment.rollback.status != RollbackStatus.FAILED:
                return True
            async with self.registry.mutate(deployment_id, allow_terminal=True) as live:
                live.record_event("rollback_retried", reason=reason or live.rollback.reason)
            logger.info("deployment.rollback.retried", deployment_id=deployment_id)
            await self._execute_rollback(deployment_id)
            return True

        await self._interrupt(deployment_id, "rollback")

        async with self.registry.mutate(deployment_id, allow_terminal=True) as live:
            if live.rollback is not None:
                return True
            was_terminal = live.is_terminal
            live.rollback = RollbackConfig(
                target_version=self._rollback_target(live),
                reason=reason or "Manual rollback",
                automatic=False,
                triggered_by="manual",
            )
            live.transition(DeploymentStatus.ROLLBACK)
            live.pending_approval = False
            live.record_event("rollback_requested", reason=live.rollback.reason)
            snapshot = live.snapshot()

        if not was_terminal:
            self._record_finished(snapshot)
        logger.info(
            "deployment.rollback.requested",
            deployment_id=deployment_id,
            reason=snapshot.rollback.reason if snapshot.rollback else reason,
        )
        await self._execute_rollback(deployment_id)
        return True

    async def _execute_rollback(self, deployment_id: str) -> None:
        if not await self.rollback_controller.execute(self._runner(deployment_id)):
            deployment = await self.registry.get(deployment_id)
            error = deployment.rollback.error if deployment.rollback else None
            raise RollbackFailedError(
                f"Rollback of deployment {deployment_id} failed: {error}",
                details={"deployment_id": deployment_id, "error": error},
            )

    async def cancel(self, deployment_id: str, reason: str = "") -> None:
        """Stop a live deployment; roll back if traffic already moved."""
        deployment = await self.registry.get(deployment_id)
        if deployment.is_terminal:
            raise DeploymentTerminalError(
                f"Deployment {deployment_id} is already {deployment.status.value}",
                details={"deployment_id": deployment_id, "status": deployment.status.value},
            )

        await self._interrupt(deployment_id, "cancel")

        sequence = sequence_for(deployment.strategy)
        async with self.registry.mutate(deployment_id) as live:
            live.transition(DeploymentStatus.CANCELLED)
            live.pending_approval = False
            live.phase.message = reason or "Cancelled by operator"
            live.record_event("deployment_cancelled", reason=live.phase.message)
            if self.settings.rollback_on_cancel and sequence.traffic_shifted(live):
                live.rollback = RollbackConfig(
                    target_version=self._rollback_target(live),
                    reason=f"Cancelled: {live.phase.message}",
                    automatic=True,
                    triggered_by="cancel",
                )
            snapshot = live.snapshot()

        self._record_finished(snapshot)
        logger.info(
            "deployment.cancelled",
            deployment_id=deployment_id,
            reason=snapshot.phase.message,
            rollback=snapshot.rollback is not None,
        )
        if snapshot.rollback is not None:
            await self.rollback_controller.execute(self._runner(deployment_id))

    async def approve(self, deployment_id: str) -> None:
        """Release the approval gate a deployment is waiting at."""
        deployment = await self.registry.get(deployment_id)
        if not deployment.pending_approval or not self.gates.release(deployment_id):
            raise ApprovalNotPendingError(
                f"Deployment {deployment_id} is not waiting for approval",
                details={"deployment_id": deployment_id, "status": deployment.status.value},
            )
        logger.info("deployment.approved", deployment_id=deployment_id)

    # -- queries -----------------------------------------------------------

    async def get_deployment(self, deployment_id: str) -> Deployment:
        return await self.registry.get(deployment_id)

    async def list_deployments(
        self,
        status: str | DeploymentStatus | None = None,
        application_name: str | None = None,
    ) -> builtins.list[Deployment]:
        if status is not None and not isinstance(status, DeploymentStatus):
            try:
                status = DeploymentStatus(status)
            except ValueError:
                raise InvalidDeploymentRequestError(
                    f"Unknown deployment status: {status}",
                    details={"allowed": [s.value for s in DeploymentStatus]},
                ) from None
        return await self.registry.list(status=status, application_name=application_name)

    async def history(self, application_name: str) -> builtins.list[Deployment]:
        return await self.registry.history(application_name)

    def strategies(self) -> builtins.list[DeploymentStrategy]:
        return self.catalog.list()

    async def summary(self) -> builtins.dict[str, Any]:
        return await self.registry.summary()

    async def wait(self, deployment_id: str, timeout: float | None = None) -> Deployment:
        """Wait for a deployment's execution task to finish."""
        task = self._tasks.get(deployment_id)
        if task is not None:
            await asyncio.wait_for(asyncio.gather(task, return_exceptions=True), timeout=timeout)
        return await self.registry.get(deployment_id)

    async def shutdown(self) -> None:
        """Stop in-flight executions; their records end as failed."""
        running = [(i, t) for i, t in self._tasks.items() if not t.done()]
        for deployment_id, task in running:
            self._interrupts[deployment_id] = "shutdown"
            task.cancel()
        if running:
            await asyncio.gather(*(task for _, task in running), return_exceptions=True)
        for deployment_id, _ in running:
            try:
                async with self.registry.mutate(deployment_id) as live:
                    live.transition(DeploymentStatus.FAILED)
                    live.phase.status = PhaseStatus.FAILED
                    live.phase.message = "Orchestrator shut down"
                    live.record_event("deployment_interrupted", reason="shutdown")
                    snapshot = live.snapshot()
            except DeploymentTerminalError:
                continue
            self._record_finished(snapshot)
        close = getattr(self.analysis.provider, "aclose", None)
        if close is not None:
            await close()
        logger.info("orchestrator.shutdown", interrupted=len(running))

    # -- execution ---------------------------------------------------------

    def _runner(self, deployment_id: str) -> PhaseRunner:
        return PhaseRunner(
            deployment_id,
            registry=self.registry,
            provisioner=self.provisioner,
            analysis=self.analysis,
            gates=self.gates,
            settings=self.settings,
            metrics=self.metrics,
        )

    def _rollback_target(self, deployment: Deployment) -> str:
        return (
            deployment.previous_version
            or self.registry.last_good_version(deployment.application_name, exclude=deployment.id)
            or self.settings.baseline_version
        )

    async def _interrupt(self, deployment_id: str, reason: str) -> None:
        task = self._tasks.get(deployment_id)
        if task is None or task.done():
            return
        self._interrupts[deployment_id] = reason
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        # A task cancelled before its first step never reaches its own cleanup
        self._tasks.pop(deployment_id, None)
        self._interrupts.pop(deployment_id, None)

    async def _execute(self, deployment_id: str, sequence: PhaseSequence) -> None:
        deployment = await self.registry.get(deployment_id)
        bind_deployment(deployment_id, deployment.application_name)
        runner = self._runner(deployment_id)
        try:
            try:
                async with self.registry.mutate(deployment_id) as live:
                    live.transition(DeploymentStatus.PROGRESSING)
                    live.record_event("deployment_progressing")
                await runner.initialize()
                await sequence.run(runner)
            except asyncio.CancelledError:
                logger.info("deployment.interrupted", reason=self._interrupts.get(deployment_id))
                raise
            except Exception as exc:
                await self._fail(deployment_id, runner, exc)
            else:
                await self._succeed(deployment_id)
        finally:
            self._tasks.pop(deployment_id, None)
            self._interrupts.pop(deployment_id, None)

    async def _succeed(self, deployment_id: str) -> None:
        async with self.registry.mutate(deployment_id) as live:
            live.transition(DeploymentStatus.SUCCEEDED)
            live.record_event("deployment_succeeded")
            snapshot = live.snapshot()
        self._record_finished(snapshot)
        logger.info(
            "deployment.succeeded",
            version=snapshot.version,
            duration_seconds=snapshot.duration_seconds,
        )

    async def _fail(self, deployment_id: str, runner: PhaseRunner, exc: Exception) -> None:
        if isinstance(exc, AnalysisFailedError):
            logger.warning("deployment.failed", error=str(exc), error_code=exc.error_code)
        else:
            logger.error("deployment.failed", error=str(exc), exc_info=exc)

        async with self.registry.mutate(deployment_id) as live:
            live.transition(DeploymentStatus.FAILED)
            live.phase.status = PhaseStatus.FAILED
            live.phase.message = str(exc)
            if live.phase.end_time is None:
                live.phase.end_time = utc_now()
            live.record_event(
                "deployment_failed",
                error=str(exc),
                error_code=getattr(exc, "error_code", type(exc).__name__),
            )
            if live.strategy.auto_rollback_enabled:
                live.rollback = RollbackConfig(
                    target_version=self._rollback_target(live),
                    reason=f"Automatic rollback: {exc}",
                    automatic=True,
                    triggered_by="system",
                )
            snapshot = live.snapshot()

        self._record_finished(snapshot)
        if snapshot.rollback is not None:
            await self.rollback_controller.execute(runner)

    def _record_finished(self, deployment: Deployment) -> None:
        strategy = deployment.strategy.type.value
        self.metrics.deployments_finished_total.labels(
            strategy=strategy, status=deployment.status.value
        ).inc()
        if deployment.duration_seconds is not None:
            self.metrics.deployment_duration_seconds.labels(strategy=strategy).observe(
                deployment.duration_seconds
            )
        self.metrics.active_deployments.dec()
