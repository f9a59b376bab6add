"""
Phase execution toolkit shared by the strategy sequences.

A :class:`PhaseRunner` is created for one deployment execution. It owns the
bookkeeping every sequence needs: phase status and milestones, the progress
deadline, retried platform calls, traffic updates, health polling, timed
pauses, approval gates and analysis checkpoints. Sequences only decide the
order of those operations.
"""

from __future__ import annotations

import asyncio
import builtins
import time
from collections.abc import AsyncIterator, Awaitable, Mapping, Sequence
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import AppSettings
from ..observability import RolloutMetrics
from .analysis import AnalysisEngine
from .enums import (
    DeploymentStatus,
    EnvironmentStatus,
    HealthStatus,
    InstanceStatus,
    PhaseStatus,
)
from .exceptions import DeadlineExceededError, EnvironmentProvisionError, HealthCheckTimeoutError
from .models import (
    AnalysisConfig,
    AnalysisResult,
    Deployment,
    EnvironmentInstance,
    TrafficSplitConfig,
    utc_now,
)
from .provisioner import EnvironmentProvisioner
from .registry import DeploymentRegistry

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ApprovalGates:
    """One releasable event per deployment waiting for an operator."""

    def __init__(self) -> None:
        self._events: builtins.dict[str, asyncio.Event] = {}

    def open(self, deployment_id: str) -> asyncio.Event:
        event = asyncio.Event()
        self._events[deployment_id] = event
        return event

    def release(self, deployment_id: str) -> bool:
        event = self._events.get(deployment_id)
        if event is None or event.is_set():
            return False
        event.set()
        return True

    def close(self, deployment_id: str) -> None:
        self._events.pop(deployment_id, None)

    def __contains__(self, deployment_id: object) -> bool:
        return deployment_id in self._events


class PhaseRunner:
    """Executes the phases of one deployment."""

    def __init__(
        self,
        deployment_id: str,
        *,
        registry: DeploymentRegistry,
        provisioner: EnvironmentProvisioner,
        analysis: AnalysisEngine,
        gates: ApprovalGates,
        settings: AppSettings,
        metrics: RolloutMetrics,
    ):
        self.deployment_id = deployment_id
        self.registry = registry
        self.provisioner = provisioner
        self.analysis = analysis
        self.gates = gates
        self.settings = settings
        self.metrics = metrics
        # Deadline budget left for active work in the current phase
        self._remaining: float | None = None

    # -- state access ------------------------------------------------------

    async def load(self) -> Deployment:
        return await self.registry.get(self.deployment_id)

    def update(self) -> AbstractAsyncContextManager[Deployment]:
        """Single-writer access to the live record."""
        return self.registry.mutate(self.deployment_id)

    # -- phases ------------------------------------------------------------

    @asynccontextmanager
    async def phase(self, name: str, progress: float, *, step: int | None = None) -> AsyncIterator[None]:
        """Run a block as the deployment's current phase."""
        started = time.monotonic()
        async with self.update() as deployment:
            deployment.phase.name = name
            deployment.phase.status = PhaseStatus.RUNNING
            deployment.phase.progress = progress
            deployment.phase.start_time = utc_now()
            deployment.phase.end_time = None
            deployment.phase.message = None
            if step is not None:
                deployment.current_step = step
            deployment.record_event("phase_started", progress=progress)
            strategy = deployment.strategy.type.value
            self._remaining = deployment.strategy.progress_deadline_seconds
        logger.info("deployment.phase.started", phase=name, progress=progress)

        try:
            yield
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            async with self.registry.mutate(self.deployment_id, allow_terminal=True) as deployment:
                deployment.phase.status = PhaseStatus.FAILED
                deployment.phase.end_time = utc_now()
                deployment.phase.message = str(exc)
                deployment.record_event("phase_failed", error=str(exc))
            self.metrics.phase_duration_seconds.labels(strategy=strategy, outcome="failed").observe(
                time.monotonic() - started
            )
            raise
        finally:
            self._remaining = None

        async with self.update() as deployment:
            deployment.phase.status = PhaseStatus.COMPLETED
            deployment.phase.end_time = utc_now()
            deployment.record_event("phase_completed")
        self.metrics.phase_duration_seconds.labels(strategy=strategy, outcome="completed").observe(
            time.monotonic() - started
        )
        logger.info("deployment.phase.completed", phase=name)

    async def bounded(self, awaitable: Awaitable[T]) -> T:
        """Await active work under the strategy's progress deadline.

        Inside a phase every bounded call draws on one budget of
        ``progress_deadline_seconds``, so the active work of the whole phase
        is limited. Pauses and approval waits are not bounded and do not
        consume it.
        """
        deployment = await self.load()
        deadline = deployment.strategy.progress_deadline_seconds
        remaining = deadline if self._remaining is None else self._remaining
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            return await asyncio.wait_for(awaitable, timeout=max(remaining, 0.0))
        except asyncio.TimeoutError:
            raise DeadlineExceededError(
                f"Phase '{deployment.phase.name}' exceeded the {deadline:g}s progress deadline",
                details={"phase": deployment.phase.name, "deadline_seconds": deadline},
            ) from None
        finally:
            if self._remaining is not None:
                self._remaining -= loop.time() - started

    # -- platform ----------------------------------------------------------

    async def platform(self, operation: str, *args: Any, **kwargs: Any) -> Any:
        """Call a provisioner operation, retrying transient failures."""
        method = getattr(self.provisioner, operation)
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.provision_max_attempts),
            wait=wait_exponential(
                multiplier=1,
                min=self.settings.provision_backoff_min,
                max=self.settings.provision_backoff_max,
            ),
            retry=retry_if_exception_type(EnvironmentProvisionError),
            before_sleep=self._before_retry(operation),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await method(*args, **kwargs)

    def _before_retry(self, operation: str):
        def callback(state: RetryCallState) -> None:
            self.metrics.provision_retries_total.labels(operation=operation).inc()
            error = state.outcome.exception() if state.outcome else None
            logger.warning(
                "deployment.platform.retry",
                operation=operation,
                attempt=state.attempt_number,
                error=str(error),
            )

        return callback

    async def provision(
        self, environment: str, version: str, replicas: int
    ) -> builtins.list[EnvironmentInstance]:
        """Converge an environment and mark it active."""
        deployment = await self.load()
        instances = await self.platform(
            "create_or_update_environment",
            deployment.application_name,
            environment,
            version,
            replicas,
        )
        async with self.update() as live:
            record = live.environment(environment)
            record.instances = list(instances)
            record.status = EnvironmentStatus.ACTIVE
            live.record_event("environment_provisioned", environment=environment, version=version, replicas=replicas)
        return instances

    async def decommission(self, environment: str) -> None:
        deployment = await self.load()
        await self.platform("decommission_environment", deployment.application_name, environment)
        async with self.update() as live:
            record = live.environment(environment)
            record.instances = []
            record.status = EnvironmentStatus.INACTIVE
            live.record_event("environment_decommissioned", environment=environment)

    async def set_environment_status(self, environment: str, status: EnvironmentStatus) -> None:
        async with self.update() as deployment:
            deployment.environment(environment).status = status

    async def refresh_instances(self, environment: str) -> builtins.list[EnvironmentInstance]:
        deployment = await self.load()
        instances = await self.platform(
            "describe_environment", deployment.application_name, environment
        )
        async with self.update() as live:
            live.environment(environment).instances = list(instances)
        return instances

    async def set_traffic(
        self, weights: Mapping[str, int], routing: TrafficSplitConfig | None = None
    ) -> None:
        """Apply a complete weight table in one router update."""
        table = dict(weights)
        if sum(table.values()) != 100:
            raise ValueError(f"Traffic weights must add up to 100, got {table}")
        deployment = await self.load()
        await self.platform("set_traffic_weights", deployment.application_name, table, routing)
        async with self.update() as live:
            live.apply_traffic(table)
            live.record_event("traffic_shifted", weights=table)
        logger.info("deployment.traffic.shifted", weights=table)

    # -- health ------------------------------------------------------------

    async def wait_healthy(self, environments: Sequence[str]) -> None:
        """Poll until every check of every environment reports healthy."""
        deployment = await self.load()
        application = deployment.application_name
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.health_check_timeout_seconds
        while True:
            unhealthy: builtins.dict[str, builtins.list[str]] = {}
            for environment in environments:
                results = await self.platform("health_check", application, environment)
                async with self.update() as live:
                    live.environment(environment).health_checks = list(results)
                failing = [r.name for r in results if r.status != HealthStatus.HEALTHY]
                if failing:
                    unhealthy[environment] = failing
            if not unhealthy:
                return
            if loop.time() >= deadline:
                raise HealthCheckTimeoutError(
                    f"Health checks did not pass within "
                    f"{self.settings.health_check_timeout_seconds:g}s: {unhealthy}",
                    details={"failing": unhealthy},
                )
            await asyncio.sleep(self.settings.health_check_interval_seconds)

    async def wait_ready(self, environment: str, instance_ids: Sequence[str], min_ready_seconds: float) -> None:
        """Wait until the given instances stay healthy for ``min_ready_seconds``."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.health_check_timeout_seconds + min_ready_seconds
        wanted = set(instance_ids)
        healthy_since: float | None = None
        while True:
            instances = await self.refresh_instances(environment)
            ready = {
                i.id
                for i in instances
                if i.id in wanted and i.status == InstanceStatus.HEALTHY and i.ready_replicas > 0
            }
            now = loop.time()
            if ready == wanted:
                if healthy_since is None:
                    healthy_since = now
                if now - healthy_since >= min_ready_seconds:
                    return
            else:
                healthy_since = None
            if now >= deadline:
                raise HealthCheckTimeoutError(
                    f"Instances {sorted(wanted - ready)} in '{environment}' not ready",
                    details={"environment": environment, "not_ready": sorted(wanted - ready)},
                )
            await asyncio.sleep(
                min(self.settings.health_check_interval_seconds, max(min_ready_seconds, 0.01))
            )

    # -- suspension --------------------------------------------------------

    async def pause(self, seconds: float | None) -> None:
        """Timed pause; the deployment reads ``paused`` while suspended."""
        if not seconds:
            return
        async with self.update() as deployment:
            deployment.transition(DeploymentStatus.PAUSED)
            deployment.record_event("paused", seconds=seconds)
        logger.info("deployment.paused", seconds=seconds)
        await asyncio.sleep(seconds)
        async with self.update() as deployment:
            deployment.transition(DeploymentStatus.PROGRESSING)
            deployment.record_event("resumed")

    async def wait_for_approval(self) -> None:
        """Hold the rollout until an operator approves it."""
        event = self.gates.open(self.deployment_id)
        async with self.update() as deployment:
            deployment.transition(DeploymentStatus.PAUSED)
            deployment.pending_approval = True
            deployment.record_event("approval_requested")
        logger.info("deployment.approval.requested")
        try:
            await event.wait()
        finally:
            self.gates.close(self.deployment_id)
            async with self.registry.mutate(self.deployment_id, allow_terminal=True) as deployment:
                deployment.pending_approval = False
        async with self.update() as deployment:
            deployment.transition(DeploymentStatus.PROGRESSING)
            deployment.record_event("approved")
        logger.info("deployment.approval.granted")

    # -- analysis ----------------------------------------------------------

    async def analyze(
        self, config: AnalysisConfig | None, environment: str, *, final: bool
    ) -> AnalysisResult:
        deployment = await self.load()
        result = await self.analysis.evaluate(
            config,
            environment,
            application=deployment.application_name,
            version=deployment.version,
            final=final,
        )
        async with self.update() as live:
            live.analysis = result
            live.record_event(
                "analysis_completed",
                environment=environment,
                status=result.status.value,
                score=result.overall_score,
                recommendation=result.recommendation.value,
            )
        self.metrics.analysis_score.labels(recommendation=result.recommendation.value).observe(
            result.overall_score
        )
        return result

    # -- common phases -----------------------------------------------------

    async def initialize(self) -> None:
        """Re-baseline the live release into the deployment's stable environment."""
        deployment = await self.load()
        baseline = deployment.stable_environment
        candidate = deployment.candidate_environment
        async with self.phase("Initialization", 0, step=0):
            live = await self.platform("live_release", deployment.application_name)
            await self.bounded(self.provision(baseline, live.version, deployment.baseline_replicas))

            desired = {baseline: 100}
            if candidate is not None:
                desired[candidate] = 0
            current = {name: weight for name, weight in live.weights.items() if weight}
            if current != {baseline: 100}:
                await self.set_traffic(desired)
            else:
                async with self.update() as record:
                    record.apply_traffic(desired)

            for stale in live.weights:
                if stale not in desired:
                    await self.platform(
                        "decommission_environment", deployment.application_name, stale
                    )
