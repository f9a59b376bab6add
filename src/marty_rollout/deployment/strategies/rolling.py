"""Rolling update: replace instances in place within surge and unavailability bounds."""

from __future__ import annotations

import math

import structlog

from ..exceptions import DeploymentError, InvalidStrategyConfigError
from ..models import DeploymentStrategy, RollingUpdateConfig
from ..phases import PhaseRunner
from .base import PhaseSequence, typed_config

logger = structlog.get_logger(__name__)


def resolve_bound(value: int | str, replicas: int, *, round_up: bool) -> int:
    """Turn an absolute or percentage bound into an instance count."""
    if isinstance(value, int):
        return value
    exact = replicas * int(value.strip().rstrip("%")) / 100
    return math.ceil(exact) if round_up else math.floor(exact)


class RollingUpdateSequence(PhaseSequence):
    def total_steps(self, strategy: DeploymentStrategy) -> int:
        return 4

    async def run(self, runner: PhaseRunner) -> None:
        deployment = await runner.load()
        config = typed_config(deployment.strategy, RollingUpdateConfig)
        environment = deployment.stable_environment
        replicas = deployment.baseline_replicas

        async with runner.phase("Preparing Rolling Update", 10, step=1):
            max_unavailable = resolve_bound(config.max_unavailable, replicas, round_up=False)
            max_surge = resolve_bound(config.max_surge, replicas, round_up=True)
            if max_unavailable == 0 and max_surge == 0:
                raise InvalidStrategyConfigError(
                    f"max_surge and max_unavailable both resolve to 0 for {replicas} replicas"
                )
            async with runner.update() as live:
                live.record_event(
                    "rolling_bounds_resolved",
                    replicas=replicas,
                    max_unavailable=max_unavailable,
                    max_surge=max_surge,
                )

        async with runner.phase("Executing Rolling Update", 30, step=2):
            await runner.bounded(
                self._roll(runner, environment, replicas, max_unavailable, max_surge, config)
            )

        async with runner.phase("Verifying Deployment", 70, step=3):
            await runner.bounded(runner.wait_healthy([environment]))
            instances = await runner.refresh_instances(environment)
            stale = [i.id for i in instances if i.version != deployment.version]
            if stale or len(instances) != replicas:
                raise DeploymentError(
                    f"Rolling update left {len(stale)} stale instances "
                    f"({len(instances)} of {replicas} running)",
                    details={"stale": stale},
                )

        async with runner.phase("Rolling Update Complete", 100, step=4):
            pass

    async def _roll(
        self,
        runner: PhaseRunner,
        environment: str,
        replicas: int,
        max_unavailable: int,
        max_surge: int,
        config: RollingUpdateConfig,
    ) -> None:
        deployment = await runner.load()
        application = deployment.application_name
        version = deployment.version

        while True:
            instances = await runner.refresh_instances(environment)
            old = [i for i in instances if i.version != version]
            new = [i for i in instances if i.version == version]
            if not old and len(new) >= replicas:
                return

            # Keep at least replicas - max_unavailable instances serving
            excess = len(old) + len(new) - (replicas - max_unavailable)
            terminate = max(0, min(len(old), excess))
            if terminate:
                await runner.platform(
                    "remove_instances", application, environment, [i.id for i in old[:terminate]]
                )

            # Never run more than replicas + max_surge instances
            room = replicas + max_surge - (len(old) - terminate + len(new))
            create = max(0, min(replicas - len(new), room))
            if create:
                created = await runner.platform(
                    "add_instances", application, environment, version, create
                )
                await runner.wait_ready(
                    environment, [i.id for i in created], config.min_ready_seconds
                )

            if not terminate and not create:
                raise DeploymentError(
                    f"Rolling update made no progress ({len(old)} old, {len(new)} new)"
                )
            async with runner.update() as live:
                live.record_event("batch_rolled", terminated=terminate, created=create)
            logger.info(
                "deployment.rolling.batch",
                terminated=terminate,
                created=create,
                old=len(old) - terminate,
                new=len(new) + create,
            )
