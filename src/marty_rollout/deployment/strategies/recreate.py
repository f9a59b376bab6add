"""Recreate: stop the old version, then start the new one."""

from __future__ import annotations

from ..models import DeploymentStrategy
from ..phases import PhaseRunner
from .base import PhaseSequence


class RecreateSequence(PhaseSequence):
    def total_steps(self, strategy: DeploymentStrategy) -> int:
        return 4

    async def run(self, runner: PhaseRunner) -> None:
        deployment = await runner.load()
        environment = deployment.stable_environment

        async with runner.phase("Stopping Old Version", 10, step=1):
            await runner.bounded(runner.decommission(environment))

        async with runner.phase("Deploying New Version", 40, step=2):
            await runner.bounded(
                runner.provision(environment, deployment.version, deployment.baseline_replicas)
            )

        async with runner.phase("Health Checks", 70, step=3):
            await runner.bounded(runner.wait_healthy([environment]))

        async with runner.phase("Recreate Complete", 100, step=4):
            pass
