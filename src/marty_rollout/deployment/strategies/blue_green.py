"""Blue-green: stand up green next to blue, verify it, then switch all traffic at once."""

from __future__ import annotations

import asyncio

import structlog

from ..enums import EnvironmentStatus, Recommendation
from ..exceptions import AnalysisFailedError
from ..models import BlueGreenConfig, DeploymentStrategy
from ..phases import PhaseRunner
from .base import PhaseSequence, typed_config

logger = structlog.get_logger(__name__)

BLUE = "blue"
GREEN = "green"


class BlueGreenSequence(PhaseSequence):
    baseline_environment = BLUE
    candidate_environment = GREEN

    def total_steps(self, strategy: DeploymentStrategy) -> int:
        return 7

    async def run(self, runner: PhaseRunner) -> None:
        deployment = await runner.load()
        config = typed_config(deployment.strategy, BlueGreenConfig)

        async with runner.phase("Pre-deployment Analysis", 0, step=1):
            result = await runner.bounded(
                runner.analyze(config.pre_promotion_analysis, BLUE, final=False)
            )
            if result.recommendation == Recommendation.ROLLBACK:
                raise AnalysisFailedError(
                    "Pre-deployment analysis failed, refusing to deploy",
                    details={"score": result.overall_score},
                )

        async with runner.phase("Deploying to Green Environment", 20, step=2):
            await runner.bounded(
                runner.provision(GREEN, deployment.version, deployment.baseline_replicas)
            )

        async with runner.phase("Health Checks", 40, step=3):
            current = await runner.load()
            active = [
                env.name for env in current.environments if env.status == EnvironmentStatus.ACTIVE
            ]
            await runner.bounded(runner.wait_healthy(active))

        async with runner.phase("Post-deployment Analysis", 60, step=4):
            result = await runner.bounded(
                runner.analyze(config.post_promotion_analysis, GREEN, final=True)
            )
            if result.recommendation != Recommendation.PROMOTE:
                raise AnalysisFailedError(
                    "Deployment analysis failed, refusing to switch traffic",
                    details={"score": result.overall_score, "status": result.status.value},
                )

        async with runner.phase("Switching Traffic", 80, step=5):
            if not config.auto_promote:
                await runner.wait_for_approval()
            await runner.bounded(runner.set_traffic({BLUE: 0, GREEN: 100}))
            await runner.set_environment_status(BLUE, EnvironmentStatus.DRAINING)
            await runner.set_environment_status(GREEN, EnvironmentStatus.ACTIVE)

        async with runner.phase("Scaling Down Blue Environment", 90, step=6):
            if config.scale_down_delay_seconds:
                logger.info("deployment.scale_down.delayed", seconds=config.scale_down_delay_seconds)
                await asyncio.sleep(config.scale_down_delay_seconds)
            await runner.bounded(runner.decommission(BLUE))

        async with runner.phase("Deployment Complete", 100, step=7):
            pass
