"""Canary: shift traffic to the new version in steps, analysing every step."""

from __future__ import annotations

import math

from ..enums import EnvironmentStatus, Recommendation
from ..exceptions import AnalysisFailedError
from ..models import CanaryConfig, DeploymentStrategy, StepRecord
from ..phases import PhaseRunner
from .base import PhaseSequence, typed_config

STABLE = "stable"
CANARY = "canary"


def canary_replicas(stable_replicas: int, max_surge_percent: int) -> int:
    """Size of the canary set: the surge share of the stable set, at least one."""
    return max(1, math.ceil(stable_replicas * max_surge_percent / 100))


class CanarySequence(PhaseSequence):
    baseline_environment = STABLE
    candidate_environment = CANARY

    def total_steps(self, strategy: DeploymentStrategy) -> int:
        config = typed_config(strategy, CanaryConfig)
        return len(config.steps) + 2

    async def run(self, runner: PhaseRunner) -> None:
        deployment = await runner.load()
        config = typed_config(deployment.strategy, CanaryConfig)
        steps = config.steps

        async with runner.phase("Deploying Canary", 10, step=1):
            replicas = canary_replicas(deployment.baseline_replicas, config.max_surge)
            await runner.bounded(runner.provision(CANARY, deployment.version, replicas))
            await runner.bounded(runner.wait_healthy([CANARY]))

        for index, step in enumerate(steps):
            progress = 20 + 60 * (index + 1) / len(steps)
            final = index == len(steps) - 1
            async with runner.phase(
                f"Canary Step {index + 1}: {step.weight}%", progress, step=index + 2
            ):
                await runner.bounded(
                    runner.set_traffic(
                        {STABLE: 100 - step.weight, CANARY: step.weight},
                        routing=config.traffic_splitting,
                    )
                )
                async with runner.update() as live:
                    live.step_history.append(StepRecord(index=index, weight=step.weight))

                await runner.pause(step.pause_duration_seconds)
                if step.pause_until_approved:
                    await runner.wait_for_approval()

                result = await runner.bounded(
                    runner.analyze(step.analysis or config.analysis, CANARY, final=final)
                )
                async with runner.update() as live:
                    recorded = live.step_history[-1]
                    live.step_history[-1] = StepRecord(
                        index=recorded.index,
                        weight=recorded.weight,
                        recommendation=result.recommendation,
                        timestamp=recorded.timestamp,
                    )
                if result.recommendation == Recommendation.ROLLBACK:
                    raise AnalysisFailedError(
                        f"Canary analysis failed at {step.weight}%, initiating rollback",
                        details={"step": index + 1, "weight": step.weight, "score": result.overall_score},
                    )

        async with runner.phase("Canary Deployment Complete", 100, step=len(steps) + 2):
            current = await runner.load()
            if current.environment(CANARY).replica_count < current.baseline_replicas:
                await runner.bounded(
                    runner.provision(CANARY, current.version, current.baseline_replicas)
                )
            if current.traffic() != {STABLE: 0, CANARY: 100}:
                await runner.bounded(runner.set_traffic({STABLE: 0, CANARY: 100}))
            await runner.set_environment_status(STABLE, EnvironmentStatus.DRAINING)
