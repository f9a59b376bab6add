"""
Builders for strategies, analysis configs and scripted analysis engines used
across the test suite. Every strategy here runs without real waits.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable

from marty_rollout.deployment import (
    AnalysisConfig,
    AnalysisEngine,
    AnalysisMetric,
    AnalysisResult,
    AnalysisStatus,
    BlueGreenConfig,
    CanaryConfig,
    CanaryStep,
    DeploymentStrategy,
    Recommendation,
    RecreateConfig,
    RollingUpdateConfig,
    StaticMetricsProvider,
    StrategyType,
    TrafficSplitConfig,
)
from marty_rollout.deployment.models import utc_now

FAST_SETTINGS = {
    "provision_backoff_min": 0.0,
    "provision_backoff_max": 0.0,
    "health_check_timeout_seconds": 0.5,
    "health_check_interval_seconds": 0.01,
}


def error_rate_analysis(**overrides) -> AnalysisConfig:
    options = {
        "metrics": (
            AnalysisMetric(
                name="error-rate",
                query="error_rate",
                success_threshold=0.01,
                failure_threshold=0.05,
            ),
        ),
        "duration_seconds": 0,
        "interval_seconds": 0,
        "success_condition": "error-rate <= 0.01",
        "failure_condition": "error-rate > 0.05",
    }
    options.update(overrides)
    return AnalysisConfig(**options)


def canary_strategy(
    strategy_id: str = "canary",
    weights: Iterable[int] = (10, 25, 50, 100),
    *,
    pause: float | None = None,
    approval_at: int | None = None,
    analysis: AnalysisConfig | None = None,
    auto_rollback: bool = True,
    deadline: float = 30.0,
) -> DeploymentStrategy:
    steps = tuple(
        CanaryStep(
            weight=weight,
            pause_duration_seconds=pause,
            pause_until_approved=weight == approval_at,
        )
        for weight in weights
    )
    return DeploymentStrategy(
        id=strategy_id,
        name="Canary (test)",
        type=StrategyType.CANARY,
        config=CanaryConfig(
            steps=steps,
            traffic_splitting=TrafficSplitConfig(canary_weight=10, stable_weight=90),
            analysis=analysis or error_rate_analysis(),
            auto_rollback_enabled=auto_rollback,
        ),
        progress_deadline_seconds=deadline,
    )


def blue_green_strategy(
    strategy_id: str = "blue-green",
    *,
    auto_promote: bool = True,
    analysis: AnalysisConfig | None = None,
    auto_rollback: bool = True,
) -> DeploymentStrategy:
    return DeploymentStrategy(
        id=strategy_id,
        name="Blue-Green (test)",
        type=StrategyType.BLUE_GREEN,
        config=BlueGreenConfig(
            auto_promote=auto_promote,
            scale_down_delay_seconds=0,
            pre_promotion_analysis=analysis or error_rate_analysis(),
            post_promotion_analysis=analysis or error_rate_analysis(),
            auto_rollback_enabled=auto_rollback,
        ),
        progress_deadline_seconds=30,
    )


def rolling_strategy(
    strategy_id: str = "rolling-update",
    *,
    max_unavailable: int | str = "25%",
    max_surge: int | str = "25%",
    min_ready_seconds: float = 0.0,
    auto_rollback: bool = False,
) -> DeploymentStrategy:
    return DeploymentStrategy(
        id=strategy_id,
        name="Rolling Update (test)",
        type=StrategyType.ROLLING_UPDATE,
        config=RollingUpdateConfig(
            max_unavailable=max_unavailable,
            max_surge=max_surge,
            min_ready_seconds=min_ready_seconds,
            auto_rollback_enabled=auto_rollback,
        ),
        progress_deadline_seconds=30,
    )


def recreate_strategy(strategy_id: str = "recreate", *, auto_rollback: bool = False) -> DeploymentStrategy:
    return DeploymentStrategy(
        id=strategy_id,
        name="Recreate (test)",
        type=StrategyType.RECREATE,
        config=RecreateConfig(auto_rollback_enabled=auto_rollback),
        progress_deadline_seconds=30,
    )


def sample_strategies() -> list[DeploymentStrategy]:
    return [
        canary_strategy(),
        canary_strategy("canary-gated", (20, 100), approval_at=20),
        canary_strategy("canary-paused", (50, 100), pause=0.05),
        canary_strategy("canary-no-rollback", auto_rollback=False),
        canary_strategy("canary-tight-deadline", deadline=0.05),
        blue_green_strategy(),
        blue_green_strategy("blue-green-manual", auto_promote=False),
        rolling_strategy(),
        rolling_strategy("rolling-auto-rollback", auto_rollback=True),
        rolling_strategy("rolling-frozen", max_unavailable="10%", max_surge=0),
        recreate_strategy(),
    ]


async def eventually(predicate: Callable[[], Awaitable[bool]], timeout: float = 2.0) -> None:
    """Poll an async predicate until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await predicate():
        if loop.time() >= deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


async def wait_for_gate(orchestrator, deployment_id: str) -> None:
    async def pending() -> bool:
        return (await orchestrator.get_deployment(deployment_id)).pending_approval

    await eventually(pending)


Decision = Callable[[str, bool], Recommendation]


def promote_always(environment: str, final: bool) -> Recommendation:
    return Recommendation.PROMOTE


class ScriptedAnalysisEngine(AnalysisEngine):
    """Analysis engine whose recommendations come from a decision function."""

    def __init__(self, decide: Decision = promote_always):
        super().__init__(StaticMetricsProvider())
        self.decide = decide
        self.calls: list[tuple[str, bool]] = []

    async def evaluate(self, config, environment, *, application, version, final):
        self.calls.append((environment, final))
        recommendation = self.decide(environment, final)
        failed = recommendation == Recommendation.ROLLBACK
        return AnalysisResult(
            status=AnalysisStatus.FAILED if failed else AnalysisStatus.SUCCESSFUL,
            overall_score=0.0 if failed else 100.0,
            recommendation=recommendation,
            end_time=utc_now(),
        )
