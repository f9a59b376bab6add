"""
Input schema of strategy catalog files.

YAML documents are validated with pydantic and then converted into the frozen
template dataclasses the orchestrator works with. Flags are strict booleans,
so ``"false"`` or ``"no"`` in a file is rejected instead of silently enabling
a feature.
"""

from __future__ import annotations

from typing import Annotated, Any, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt

from .enums import MetricProviderType, StrategyType
from .models import (
    AnalysisConfig,
    AnalysisMetric,
    BlueGreenConfig,
    CanaryConfig,
    CanaryStep,
    DeploymentConfig,
    DeploymentStrategy,
    HeaderRouting,
    RecreateConfig,
    RollingUpdateConfig,
    TrafficSplitConfig,
)

Weight = Annotated[int, Field(ge=0, le=100)]
Seconds = Annotated[float, Field(ge=0)]
# Absolute instance count or a "25%" style percentage
Bound = Union[Annotated[StrictInt, Field(ge=0)], str]


class CatalogModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class AnalysisMetricSpec(CatalogModel):
    name: str = Field(min_length=1)
    query: str = ""
    success_threshold: float
    failure_threshold: float
    weight: float = Field(default=1.0, gt=0)
    provider: MetricProviderType = MetricProviderType.PROMETHEUS

    def build(self) -> AnalysisMetric:
        return AnalysisMetric(
            name=self.name,
            query=self.query,
            success_threshold=self.success_threshold,
            failure_threshold=self.failure_threshold,
            weight=self.weight,
            provider=self.provider,
        )


class AnalysisSpec(CatalogModel):
    metrics: list[AnalysisMetricSpec] = Field(default_factory=list)
    duration_seconds: Seconds = 0.0
    interval_seconds: Seconds = 30.0
    success_condition: str = ""
    failure_condition: str = ""
    inconclusive_condition: str | None = None
    enabled: StrictBool = True
    consecutive_successes: int = Field(default=1, ge=1)

    def build(self) -> AnalysisConfig:
        return AnalysisConfig(
            metrics=tuple(metric.build() for metric in self.metrics),
            duration_seconds=self.duration_seconds,
            interval_seconds=self.interval_seconds,
            success_condition=self.success_condition,
            failure_condition=self.failure_condition,
            inconclusive_condition=self.inconclusive_condition,
            enabled=self.enabled,
            consecutive_successes=self.consecutive_successes,
        )


def _build(spec: AnalysisSpec | None) -> AnalysisConfig | None:
    return spec.build() if spec is not None else None


class CanaryStepSpec(CatalogModel):
    weight: Weight
    pause_duration_seconds: Seconds | None = None
    pause_until_approved: StrictBool = False
    analysis: AnalysisSpec | None = None


class HeaderRoutingSpec(CatalogModel):
    name: str = Field(min_length=1)
    value: str
    weight: Weight = 100


class TrafficSplitSpec(CatalogModel):
    canary_weight: Weight = 0
    stable_weight: Weight = 100
    header_routing: list[HeaderRoutingSpec] = Field(default_factory=list)
    mirror_traffic: StrictBool = False


class BlueGreenSpec(CatalogModel):
    auto_promote: StrictBool = True
    scale_down_delay_seconds: Seconds = 0.0
    pre_promotion_analysis: AnalysisSpec | None = None
    post_promotion_analysis: AnalysisSpec | None = None
    auto_rollback_enabled: StrictBool = True

    def build(self) -> BlueGreenConfig:
        return BlueGreenConfig(
            auto_promote=self.auto_promote,
            scale_down_delay_seconds=self.scale_down_delay_seconds,
            pre_promotion_analysis=_build(self.pre_promotion_analysis),
            post_promotion_analysis=_build(self.post_promotion_analysis),
            auto_rollback_enabled=self.auto_rollback_enabled,
        )


class CanarySpec(CatalogModel):
    steps: list[CanaryStepSpec] = Field(default_factory=list)
    traffic_splitting: TrafficSplitSpec = Field(default_factory=TrafficSplitSpec)
    analysis: AnalysisSpec | None = None
    auto_rollback_enabled: StrictBool = True
    max_surge: Weight = 25
    max_unavailable: Weight = 0

    def build(self) -> CanaryConfig:
        split = self.traffic_splitting
        return CanaryConfig(
            steps=tuple(
                CanaryStep(
                    weight=step.weight,
                    pause_duration_seconds=step.pause_duration_seconds,
                    pause_until_approved=step.pause_until_approved,
                    analysis=_build(step.analysis),
                )
                for step in self.steps
            ),
            traffic_splitting=TrafficSplitConfig(
                canary_weight=split.canary_weight,
                stable_weight=split.stable_weight,
                header_routing=tuple(
                    HeaderRouting(name=h.name, value=h.value, weight=h.weight)
                    for h in split.header_routing
                ),
                mirror_traffic=split.mirror_traffic,
            ),
            analysis=_build(self.analysis),
            auto_rollback_enabled=self.auto_rollback_enabled,
            max_surge=self.max_surge,
            max_unavailable=self.max_unavailable,
        )


class RollingUpdateSpec(CatalogModel):
    max_unavailable: Bound = "25%"
    max_surge: Bound = "25%"
    min_ready_seconds: Seconds = 0.0
    auto_rollback_enabled: StrictBool = False

    def build(self) -> RollingUpdateConfig:
        return RollingUpdateConfig(
            max_unavailable=self.max_unavailable,
            max_surge=self.max_surge,
            min_ready_seconds=self.min_ready_seconds,
            auto_rollback_enabled=self.auto_rollback_enabled,
        )


class RecreateSpec(CatalogModel):
    auto_rollback_enabled: StrictBool = False

    def build(self) -> RecreateConfig:
        return RecreateConfig(auto_rollback_enabled=self.auto_rollback_enabled)


CONFIG_SPECS: dict[StrategyType, type[CatalogModel]] = {
    StrategyType.BLUE_GREEN: BlueGreenSpec,
    StrategyType.CANARY: CanarySpec,
    StrategyType.ROLLING_UPDATE: RollingUpdateSpec,
    StrategyType.RECREATE: RecreateSpec,
}


class StrategySpec(CatalogModel):
    """One catalog entry; ``config`` is checked against the schema of ``type``."""

    id: str = Field(min_length=1)
    name: str | None = None
    type: StrategyType
    config: dict[str, Any] = Field(default_factory=dict)
    description: str = ""
    advantages: list[str] = Field(default_factory=list)
    disadvantages: list[str] = Field(default_factory=list)
    use_case: str = ""
    progress_deadline_seconds: float = Field(default=600.0, gt=0)
    revision_history_limit: int = Field(default=10, ge=0)

    def build(self) -> DeploymentStrategy:
        config: DeploymentConfig = CONFIG_SPECS[self.type].model_validate(self.config).build()
        return DeploymentStrategy(
            id=self.id,
            name=self.name or self.id,
            type=self.type,
            config=config,
            description=self.description,
            advantages=tuple(self.advantages),
            disadvantages=tuple(self.disadvantages),
            use_case=self.use_case,
            progress_deadline_seconds=self.progress_deadline_seconds,
            revision_history_limit=self.revision_history_limit,
        )


class CatalogSpec(CatalogModel):
    strategies: list[StrategySpec]
