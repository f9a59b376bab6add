"""
Strategy catalog.

Holds the named, versioned strategy templates rollouts are started from. The
catalog is built once at process start, either from the built-in templates or
from a YAML file, validated, and then only read.
"""

from __future__ import annotations

import builtins
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import ValidationError

from .conditions import parse_condition
from .enums import StrategyType
from .exceptions import InvalidStrategyConfigError, StrategyNotFoundError
from .models import (
    AnalysisConfig,
    AnalysisMetric,
    BlueGreenConfig,
    CanaryConfig,
    CanaryStep,
    DeploymentConfig,
    DeploymentStrategy,
    RecreateConfig,
    RollingUpdateConfig,
    TrafficSplitConfig,
)
from .schema import CatalogSpec, StrategySpec

logger = structlog.get_logger(__name__)


class StrategyCatalog:
    """Read-only lookup of strategy templates by id."""

    def __init__(self, strategies: Iterable[DeploymentStrategy]):
        self._strategies: builtins.dict[str, DeploymentStrategy] = {}
        for strategy in strategies:
            if strategy.id in self._strategies:
                raise InvalidStrategyConfigError(f"Duplicate strategy id '{strategy.id}'")
            validate_strategy(strategy)
            self._strategies[strategy.id] = strategy

    @classmethod
    def default(cls) -> StrategyCatalog:
        return cls(default_strategies())

    @classmethod
    def from_yaml(cls, path: str | Path) -> StrategyCatalog:
        """Load and validate a catalog file."""
        try:
            with open(path, encoding="utf-8") as handle:
                data = yaml.safe_load(handle)
            if data is None or isinstance(data, builtins.list):
                data = {"strategies": data or []}
            spec = CatalogSpec.model_validate(data)
            strategies = [entry.build() for entry in spec.strategies]
        except FileNotFoundError:
            raise InvalidStrategyConfigError(
                f"Strategy catalog not found: {path}", details={"path": str(path)}
            ) from None
        except yaml.YAMLError as exc:
            raise InvalidStrategyConfigError(
                f"Invalid YAML in strategy catalog {path}: {exc}", details={"path": str(path)}
            ) from exc
        except ValidationError as exc:
            raise InvalidStrategyConfigError(
                f"Strategy catalog {path} failed validation: {exc}",
                details={"path": str(path), "errors": _errors(exc)},
            ) from exc
        catalog = cls(strategies)
        logger.info("catalog.loaded", path=str(path), strategies=len(catalog))
        return catalog

    def get(self, strategy_id: str) -> DeploymentStrategy:
        try:
            return self._strategies[strategy_id]
        except KeyError:
            raise StrategyNotFoundError(
                f"Deployment strategy not found: {strategy_id}",
                details={"strategy_id": strategy_id, "available": sorted(self._strategies)},
            ) from None

    def list(self) -> builtins.list[DeploymentStrategy]:
        return list(self._strategies.values())

    def __contains__(self, strategy_id: object) -> bool:
        return strategy_id in self._strategies

    def __iter__(self) -> Iterator[DeploymentStrategy]:
        return iter(self._strategies.values())

    def __len__(self) -> int:
        return len(self._strategies)


def validate_strategy(strategy: DeploymentStrategy) -> None:
    """Check the template invariants, including its analysis conditions."""
    strategy.validate()
    for analysis in _analysis_configs(strategy.config):
        known = {metric.name for metric in analysis.metrics}
        for expression in (
            analysis.success_condition,
            analysis.failure_condition,
            analysis.inconclusive_condition,
        ):
            condition = parse_condition(expression)
            if condition is None:
                continue
            unknown = condition.metric_names - known
            if unknown:
                raise InvalidStrategyConfigError(
                    f"Strategy '{strategy.id}': condition {expression!r} references "
                    f"unknown metrics {sorted(unknown)}"
                )


def _analysis_configs(config: DeploymentConfig) -> Iterator[AnalysisConfig]:
    if isinstance(config, BlueGreenConfig):
        candidates = [config.pre_promotion_analysis, config.post_promotion_analysis]
    elif isinstance(config, CanaryConfig):
        candidates = [config.analysis, *(step.analysis for step in config.steps)]
    else:
        candidates = []
    yield from (analysis for analysis in candidates if analysis is not None)


# ---------------------------------------------------------------------------
# Dictionary / YAML loading
# ---------------------------------------------------------------------------


def strategy_from_dict(data: Any) -> DeploymentStrategy:
    """Build one template from a catalog entry."""
    try:
        return StrategySpec.model_validate(data).build()
    except ValidationError as exc:
        raise InvalidStrategyConfigError(
            f"Invalid strategy definition: {exc}", details={"errors": _errors(exc)}
        ) from exc


def _errors(exc: ValidationError) -> builtins.list[builtins.dict[str, Any]]:
    return [
        {"loc": ".".join(str(part) for part in error["loc"]), "msg": error["msg"]}
        for error in exc.errors()
    ]


# ---------------------------------------------------------------------------
# Built-in templates
# ---------------------------------------------------------------------------

_HTTP_TOTAL = 'sum(rate(http_requests_total{{app="{application}",env="{environment}"}}[5m]))'


def default_strategies() -> builtins.list[DeploymentStrategy]:
    """The catalog shipped with the service."""
    blue_green_analysis = AnalysisConfig(
        metrics=(
            AnalysisMetric(
                name="success-rate",
                query=(
                    'sum(rate(http_requests_total{{app="{application}",env="{environment}",'
                    'status=~"2.."}}[5m])) / ' + _HTTP_TOTAL
                ),
                success_threshold=0.99,
                failure_threshold=0.95,
                weight=1.0,
            ),
            AnalysisMetric(
                name="response-time",
                query=(
                    "histogram_quantile(0.95, sum(rate(http_request_duration_seconds_bucket"
                    '{{app="{application}",env="{environment}"}}[5m])) by (le))'
                ),
                success_threshold=0.5,
                failure_threshold=2.0,
                weight=0.8,
            ),
        ),
        duration_seconds=300,
        interval_seconds=30,
        success_condition="success-rate >= 0.99 && response-time <= 0.5",
        failure_condition="success-rate < 0.95 || response-time > 2.0",
    )

    canary_analysis = AnalysisConfig(
        metrics=(
            AnalysisMetric(
                name="error-rate",
                query=(
                    'sum(rate(http_requests_total{{app="{application}",env="{environment}",'
                    'status=~"5.."}}[5m])) / ' + _HTTP_TOTAL
                ),
                success_threshold=0.01,
                failure_threshold=0.05,
                weight=1.0,
            ),
            AnalysisMetric(
                name="latency-p99",
                query=(
                    "histogram_quantile(0.99, sum(rate(http_request_duration_seconds_bucket"
                    '{{app="{application}",env="{environment}"}}[5m])) by (le))'
                ),
                success_threshold=1.0,
                failure_threshold=3.0,
                weight=0.7,
            ),
            AnalysisMetric(
                name="cpu-usage",
                query=(
                    'avg(rate(container_cpu_usage_seconds_total{{app="{application}",'
                    'env="{environment}"}}[5m]))'
                ),
                success_threshold=0.7,
                failure_threshold=0.9,
                weight=0.5,
            ),
        ),
        duration_seconds=300,
        interval_seconds=30,
        success_condition="error-rate <= 0.01 && latency-p99 <= 1.0",
        failure_condition="error-rate > 0.05 || latency-p99 > 3.0",
    )

    return [
        DeploymentStrategy(
            id="blue-green",
            name="Blue-Green Deployment",
            type=StrategyType.BLUE_GREEN,
            description=(
                "Maintain two identical production environments and switch traffic between them"
            ),
            advantages=(
                "Zero downtime deployment",
                "Instant rollback capability",
                "Full testing in production environment",
                "Complete isolation between versions",
            ),
            disadvantages=(
                "Requires double infrastructure",
                "Database migrations can be complex",
                "Resource intensive",
                "Potential for version conflicts",
            ),
            use_case="Mission-critical applications requiring zero downtime with instant rollback",
            progress_deadline_seconds=600,
            revision_history_limit=10,
            config=BlueGreenConfig(
                auto_promote=False,
                scale_down_delay_seconds=300,
                pre_promotion_analysis=blue_green_analysis,
                post_promotion_analysis=blue_green_analysis,
                auto_rollback_enabled=True,
            ),
        ),
        DeploymentStrategy(
            id="canary",
            name="Canary Deployment",
            type=StrategyType.CANARY,
            description="Gradually shift traffic from old version to new version",
            advantages=(
                "Risk mitigation through gradual rollout",
                "Real user feedback on small subset",
                "Automated rollback on failure",
                "Performance comparison between versions",
            ),
            disadvantages=(
                "Longer deployment time",
                "Complex traffic management",
                "Requires sophisticated monitoring",
                "Potential user experience inconsistency",
            ),
            use_case="Applications where gradual risk mitigation is preferred over speed",
            progress_deadline_seconds=1800,
            revision_history_limit=5,
            config=CanaryConfig(
                steps=(
                    CanaryStep(weight=10, pause_duration_seconds=300),
                    CanaryStep(weight=25, pause_duration_seconds=300),
                    CanaryStep(weight=50, pause_duration_seconds=600),
                    CanaryStep(weight=100),
                ),
                traffic_splitting=TrafficSplitConfig(
                    canary_weight=10, stable_weight=90, mirror_traffic=True
                ),
                analysis=canary_analysis,
                auto_rollback_enabled=True,
                max_surge=25,
                max_unavailable=0,
            ),
        ),
        DeploymentStrategy(
            id="rolling-update",
            name="Rolling Update",
            type=StrategyType.ROLLING_UPDATE,
            description="Gradually replace instances of the old version with the new version",
            advantages=(
                "Resource efficient",
                "Simple implementation",
                "No additional infrastructure required",
                "Gradual rollout with built-in safety",
            ),
            disadvantages=(
                "Mixed versions during deployment",
                "Slower rollback process",
                "Potential compatibility issues",
                "Limited traffic control",
            ),
            use_case="Standard deployments where resource efficiency is important",
            progress_deadline_seconds=900,
            revision_history_limit=10,
            config=RollingUpdateConfig(
                max_unavailable="25%", max_surge="25%", min_ready_seconds=30
            ),
        ),
        DeploymentStrategy(
            id="recreate",
            name="Recreate",
            type=StrategyType.RECREATE,
            description="Stop every instance of the old version, then start the new version",
            advantages=("Simplest possible rollout", "No mixed versions at any time"),
            disadvantages=("Downtime between stop and start",),
            use_case="Development environments and workloads that cannot run two versions",
            progress_deadline_seconds=600,
            revision_history_limit=5,
            config=RecreateConfig(),
        ),
    ]
