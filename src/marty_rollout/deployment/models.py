"""Data models for deployment strategies and rollouts."""

from __future__ import annotations

import copy
import re
import uuid
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

from .enums import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    AnalysisStatus,
    DeploymentStatus,
    EnvironmentStatus,
    EnvironmentType,
    HealthStatus,
    InstanceStatus,
    MetricProviderType,
    MetricStatus,
    MetricTrend,
    PhaseStatus,
    Recommendation,
    RollbackStatus,
    StrategyType,
)
from .exceptions import InvalidStrategyConfigError, InvalidTransitionError

_PERCENT_RE = re.compile(r"^(\d{1,3})%$")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_primitive(value: Any) -> Any:
    """Convert dataclasses, enums and datetimes into JSON-ready structures."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_primitive(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, dict):
        return {str(k): to_primitive(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_primitive(v) for v in value]
    return value


# ---------------------------------------------------------------------------
# Strategy templates
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AnalysisMetric:
    """A named metric query with its thresholds.

    When ``success_threshold >= failure_threshold`` higher values are better
    (success rate); otherwise lower values are better (error rate, latency).
    """

    name: str
    query: str
    success_threshold: float
    failure_threshold: float
    weight: float = 1.0
    provider: MetricProviderType = MetricProviderType.PROMETHEUS

    @property
    def higher_is_better(self) -> bool:
        return self.success_threshold >= self.failure_threshold

    def validate(self) -> None:
        if not self.name:
            raise InvalidStrategyConfigError("Analysis metric name is required")
        if self.weight <= 0:
            raise InvalidStrategyConfigError(
                f"Analysis metric '{self.name}' weight must be positive, got {self.weight}"
            )


@dataclass(frozen=True)
class AnalysisConfig:
    """Metric queries and conditions evaluated at an analysis checkpoint."""

    metrics: tuple[AnalysisMetric, ...] = ()
    duration_seconds: float = 0.0
    interval_seconds: float = 30.0
    success_condition: str = ""
    failure_condition: str = ""
    inconclusive_condition: str | None = None
    enabled: bool = True
    consecutive_successes: int = 1

    @property
    def sample_count(self) -> int:
        if self.duration_seconds <= 0 or self.interval_seconds <= 0:
            return 1
        return max(1, int(self.duration_seconds // self.interval_seconds))

    def validate(self) -> None:
        names = [metric.name for metric in self.metrics]
        if len(names) != len(set(names)):
            raise InvalidStrategyConfigError(f"Duplicate analysis metric names: {names}")
        for metric in self.metrics:
            metric.validate()
        if self.duration_seconds < 0 or self.interval_seconds < 0:
            raise InvalidStrategyConfigError("Analysis duration and interval must be >= 0")
        if self.consecutive_successes < 1:
            raise InvalidStrategyConfigError("consecutive_successes must be at least 1")


@dataclass(frozen=True)
class CanaryStep:
    """One traffic step of a canary rollout."""

    weight: int
    pause_duration_seconds: float | None = None
    pause_until_approved: bool = False
    analysis: AnalysisConfig | None = None


@dataclass(frozen=True)
class HeaderRouting:
    """Route requests carrying a header value to the canary."""

    name: str
    value: str
    weight: int = 100


@dataclass(frozen=True)
class TrafficSplitConfig:
    """Initial split and routing extras applied with every canary weight update."""

    canary_weight: int = 0
    stable_weight: int = 100
    header_routing: tuple[HeaderRouting, ...] = ()
    mirror_traffic: bool = False


@dataclass(frozen=True)
class BlueGreenConfig:
    auto_promote: bool = True
    scale_down_delay_seconds: float = 0.0
    pre_promotion_analysis: AnalysisConfig | None = None
    post_promotion_analysis: AnalysisConfig | None = None
    auto_rollback_enabled: bool = True

    def validate(self) -> None:
        if self.scale_down_delay_seconds < 0:
            raise InvalidStrategyConfigError("scale_down_delay_seconds must be >= 0")
        for analysis in (self.pre_promotion_analysis, self.post_promotion_analysis):
            if analysis is not None:
                analysis.validate()


@dataclass(frozen=True)
class CanaryConfig:
    steps: tuple[CanaryStep, ...]
    traffic_splitting: TrafficSplitConfig = field(default_factory=TrafficSplitConfig)
    analysis: AnalysisConfig | None = None
    auto_rollback_enabled: bool = True
    max_surge: int = 25
    max_unavailable: int = 0

    def validate(self) -> None:
        if not self.steps:
            raise InvalidStrategyConfigError("Canary strategy requires at least one step")
        previous = 0
        for index, step in enumerate(self.steps, start=1):
            if not 0 <= step.weight <= 100:
                raise InvalidStrategyConfigError(
                    f"Canary step {index} weight {step.weight} outside 0..100"
                )
            if step.weight < previous:
                raise InvalidStrategyConfigError(
                    f"Canary step weights must be non-decreasing (step {index}: "
                    f"{step.weight} < {previous})"
                )
            if step.pause_duration_seconds is not None and step.pause_duration_seconds < 0:
                raise InvalidStrategyConfigError(f"Canary step {index} pause must be >= 0")
            if step.analysis is not None:
                step.analysis.validate()
            previous = step.weight
        if self.steps[-1].weight != 100:
            raise InvalidStrategyConfigError(
                f"Final canary step must reach 100%, got {self.steps[-1].weight}"
            )
        split = self.traffic_splitting
        if split.canary_weight + split.stable_weight != 100:
            raise InvalidStrategyConfigError("Traffic split weights must add up to 100")
        if self.analysis is not None:
            self.analysis.validate()
        if self.max_surge < 0 or self.max_unavailable < 0:
            raise InvalidStrategyConfigError("Canary max_surge/max_unavailable must be >= 0")


@dataclass(frozen=True)
class RollingUpdateConfig:
    """Surge and unavailability bounds, absolute (``2``) or relative (``"25%"``)."""

    max_unavailable: int | str = "25%"
    max_surge: int | str = "25%"
    min_ready_seconds: float = 0.0
    auto_rollback_enabled: bool = False

    def validate(self) -> None:
        for label, value in (("max_unavailable", self.max_unavailable), ("max_surge", self.max_surge)):
            if isinstance(value, bool) or not isinstance(value, (int, str)):
                raise InvalidStrategyConfigError(f"{label} must be an integer or a percentage")
            if isinstance(value, int) and value < 0:
                raise InvalidStrategyConfigError(f"{label} must be >= 0")
            if isinstance(value, str):
                match = _PERCENT_RE.match(value.strip())
                if not match or int(match.group(1)) > 100:
                    raise InvalidStrategyConfigError(f"{label} '{value}' is not a valid percentage")
        if _is_zero(self.max_unavailable) and _is_zero(self.max_surge):
            raise InvalidStrategyConfigError("max_surge and max_unavailable cannot both be 0")
        if self.min_ready_seconds < 0:
            raise InvalidStrategyConfigError("min_ready_seconds must be >= 0")


def _is_zero(bound: int | str) -> bool:
    if isinstance(bound, str):
        return bound.strip().rstrip("%") == "0"
    return bound == 0


@dataclass(frozen=True)
class RecreateConfig:
    auto_rollback_enabled: bool = False

    def validate(self) -> None:
        return None


DeploymentConfig = Union[BlueGreenConfig, CanaryConfig, RollingUpdateConfig, RecreateConfig]

CONFIG_TYPES: dict[StrategyType, type] = {
    StrategyType.BLUE_GREEN: BlueGreenConfig,
    StrategyType.CANARY: CanaryConfig,
    StrategyType.ROLLING_UPDATE: RollingUpdateConfig,
    StrategyType.RECREATE: RecreateConfig,
}


@dataclass(frozen=True)
class DeploymentStrategy:
    """Immutable, shared strategy template."""

    id: str
    name: str
    type: StrategyType
    config: DeploymentConfig
    description: str = ""
    advantages: tuple[str, ...] = ()
    disadvantages: tuple[str, ...] = ()
    use_case: str = ""
    progress_deadline_seconds: float = 600.0
    revision_history_limit: int = 10

    @property
    def auto_rollback_enabled(self) -> bool:
        return self.config.auto_rollback_enabled

    def validate(self) -> None:
        expected = CONFIG_TYPES[self.type]
        if not isinstance(self.config, expected):
            raise InvalidStrategyConfigError(
                f"Strategy '{self.id}' of type {self.type.value} needs a {expected.__name__}"
            )
        if self.progress_deadline_seconds <= 0:
            raise InvalidStrategyConfigError("progress_deadline_seconds must be positive")
        self.config.validate()

    def to_dict(self) -> dict[str, Any]:
        return to_primitive(self)


# ---------------------------------------------------------------------------
# Rollout state
# ---------------------------------------------------------------------------


@dataclass
class HealthCheckResult:
    name: str
    status: HealthStatus
    message: str = ""
    last_check: datetime = field(default_factory=utc_now)
    response_time_ms: float = 0.0


@dataclass
class EnvironmentInstance:
    id: str
    version: str
    status: InstanceStatus = InstanceStatus.UNKNOWN
    ready_replicas: int = 0
    total_replicas: int = 1
    last_updated: datetime = field(default_factory=utc_now)


@dataclass
class DeploymentEnvironment:
    name: str
    type: EnvironmentType
    url: str
    status: EnvironmentStatus = EnvironmentStatus.INACTIVE
    instances: list[EnvironmentInstance] = field(default_factory=list)
    traffic_weight: int = 0
    health_checks: list[HealthCheckResult] = field(default_factory=list)

    @property
    def versions(self) -> set[str]:
        return {instance.version for instance in self.instances}

    @property
    def replica_count(self) -> int:
        return sum(instance.total_replicas for instance in self.instances)


@dataclass
class MetricResult:
    name: str
    value: float | None
    threshold: float
    status: MetricStatus
    trend: MetricTrend = MetricTrend.STABLE
    weight: float = 1.0


@dataclass
class AnalysisResult:
    status: AnalysisStatus = AnalysisStatus.PENDING
    metrics: list[MetricResult] = field(default_factory=list)
    overall_score: float = 0.0
    recommendation: Recommendation = Recommendation.CONTINUE
    start_time: datetime = field(default_factory=utc_now)
    end_time: datetime | None = None


@dataclass
class RollbackConfig:
    """A requested rollback and the outcome of its latest attempt."""

    target_version: str
    reason: str
    automatic: bool
    triggered_by: str
    triggered_at: datetime = field(default_factory=utc_now)
    status: RollbackStatus = RollbackStatus.PENDING
    attempts: int = 0
    error: str | None = None
    completed_at: datetime | None = None

    @property
    def completed(self) -> bool:
        return self.status == RollbackStatus.COMPLETED


@dataclass
class DeploymentPhase:
    name: str = "Initialization"
    status: PhaseStatus = PhaseStatus.PENDING
    progress: float = 0.0
    start_time: datetime | None = None
    end_time: datetime | None = None
    message: str | None = None


@dataclass(frozen=True)
class StepRecord:
    """One executed canary step."""

    index: int
    weight: int
    recommendation: Recommendation | None = None
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class DeploymentEvent:
    """Deployment event for the audit trail."""

    event_id: str
    deployment_id: str
    event_type: str
    phase: str
    timestamp: datetime = field(default_factory=utc_now)
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class Deployment:
    """A rollout of one application version through one strategy."""

    id: str
    application_name: str
    version: str
    strategy: DeploymentStrategy
    target_environment: EnvironmentType = EnvironmentType.PRODUCTION
    previous_version: str | None = None
    status: DeploymentStatus = DeploymentStatus.PENDING
    phase: DeploymentPhase = field(default_factory=DeploymentPhase)
    current_step: int = 0
    total_steps: int = 0
    environments: list[DeploymentEnvironment] = field(default_factory=list)
    stable_environment: str = ""
    candidate_environment: str | None = None
    baseline_replicas: int = 0
    rollback: RollbackConfig | None = None
    analysis: AnalysisResult | None = None
    start_time: datetime = field(default_factory=utc_now)
    end_time: datetime | None = None
    step_history: list[StepRecord] = field(default_factory=list)
    events: list[DeploymentEvent] = field(default_factory=list)
    pending_approval: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duration_seconds(self) -> float | None:
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds()

    def transition(self, status: DeploymentStatus) -> None:
        """Move to ``status`` if the state machine allows it."""
        if status == self.status:
            return
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Deployment {self.id} cannot move from {self.status.value} to {status.value}",
                details={"from": self.status.value, "to": status.value},
            )
        self.status = status
        if self.is_terminal and self.end_time is None:
            self.end_time = utc_now()

    def environment(self, name: str) -> DeploymentEnvironment:
        for environment in self.environments:
            if environment.name == name:
                return environment
        raise KeyError(f"Deployment {self.id} has no environment '{name}'")

    def traffic(self) -> dict[str, int]:
        return {env.name: env.traffic_weight for env in self.environments}

    def apply_traffic(self, weights: dict[str, int]) -> None:
        """Record a weight update that the router applied in a single call."""
        for environment in self.environments:
            if environment.name in weights:
                environment.traffic_weight = weights[environment.name]

    def record_event(self, event_type: str, **details: Any) -> DeploymentEvent:
        event = DeploymentEvent(
            event_id=str(uuid.uuid4()),
            deployment_id=self.id,
            event_type=event_type,
            phase=self.phase.name,
            details=details,
        )
        self.events.append(event)
        return event

    def snapshot(self) -> Deployment:
        """Deep copy that shares only the immutable strategy template."""
        return copy.deepcopy(self, memo={id(self.strategy): self.strategy})

    def to_dict(self) -> dict[str, Any]:
        data = {
            f.name: to_primitive(getattr(self, f.name))
            for f in fields(self)
            if f.name != "strategy"
        }
        data["strategy"] = {
            "id": self.strategy.id,
            "name": self.strategy.name,
            "type": self.strategy.type.value,
        }
        return data
