"""
Deployment orchestration.

Strategy catalog, phase sequences, analysis checkpoints, rollback and the
registry of deployment records, driven by :class:`DeploymentOrchestrator`.
"""

from .analysis import (
    AnalysisEngine,
    MetricsProvider,
    PrometheusMetricsProvider,
    StaticMetricsProvider,
    TimeRange,
)
from .catalog import StrategyCatalog, default_strategies, strategy_from_dict
from .conditions import Condition, parse_condition
from .enums import (
    AnalysisStatus,
    DeploymentStatus,
    EnvironmentStatus,
    EnvironmentType,
    HealthStatus,
    MetricStatus,
    PhaseStatus,
    Recommendation,
    RollbackStatus,
    StrategyType,
)
from .exceptions import (
    AdmissionRejectedError,
    AnalysisFailedError,
    ApprovalNotPendingError,
    ConditionSyntaxError,
    DeadlineExceededError,
    DeploymentError,
    DeploymentNotFoundError,
    DeploymentTerminalError,
    EnvironmentProvisionError,
    HealthCheckTimeoutError,
    InvalidDeploymentRequestError,
    InvalidStrategyConfigError,
    InvalidTransitionError,
    RollbackFailedError,
    StrategyNotFoundError,
)
from .models import (
    AnalysisConfig,
    AnalysisMetric,
    AnalysisResult,
    BlueGreenConfig,
    CanaryConfig,
    CanaryStep,
    Deployment,
    DeploymentStrategy,
    RecreateConfig,
    RollbackConfig,
    RollingUpdateConfig,
    TrafficSplitConfig,
)
from .orchestrator import DeploymentOrchestrator
from .phases import ApprovalGates, PhaseRunner
from .provisioner import EnvironmentProvisioner, InMemoryProvisioner, LiveRelease
from .registry import DeploymentRegistry
from .rollback import RollbackController

__all__ = [
    "AdmissionRejectedError",
    "AnalysisConfig",
    "AnalysisEngine",
    "AnalysisFailedError",
    "AnalysisMetric",
    "AnalysisResult",
    "AnalysisStatus",
    "ApprovalGates",
    "ApprovalNotPendingError",
    "BlueGreenConfig",
    "CanaryConfig",
    "CanaryStep",
    "Condition",
    "ConditionSyntaxError",
    "DeadlineExceededError",
    "Deployment",
    "DeploymentError",
    "DeploymentNotFoundError",
    "DeploymentOrchestrator",
    "DeploymentRegistry",
    "DeploymentStatus",
    "DeploymentStrategy",
    "DeploymentTerminalError",
    "EnvironmentProvisionError",
    "EnvironmentProvisioner",
    "EnvironmentStatus",
    "EnvironmentType",
    "HealthCheckTimeoutError",
    "HealthStatus",
    "InMemoryProvisioner",
    "InvalidDeploymentRequestError",
    "InvalidStrategyConfigError",
    "InvalidTransitionError",
    "LiveRelease",
    "MetricStatus",
    "MetricsProvider",
    "PhaseRunner",
    "PhaseStatus",
    "PrometheusMetricsProvider",
    "Recommendation",
    "RecreateConfig",
    "RollbackConfig",
    "RollbackController",
    "RollbackFailedError",
    "RollbackStatus",
    "RollingUpdateConfig",
    "StaticMetricsProvider",
    "StrategyCatalog",
    "StrategyNotFoundError",
    "StrategyType",
    "TimeRange",
    "TrafficSplitConfig",
    "default_strategies",
    "parse_condition",
    "strategy_from_dict",
]
