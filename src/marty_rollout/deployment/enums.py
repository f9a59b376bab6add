"""
Deployment Enums

Core enumeration types for strategies, deployment and phase status,
environments, instances, analysis verdicts and the deployment state machine.
"""

from enum import Enum


class StrategyType(Enum):
    """Deployment strategy types."""

    BLUE_GREEN = "blue_green"
    CANARY = "canary"
    ROLLING_UPDATE = "rolling_update"
    RECREATE = "recreate"


class DeploymentStatus(Enum):
    """Deployment status."""

    PENDING = "pending"
    PROGRESSING = "progressing"
    PAUSED = "paused"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ROLLBACK = "rollback"


class PhaseStatus(Enum):
    """Status of the phase a deployment is currently in."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class EnvironmentType(Enum):
    """Environment types."""

    PRODUCTION = "production"
    STAGING = "staging"
    DEVELOPMENT = "development"
    TEST = "test"


class EnvironmentStatus(Enum):
    """Environment serving status."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    DRAINING = "draining"


class InstanceStatus(Enum):
    """Instance health status."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"
    TERMINATING = "terminating"


class HealthStatus(Enum):
    """Health check results."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    WARNING = "warning"


class AnalysisStatus(Enum):
    """Analysis run status."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESSFUL = "successful"
    FAILED = "failed"
    INCONCLUSIVE = "inconclusive"


class Recommendation(Enum):
    """Decision produced by an analysis checkpoint."""

    PROMOTE = "promote"
    ROLLBACK = "rollback"
    PAUSE = "pause"
    CONTINUE = "continue"


class MetricStatus(Enum):
    """Classification of a single metric."""

    PASS = "pass"
    FAIL = "fail"
    WARNING = "warning"


class MetricTrend(Enum):
    """Direction a metric moved during the analysis window."""

    IMPROVING = "improving"
    DEGRADING = "degrading"
    STABLE = "stable"


class RollbackStatus(Enum):
    """Outcome of the latest rollback attempt."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class MetricProviderType(Enum):
    """Backends an analysis metric can be queried from."""

    PROMETHEUS = "prometheus"
    DATADOG = "datadog"
    NEWRELIC = "newrelic"
    CUSTOM = "custom"


TERMINAL_STATUSES = frozenset(
    {
        DeploymentStatus.SUCCEEDED,
        DeploymentStatus.FAILED,
        DeploymentStatus.CANCELLED,
        DeploymentStatus.ROLLBACK,
    }
)

# Terminal records only ever move to ROLLBACK (manual rollback of history).
ALLOWED_TRANSITIONS: dict[DeploymentStatus, frozenset[DeploymentStatus]] = {
    DeploymentStatus.PENDING: frozenset(
        {
            DeploymentStatus.PROGRESSING,
            DeploymentStatus.CANCELLED,
            DeploymentStatus.FAILED,
            DeploymentStatus.ROLLBACK,
        }
    ),
    DeploymentStatus.PROGRESSING: frozenset(
        {
            DeploymentStatus.PAUSED,
            DeploymentStatus.SUCCEEDED,
            DeploymentStatus.FAILED,
            DeploymentStatus.CANCELLED,
            DeploymentStatus.ROLLBACK,
        }
    ),
    DeploymentStatus.PAUSED: frozenset(
        {
            DeploymentStatus.PROGRESSING,
            DeploymentStatus.FAILED,
            DeploymentStatus.CANCELLED,
            DeploymentStatus.ROLLBACK,
        }
    ),
    DeploymentStatus.SUCCEEDED: frozenset({DeploymentStatus.ROLLBACK}),
    DeploymentStatus.FAILED: frozenset({DeploymentStatus.ROLLBACK}),
    DeploymentStatus.CANCELLED: frozenset({DeploymentStatus.ROLLBACK}),
    DeploymentStatus.ROLLBACK: frozenset(),
}
