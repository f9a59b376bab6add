"""
Exception hierarchy for the rollout orchestrator.

Input errors (unknown strategy, bad request, conflicting state) surface to API
callers as 4xx responses. Platform errors are retried before they fail a phase.
Analysis failures are decisions rather than crashes: they drive the rollback
path exactly like any other phase failure.
"""

from typing import Any


class DeploymentError(Exception):
    """Base exception for all rollout errors."""

    error_code = "DEPLOYMENT_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.details = details or {}

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary representation."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


class StrategyNotFoundError(DeploymentError):
    """Raised when a deploy request names a strategy missing from the catalog."""

    error_code = "STRATEGY_NOT_FOUND"


class DeploymentNotFoundError(DeploymentError):
    """Raised when a deployment id is unknown to the registry."""

    error_code = "DEPLOYMENT_NOT_FOUND"


class InvalidDeploymentRequestError(DeploymentError):
    """Raised when a deploy request is malformed."""

    error_code = "INVALID_REQUEST"


class AdmissionRejectedError(DeploymentError):
    """Raised when another rollout of the same application is still live."""

    error_code = "ROLLOUT_IN_PROGRESS"


class ApprovalNotPendingError(DeploymentError):
    """Raised when approving a deployment that is not waiting at a gate."""

    error_code = "NO_PENDING_APPROVAL"


class DeploymentTerminalError(DeploymentError):
    """Raised when an operation requires a live deployment."""

    error_code = "DEPLOYMENT_TERMINAL"


class InvalidTransitionError(DeploymentError):
    """Raised on a status change the state machine does not allow."""

    error_code = "INVALID_TRANSITION"


class InvalidStrategyConfigError(DeploymentError):
    """Raised when a strategy template violates its invariants."""

    error_code = "INVALID_STRATEGY"


class ConditionSyntaxError(InvalidStrategyConfigError):
    """Raised when an analysis condition expression cannot be parsed."""

    error_code = "INVALID_CONDITION"


class EnvironmentProvisionError(DeploymentError):
    """Transient platform failure; retried before the phase fails."""

    error_code = "PROVISION_FAILED"


class HealthCheckTimeoutError(DeploymentError):
    """Environment did not become healthy in time."""

    error_code = "HEALTH_CHECK_TIMEOUT"


class AnalysisFailedError(DeploymentError):
    """Analysis checkpoint recommended a rollback."""

    error_code = "ANALYSIS_FAILED"


class DeadlineExceededError(DeploymentError):
    """Phase exceeded the strategy's progress deadline."""

    error_code = "DEADLINE_EXCEEDED"


class RollbackFailedError(DeploymentError):
    """A rollback attempt could not restore the baseline; it may be retried."""

    error_code = "ROLLBACK_FAILED"
