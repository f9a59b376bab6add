"""Common shape of a strategy phase sequence."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TypeVar

from ..enums import EnvironmentType
from ..exceptions import InvalidStrategyConfigError
from ..models import Deployment, DeploymentStrategy
from ..phases import PhaseRunner

C = TypeVar("C")


def typed_config(strategy: DeploymentStrategy, config_type: type[C]) -> C:
    """The strategy's config, checked against the type a sequence runs on."""
    config = strategy.config
    if not isinstance(config, config_type):
        raise InvalidStrategyConfigError(
            f"Strategy '{strategy.id}' needs a {config_type.__name__}, "
            f"got {type(config).__name__}",
            details={"strategy_id": strategy.id, "config_type": type(config).__name__},
        )
    return config


class PhaseSequence(ABC):
    """Ordered phases that move traffic from the baseline to the candidate."""

    baseline_environment: str | None = None
    candidate_environment: str | None = None

    def environment_names(self, target: EnvironmentType) -> tuple[str, str | None]:
        """Names of the baseline and candidate environments."""
        return self.baseline_environment or target.value, self.candidate_environment

    @abstractmethod
    def total_steps(self, strategy: DeploymentStrategy) -> int:
        """Number of phases after initialization."""

    @abstractmethod
    async def run(self, runner: PhaseRunner) -> None:
        """Execute every phase; raising fails the deployment."""

    def traffic_shifted(self, deployment: Deployment) -> bool:
        """Whether users may already be served by the new version."""
        if self.candidate_environment is None:
            baseline = deployment.environment(deployment.stable_environment)
            return deployment.version in baseline.versions
        return deployment.traffic().get(self.candidate_environment, 0) > 0
