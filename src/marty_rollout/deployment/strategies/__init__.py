"""Phase sequences, selected by the type of a strategy's configuration."""

from ..models import (
    BlueGreenConfig,
    CanaryConfig,
    DeploymentStrategy,
    RecreateConfig,
    RollingUpdateConfig,
)
from .base import PhaseSequence, typed_config
from .blue_green import BlueGreenSequence
from .canary import CanarySequence
from .recreate import RecreateSequence
from .rolling import RollingUpdateSequence

SEQUENCES: dict[type, PhaseSequence] = {
    BlueGreenConfig: BlueGreenSequence(),
    CanaryConfig: CanarySequence(),
    RollingUpdateConfig: RollingUpdateSequence(),
    RecreateConfig: RecreateSequence(),
}


def sequence_for(strategy: DeploymentStrategy) -> PhaseSequence:
    return SEQUENCES[type(strategy.config)]


__all__ = [
    "BlueGreenSequence",
    "CanarySequence",
    "PhaseSequence",
    "RecreateSequence",
    "RollingUpdateSequence",
    "SEQUENCES",
    "sequence_for",
    "typed_config",
]
