"""
Global pytest configuration and fixtures for rollout testing.

Orchestrators are wired to an in-memory platform, a scripted analysis engine
and a catalog of strategies that run without real waits.
"""

from __future__ import annotations

import pytest
from factories import FAST_SETTINGS, ScriptedAnalysisEngine, sample_strategies

from marty_rollout.config import AppSettings
from marty_rollout.deployment import (
    DeploymentOrchestrator,
    InMemoryProvisioner,
    StrategyCatalog,
)
from marty_rollout.observability import RolloutMetrics


@pytest.fixture
def settings() -> AppSettings:
    """Settings with no retry backoff and short health timeouts."""
    return AppSettings(**FAST_SETTINGS)


@pytest.fixture
def provisioner() -> InMemoryProvisioner:
    """Simulated platform where every application starts on 2.0.0 x4."""
    return InMemoryProvisioner(baseline_version="2.0.0", baseline_replicas=4)


@pytest.fixture
def analysis() -> ScriptedAnalysisEngine:
    return ScriptedAnalysisEngine()


@pytest.fixture
def catalog() -> StrategyCatalog:
    return StrategyCatalog(sample_strategies())


@pytest.fixture
def metrics() -> RolloutMetrics:
    return RolloutMetrics()


@pytest.fixture
def orchestrator(settings, catalog, provisioner, analysis, metrics) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(
        settings,
        catalog=catalog,
        provisioner=provisioner,
        analysis=analysis,
        metrics=metrics,
    )
