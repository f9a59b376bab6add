"""
Rolling update and recreate rollouts against the in-memory platform.
"""

from __future__ import annotations

import pytest

from marty_rollout.deployment import DeploymentOrchestrator, DeploymentStatus, InMemoryProvisioner
from marty_rollout.deployment.strategies.rolling import resolve_bound


class CountingProvisioner(InMemoryProvisioner):
    """Records the instance count of every environment after each change."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.counts: list[int] = []

    async def add_instances(self, application, environment, version, count):
        created = await super().add_instances(application, environment, version, count)
        self.counts.append(len(self.instances(application, environment)))
        return created

    async def remove_instances(self, application, environment, instance_ids):
        await super().remove_instances(application, environment, instance_ids)
        self.counts.append(len(self.instances(application, environment)))


@pytest.fixture
def counting_provisioner() -> CountingProvisioner:
    return CountingProvisioner(baseline_version="2.0.0", baseline_replicas=4)


@pytest.fixture
def rolling_orchestrator(settings, catalog, counting_provisioner, analysis, metrics):
    return DeploymentOrchestrator(
        settings,
        catalog=catalog,
        provisioner=counting_provisioner,
        analysis=analysis,
        metrics=metrics,
    )


class TestResolveBound:
    @pytest.mark.parametrize(
        ("value", "replicas", "round_up", "expected"),
        [
            (2, 10, False, 2),
            ("25%", 4, False, 1),
            ("25%", 5, False, 1),
            ("25%", 5, True, 2),
            ("10%", 4, False, 0),
            ("100%", 3, True, 3),
        ],
    )
    def test_resolution(self, value, replicas, round_up, expected):
        assert resolve_bound(value, replicas, round_up=round_up) == expected


class TestRollingUpdate:
    """In-place replacement within surge and unavailability bounds."""

    @pytest.mark.asyncio
    async def test_replaces_every_instance(self, rolling_orchestrator, counting_provisioner):
        deployment_id = await rolling_orchestrator.start_deployment("checkout", "2.1.0", "rolling-update")

        deployment = await rolling_orchestrator.wait(deployment_id, timeout=5)

        assert deployment.status == DeploymentStatus.SUCCEEDED
        assert deployment.phase.name == "Rolling Update Complete"
        assert deployment.current_step == deployment.total_steps == 4
        assert deployment.stable_environment == "production"
        assert deployment.candidate_environment is None
        instances = counting_provisioner.instances("checkout", "production")
        assert len(instances) == 4
        assert {i.version for i in instances} == {"2.1.0"}
        assert counting_provisioner.weights("checkout") == {"production": 100}

    @pytest.mark.asyncio
    async def test_respects_surge_and_unavailability(self, rolling_orchestrator, counting_provisioner):
        deployment_id = await rolling_orchestrator.start_deployment("checkout", "2.1.0", "rolling-update")
        await rolling_orchestrator.wait(deployment_id, timeout=5)

        # 4 replicas at 25%/25%: never fewer than 3 nor more than 5 instances
        assert counting_provisioner.counts
        assert min(counting_provisioner.counts) >= 3
        assert max(counting_provisioner.counts) <= 5

        deployment = await rolling_orchestrator.get_deployment(deployment_id)
        bounds = next(e for e in deployment.events if e.event_type == "rolling_bounds_resolved")
        assert bounds.details == {"replicas": 4, "max_unavailable": 1, "max_surge": 1}

    @pytest.mark.asyncio
    async def test_bounds_resolving_to_zero_fail(self, rolling_orchestrator, counting_provisioner):
        deployment_id = await rolling_orchestrator.start_deployment("checkout", "2.1.0", "rolling-frozen")

        deployment = await rolling_orchestrator.wait(deployment_id, timeout=5)

        assert deployment.status == DeploymentStatus.FAILED
        assert deployment.phase.name == "Preparing Rolling Update"
        assert "both resolve to 0" in deployment.phase.message
        assert deployment.rollback is None
        assert {i.version for i in counting_provisioner.instances("checkout", "production")} == {"2.0.0"}

    @pytest.mark.asyncio
    async def test_unready_instances_fail_and_roll_back(self, rolling_orchestrator, counting_provisioner):
        counting_provisioner.unhealthy_versions.add("2.1.0")

        deployment_id = await rolling_orchestrator.start_deployment(
            "checkout", "2.1.0", "rolling-auto-rollback"
        )
        deployment = await rolling_orchestrator.wait(deployment_id, timeout=5)

        assert deployment.status == DeploymentStatus.FAILED
        assert deployment.phase.name == "Executing Rolling Update"
        assert deployment.rollback is not None
        assert deployment.rollback.target_version == "2.0.0"
        instances = counting_provisioner.instances("checkout", "production")
        assert len(instances) == 4
        assert {i.version for i in instances} == {"2.0.0"}

    @pytest.mark.asyncio
    async def test_unready_instances_without_rollback(self, rolling_orchestrator, counting_provisioner):
        counting_provisioner.unhealthy_versions.add("2.1.0")

        deployment_id = await rolling_orchestrator.start_deployment("checkout", "2.1.0", "rolling-update")
        deployment = await rolling_orchestrator.wait(deployment_id, timeout=5)

        assert deployment.status == DeploymentStatus.FAILED
        assert deployment.rollback is None
        versions = [i.version for i in counting_provisioner.instances("checkout", "production")]
        assert versions.count("2.1.0") == 2


class TestRecreate:
    """Stop everything, then start the new version."""

    @pytest.mark.asyncio
    async def test_recreate(self, orchestrator, provisioner):
        deployment_id = await orchestrator.start_deployment("checkout", "2.1.0", "recreate")

        deployment = await orchestrator.wait(deployment_id, timeout=5)

        assert deployment.status == DeploymentStatus.SUCCEEDED
        assert deployment.phase.name == "Recreate Complete"
        instances = provisioner.instances("checkout", "production")
        assert len(instances) == 4
        assert {i.version for i in instances} == {"2.1.0"}
        calls = [c[0] for c in provisioner.calls if c[2] == "production"]
        stop = calls.index("decommission_environment")
        start = len(calls) - 1 - calls[::-1].index("create_or_update_environment")
        assert stop < start

    @pytest.mark.asyncio
    async def test_unhealthy_new_version_fails(self, orchestrator, provisioner):
        provisioner.unhealthy_versions.add("2.1.0")

        deployment_id = await orchestrator.start_deployment("checkout", "2.1.0", "recreate")
        deployment = await orchestrator.wait(deployment_id, timeout=5)

        assert deployment.status == DeploymentStatus.FAILED
        assert deployment.phase.name == "Health Checks"
        assert deployment.rollback is None
