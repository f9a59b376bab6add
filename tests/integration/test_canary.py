"""
End-to-end canary rollouts against the in-memory platform.
"""

from __future__ import annotations

import pytest
from factories import ScriptedAnalysisEngine, wait_for_gate

from marty_rollout.deployment import (
    DeploymentOrchestrator,
    DeploymentStatus,
    EnvironmentStatus,
    PhaseStatus,
    Recommendation,
)


def canary_weights(provisioner, application="checkout") -> list[int]:
    return [
        update.weights.get("canary", 0)
        for update in provisioner.traffic_log
        if update.application == application
    ]


class TestCanaryRollout:
    """Stepwise promotion with analysis after every step."""

    @pytest.mark.asyncio
    async def test_successful_rollout(self, orchestrator, provisioner, analysis):
        deployment_id = await orchestrator.start_deployment("checkout", "2.1.0", "canary")

        deployment = await orchestrator.wait(deployment_id, timeout=5)

        assert deployment.status == DeploymentStatus.SUCCEEDED
        assert deployment.previous_version == "2.0.0"
        assert deployment.phase.name == "Canary Deployment Complete"
        assert deployment.phase.status == PhaseStatus.COMPLETED
        assert deployment.phase.progress == 100
        assert deployment.current_step == deployment.total_steps == 6
        assert [s.weight for s in deployment.step_history] == [10, 25, 50, 100]
        assert deployment.step_history[-1].recommendation == Recommendation.PROMOTE
        assert deployment.traffic() == {"stable": 0, "canary": 100}
        assert deployment.environment("stable").status == EnvironmentStatus.DRAINING
        assert deployment.rollback is None

        assert provisioner.weights("checkout") == {"stable": 0, "canary": 100}
        canary = provisioner.instances("checkout", "canary")
        assert len(canary) == 4
        assert {i.version for i in canary} == {"2.1.0"}
        assert analysis.calls == [
            ("canary", False),
            ("canary", False),
            ("canary", False),
            ("canary", True),
        ]

    @pytest.mark.asyncio
    async def test_traffic_moves_forward_and_is_conserved(self, orchestrator, provisioner):
        deployment_id = await orchestrator.start_deployment("checkout", "2.1.0", "canary")
        await orchestrator.wait(deployment_id, timeout=5)

        weights = canary_weights(provisioner)
        assert weights == [0, 10, 25, 50, 100]
        assert weights == sorted(weights)
        for update in provisioner.traffic_log:
            assert sum(update.weights.values()) == 100

    @pytest.mark.asyncio
    async def test_routing_extras_travel_with_weights(self, orchestrator, provisioner):
        deployment_id = await orchestrator.start_deployment("checkout", "2.1.0", "canary")
        await orchestrator.wait(deployment_id, timeout=5)

        step_updates = [u for u in provisioner.traffic_log if 0 < u.weights.get("canary", 0) < 100]
        assert step_updates
        assert all(u.routing is not None for u in step_updates)

    @pytest.mark.asyncio
    async def test_canary_starts_small(self, orchestrator, provisioner):
        deployment_id = await orchestrator.start_deployment("checkout", "2.1.0", "canary")
        await orchestrator.wait(deployment_id, timeout=5)

        converges = [
            call
            for call in provisioner.calls
            if call[0] == "create_or_update_environment" and call[2] == "canary"
        ]
        assert len(converges) == 2

        events = (await orchestrator.get_deployment(deployment_id)).events
        replicas = [
            e.details["replicas"]
            for e in events
            if e.event_type == "environment_provisioned" and e.details["environment"] == "canary"
        ]
        assert replicas == [1, 4]

    @pytest.mark.asyncio
    async def test_failed_analysis_rolls_back(self, settings, catalog, provisioner, metrics):
        def decide(environment: str, final: bool) -> Recommendation:
            if provisioner.weights("checkout").get("canary") == 50:
                return Recommendation.ROLLBACK
            return Recommendation.PROMOTE

        orchestrator = DeploymentOrchestrator(
            settings,
            catalog=catalog,
            provisioner=provisioner,
            analysis=ScriptedAnalysisEngine(decide),
            metrics=metrics,
        )

        deployment_id = await orchestrator.start_deployment("checkout", "2.1.0", "canary")
        deployment = await orchestrator.wait(deployment_id, timeout=5)

        assert deployment.status == DeploymentStatus.FAILED
        assert deployment.phase.name == "Canary Step 3: 50%"
        assert "50%" in deployment.phase.message
        assert [s.weight for s in deployment.step_history] == [10, 25, 50]
        assert deployment.step_history[-1].recommendation == Recommendation.ROLLBACK

        assert deployment.rollback is not None
        assert deployment.rollback.automatic
        assert deployment.rollback.triggered_by == "system"
        assert deployment.rollback.target_version == "2.0.0"

        assert deployment.traffic() == {"stable": 100, "canary": 0}
        assert provisioner.weights("checkout") == {"stable": 100, "canary": 0}
        assert provisioner.instances("checkout", "canary") == []
        assert {i.version for i in provisioner.instances("checkout", "stable")} == {"2.0.0"}
        assert canary_weights(provisioner)[-1] == 0
        assert "rollback_completed" in [e.event_type for e in deployment.events]
        assert (
            metrics.registry.get_sample_value(
                "rollout_rollbacks_total", {"strategy": "canary", "trigger": "system"}
            )
            == 1.0
        )

    @pytest.mark.asyncio
    async def test_failure_without_auto_rollback_keeps_traffic(self, settings, catalog, provisioner, metrics):
        orchestrator = DeploymentOrchestrator(
            settings,
            catalog=catalog,
            provisioner=provisioner,
            analysis=ScriptedAnalysisEngine(lambda env, final: Recommendation.ROLLBACK),
            metrics=metrics,
        )

        deployment_id = await orchestrator.start_deployment("checkout", "2.1.0", "canary-no-rollback")
        deployment = await orchestrator.wait(deployment_id, timeout=5)

        assert deployment.status == DeploymentStatus.FAILED
        assert deployment.rollback is None
        assert provisioner.weights("checkout") == {"stable": 90, "canary": 10}

    @pytest.mark.asyncio
    async def test_unhealthy_canary_never_receives_traffic(self, orchestrator, provisioner):
        provisioner.unhealthy_versions.add("2.1.0")

        deployment_id = await orchestrator.start_deployment("checkout", "2.1.0", "canary")
        deployment = await orchestrator.wait(deployment_id, timeout=5)

        assert deployment.status == DeploymentStatus.FAILED
        assert deployment.phase.name == "Deploying Canary"
        assert canary_weights(provisioner) == [0]
        assert provisioner.weights("checkout") == {"stable": 100, "canary": 0}
        assert provisioner.instances("checkout", "canary") == []


class TestCanarySuspension:
    """Timed pauses and approval gates between steps."""

    @pytest.mark.asyncio
    async def test_approval_gate_holds_the_rollout(self, orchestrator, provisioner):
        deployment_id = await orchestrator.start_deployment("checkout", "2.1.0", "canary-gated")

        await wait_for_gate(orchestrator, deployment_id)
        paused = await orchestrator.get_deployment(deployment_id)
        assert paused.status == DeploymentStatus.PAUSED
        assert paused.phase.name == "Canary Step 1: 20%"
        assert provisioner.weights("checkout") == {"stable": 80, "canary": 20}

        await orchestrator.approve(deployment_id)
        deployment = await orchestrator.wait(deployment_id, timeout=5)

        assert deployment.status == DeploymentStatus.SUCCEEDED
        assert not deployment.pending_approval
        assert "approved" in [e.event_type for e in deployment.events]

    @pytest.mark.asyncio
    async def test_timed_pause(self, orchestrator):
        deployment_id = await orchestrator.start_deployment("checkout", "2.1.0", "canary-paused")

        deployment = await orchestrator.wait(deployment_id, timeout=5)

        assert deployment.status == DeploymentStatus.SUCCEEDED
        events = [e.event_type for e in deployment.events]
        assert events.count("paused") == 2
        assert events.count("resumed") == 2

    @pytest.mark.asyncio
    async def test_deadline_fails_the_phase(self, orchestrator, provisioner):
        provisioner.unhealthy_versions.add("2.1.0")

        deployment_id = await orchestrator.start_deployment(
            "checkout", "2.1.0", "canary-tight-deadline"
        )
        deployment = await orchestrator.wait(deployment_id, timeout=5)

        assert deployment.status == DeploymentStatus.FAILED
        assert deployment.phase.name == "Deploying Canary"
        assert "progress deadline" in deployment.phase.message
        failed = [e for e in deployment.events if e.event_type == "deployment_failed"]
        assert failed[0].details["error_code"] == "DEADLINE_EXCEEDED"
