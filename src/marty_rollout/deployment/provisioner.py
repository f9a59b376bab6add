"""
Platform interface used by the orchestrator.

The orchestrator never schedules containers or programs load balancers itself;
it issues commands through :class:`EnvironmentProvisioner`. Implementations
raise :class:`EnvironmentProvisionError` for transient failures, which the
phase runner retries.
"""

from __future__ import annotations

import asyncio
import builtins
import itertools
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime

import structlog

from .enums import HealthStatus, InstanceStatus
from .exceptions import EnvironmentProvisionError
from .models import EnvironmentInstance, HealthCheckResult, TrafficSplitConfig, utc_now

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class LiveRelease:
    """What currently serves an application's traffic."""

    environment: str | None
    version: str
    replicas: int
    weights: dict[str, int] = field(default_factory=dict)


class EnvironmentProvisioner(ABC):
    """Capability to create environments and route traffic between them."""

    @abstractmethod
    async def live_release(self, application: str) -> LiveRelease:
        """Version and replica count currently serving the application."""

    @abstractmethod
    async def describe_environment(
        self, application: str, environment: str
    ) -> builtins.list[EnvironmentInstance]:
        """Current instances of an environment (empty when it does not exist)."""

    @abstractmethod
    async def create_or_update_environment(
        self, application: str, environment: str, version: str, replicas: int
    ) -> builtins.list[EnvironmentInstance]:
        """Converge an environment to ``replicas`` instances of ``version``."""

    @abstractmethod
    async def decommission_environment(self, application: str, environment: str) -> None:
        """Terminate every instance of an environment."""

    @abstractmethod
    async def add_instances(
        self, application: str, environment: str, version: str, count: int
    ) -> builtins.list[EnvironmentInstance]:
        """Start ``count`` additional instances next to the existing ones."""

    @abstractmethod
    async def remove_instances(
        self, application: str, environment: str, instance_ids: Sequence[str]
    ) -> None:
        """Terminate specific instances."""

    @abstractmethod
    async def set_traffic_weights(
        self,
        application: str,
        weights: Mapping[str, int],
        routing: TrafficSplitConfig | None = None,
    ) -> None:
        """Apply a complete weight table for an application in one router update."""

    @abstractmethod
    async def health_check(
        self, application: str, environment: str
    ) -> builtins.list[HealthCheckResult]:
        """Run the environment's health checks."""


@dataclass
class _Slot:
    instances: builtins.list[EnvironmentInstance] = field(default_factory=list)


@dataclass(frozen=True)
class TrafficUpdate:
    application: str
    weights: dict[str, int]
    routing: TrafficSplitConfig | None
    timestamp: datetime


class InMemoryProvisioner(EnvironmentProvisioner):
    """Simulated platform keeping environments and routes in memory.

    Applications never seen before are assumed to run ``baseline_version``
    with ``baseline_replicas`` instances. Failures can be injected per
    operation (``fail_next``) and environments can be marked unhealthy, which
    makes the simulator useful for exercising rollback paths.
    """

    def __init__(
        self,
        baseline_version: str = "1.0.0",
        baseline_replicas: int = 3,
        latency_seconds: float = 0.0,
        baseline_environment: str = "live",
    ):
        self.baseline_version = baseline_version
        self.baseline_replicas = baseline_replicas
        self.latency_seconds = latency_seconds
        self.baseline_environment = baseline_environment

        self._slots: builtins.dict[tuple[str, str], _Slot] = defaultdict(_Slot)
        self._weights: builtins.dict[str, builtins.dict[str, int]] = {}
        self._ids = itertools.count(1)

        self.traffic_log: builtins.list[TrafficUpdate] = []
        self.unhealthy_environments: builtins.set[tuple[str, str]] = set()
        self.unhealthy_versions: builtins.set[str] = set()
        self._failures: builtins.dict[str, int] = defaultdict(int)
        self.calls: builtins.list[tuple[str, str, str]] = []

    # -- test hooks --------------------------------------------------------

    def fail_next(self, operation: str, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` raise."""
        self._failures[operation] += times

    def weights(self, application: str) -> builtins.dict[str, int]:
        return dict(self._weights.get(application, {}))

    def instances(self, application: str, environment: str) -> builtins.list[EnvironmentInstance]:
        return list(self._slots[(application, environment)].instances)

    # -- EnvironmentProvisioner -------------------------------------------

    async def live_release(self, application: str) -> LiveRelease:
        await self._simulate("live_release", application, "*")
        self._ensure_seeded(application)
        weights = dict(self._weights.get(application, {}))
        serving = max(weights, key=lambda name: weights[name]) if weights else None
        if serving is None or weights[serving] == 0:
            return LiveRelease(
                environment=None, version=self.baseline_version, replicas=0, weights=weights
            )
        instances = self._slots[(application, serving)].instances
        version = instances[0].version if instances else self.baseline_version
        return LiveRelease(
            environment=serving, version=version, replicas=len(instances), weights=weights
        )

    async def describe_environment(
        self, application: str, environment: str
    ) -> builtins.list[EnvironmentInstance]:
        await self._simulate("describe_environment", application, environment)
        self._ensure_seeded(application)
        return [self._refresh(application, environment, i) for i in self.instances(application, environment)]

    async def create_or_update_environment(
        self, application: str, environment: str, version: str, replicas: int
    ) -> builtins.list[EnvironmentInstance]:
        await self._simulate("create_or_update_environment", application, environment)
        self._ensure_seeded(application)
        slot = self._slots[(application, environment)]
        current = [i for i in slot.instances if i.version == version][:replicas]
        missing = replicas - len(current)
        current.extend(self._new_instance(environment, version) for _ in range(missing))
        slot.instances = current
        logger.debug(
            "platform.environment.converged",
            application=application,
            environment=environment,
            version=version,
            replicas=replicas,
        )
        return self.instances(application, environment)

    async def decommission_environment(self, application: str, environment: str) -> None:
        await self._simulate("decommission_environment", application, environment)
        self._slots[(application, environment)].instances = []

    async def add_instances(
        self, application: str, environment: str, version: str, count: int
    ) -> builtins.list[EnvironmentInstance]:
        await self._simulate("add_instances", application, environment)
        created = [self._new_instance(environment, version) for _ in range(count)]
        self._slots[(application, environment)].instances.extend(created)
        return [self._refresh(application, environment, i) for i in created]

    async def remove_instances(
        self, application: str, environment: str, instance_ids: Sequence[str]
    ) -> None:
        await self._simulate("remove_instances", application, environment)
        doomed = set(instance_ids)
        slot = self._slots[(application, environment)]
        slot.instances = [i for i in slot.instances if i.id not in doomed]

    async def set_traffic_weights(
        self,
        application: str,
        weights: Mapping[str, int],
        routing: TrafficSplitConfig | None = None,
    ) -> None:
        await self._simulate("set_traffic_weights", application, "*")
        table = dict(weights)
        self._weights[application] = table
        self.traffic_log.append(
            TrafficUpdate(application=application, weights=table, routing=routing, timestamp=utc_now())
        )

    async def health_check(
        self, application: str, environment: str
    ) -> builtins.list[HealthCheckResult]:
        await self._simulate("health_check", application, environment)
        instances = [self._refresh(application, environment, i) for i in self.instances(application, environment)]
        unhealthy = [i for i in instances if i.status != InstanceStatus.HEALTHY]
        http_status = HealthStatus.UNHEALTHY if unhealthy else HealthStatus.HEALTHY
        return [
            HealthCheckResult(
                name="http-health",
                status=http_status,
                message=(
                    f"{len(unhealthy)} of {len(instances)} instances failing"
                    if unhealthy
                    else "HTTP endpoint responding"
                ),
                response_time_ms=42.0,
            ),
            HealthCheckResult(
                name="readiness",
                status=HealthStatus.HEALTHY if instances else HealthStatus.WARNING,
                message=f"{len(instances)} instances registered",
                response_time_ms=12.0,
            ),
        ]

    # -- internals ---------------------------------------------------------

    async def _simulate(self, operation: str, application: str, environment: str) -> None:
        self.calls.append((operation, application, environment))
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)
        if self._failures[operation] > 0:
            self._failures[operation] -= 1
            raise EnvironmentProvisionError(
                f"Simulated failure in {operation} for {application}/{environment}",
                details={"operation": operation},
            )

    def _ensure_seeded(self, application: str) -> None:
        if application in self._weights:
            return
        slot = self._slots[(application, self.baseline_environment)]
        slot.instances = [
            self._new_instance(self.baseline_environment, self.baseline_version)
            for _ in range(self.baseline_replicas)
        ]
        self._weights[application] = {self.baseline_environment: 100}

    def _new_instance(self, environment: str, version: str) -> EnvironmentInstance:
        return EnvironmentInstance(
            id=f"{environment}-{next(self._ids)}",
            version=version,
            status=InstanceStatus.HEALTHY,
            ready_replicas=1,
            total_replicas=1,
        )

    def _refresh(
        self, application: str, environment: str, instance: EnvironmentInstance
    ) -> EnvironmentInstance:
        failing = (
            (application, environment) in self.unhealthy_environments
            or instance.version in self.unhealthy_versions
        )
        instance.status = InstanceStatus.UNHEALTHY if failing else InstanceStatus.HEALTHY
        instance.ready_replicas = 0 if failing else instance.total_replicas
        instance.last_updated = utc_now()
        return EnvironmentInstance(
            id=instance.id,
            version=instance.version,
            status=instance.status,
            ready_replicas=instance.ready_replicas,
            total_replicas=instance.total_replicas,
            last_updated=instance.last_updated,
        )
