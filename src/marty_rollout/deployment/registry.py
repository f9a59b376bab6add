"""Deployment registry: the single source of truth for deployment records."""

from __future__ import annotations

import asyncio
import builtins
from collections import Counter
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog

from .enums import DeploymentStatus
from .exceptions import DeploymentNotFoundError, DeploymentTerminalError
from .models import Deployment

logger = structlog.get_logger(__name__)


class DeploymentRegistry:
    """Stores deployment records keyed by id.

    Every write goes through :meth:`mutate`, which holds the record's lock, so
    a deployment has exactly one writer at a time. Reads return deep copies.
    """

    def __init__(self, max_history: int = 1000):
        self.max_history = max_history
        self._records: builtins.dict[str, Deployment] = {}
        self._locks: builtins.dict[str, asyncio.Lock] = {}

    def __contains__(self, deployment_id: object) -> bool:
        return deployment_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    async def add(self, deployment: Deployment) -> None:
        self._records[deployment.id] = deployment
        self._locks[deployment.id] = asyncio.Lock()
        self._prune()

    def _record(self, deployment_id: str) -> Deployment:
        try:
            return self._records[deployment_id]
        except KeyError:
            raise DeploymentNotFoundError(
                f"Deployment not found: {deployment_id}",
                details={"deployment_id": deployment_id},
            ) from None

    @asynccontextmanager
    async def mutate(
        self, deployment_id: str, *, allow_terminal: bool = False
    ) -> AsyncIterator[Deployment]:
        """Exclusive write access to a record.

        Terminal records are read-only unless ``allow_terminal`` is set (used
        when recording a rollback of a finished deployment).
        """
        record = self._record(deployment_id)
        async with self._locks[deployment_id]:
            if record.is_terminal and not allow_terminal:
                raise DeploymentTerminalError(
                    f"Deployment {deployment_id} is already {record.status.value}",
                    details={"deployment_id": deployment_id, "status": record.status.value},
                )
            yield record

    async def get(self, deployment_id: str) -> Deployment:
        record = self._record(deployment_id)
        async with self._locks[deployment_id]:
            return record.snapshot()

    async def list(
        self,
        status: DeploymentStatus | None = None,
        application_name: str | None = None,
    ) -> builtins.list[Deployment]:
        snapshots = []
        for deployment_id in builtins.list(self._records):
            snapshot = await self.get(deployment_id)
            if status is not None and snapshot.status != status:
                continue
            if application_name is not None and snapshot.application_name != application_name:
                continue
            snapshots.append(snapshot)
        return sorted(snapshots, key=lambda d: d.start_time)

    async def history(self, application_name: str) -> builtins.list[Deployment]:
        return await self.list(application_name=application_name)

    def live_for_application(self, application_name: str) -> builtins.list[str]:
        """Ids of non-terminal deployments of an application."""
        return [
            record.id
            for record in self._records.values()
            if record.application_name == application_name and not record.is_terminal
        ]

    def live_ids(self) -> builtins.list[str]:
        return [record.id for record in self._records.values() if not record.is_terminal]

    def last_good_version(self, application_name: str, exclude: str | None = None) -> str | None:
        """Version of the latest succeeded deployment of an application."""
        succeeded = [
            record
            for record in self._records.values()
            if record.application_name == application_name
            and record.status == DeploymentStatus.SUCCEEDED
            and record.id != exclude
        ]
        if not succeeded:
            return None
        return max(succeeded, key=lambda record: record.start_time).version

    async def summary(self) -> builtins.dict[str, Any]:
        """Aggregate rollout statistics across all retained records."""
        records = await self.list()
        finished = [r for r in records if r.end_time is not None]
        durations = [r.duration_seconds or 0.0 for r in finished]
        total = len(records)
        return {
            "total_deployments": total,
            "active_deployments": sum(1 for r in records if not r.is_terminal),
            "successful_deployments": sum(1 for r in records if r.status == DeploymentStatus.SUCCEEDED),
            "failed_deployments": sum(1 for r in records if r.status == DeploymentStatus.FAILED),
            "average_deployment_time": (sum(durations) / len(durations) / 60) if durations else 0.0,
            "rollback_rate": (sum(1 for r in records if r.rollback is not None) / total) if total else 0.0,
            "strategies_usage": dict(Counter(r.strategy.type.value for r in records)),
        }

    def _prune(self) -> None:
        overflow = len(self._records) - self.max_history
        if overflow <= 0:
            return
        terminal = sorted(
            (r for r in self._records.values() if r.is_terminal and not self._locks[r.id].locked()),
            key=lambda r: r.start_time,
        )
        for record in terminal[:overflow]:
            del self._records[record.id]
            del self._locks[record.id]
            logger.debug("registry.pruned", deployment_id=record.id)
