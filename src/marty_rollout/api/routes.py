"""
Command API routes.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status

from ..deployment import DeploymentNotFoundError, DeploymentOrchestrator
from .schemas import (
    CancelRequest,
    DeploymentCreatedResponse,
    DeploymentCreateRequest,
    OkResponse,
    RollbackRequest,
    camelize,
    deployment_payload,
    strategy_payload,
)

router = APIRouter()


def get_orchestrator(request: Request) -> DeploymentOrchestrator:
    return request.app.state.orchestrator


@router.post(
    "/deployments",
    response_model=DeploymentCreatedResponse,
    response_model_by_alias=True,
    status_code=status.HTTP_201_CREATED,
)
async def create_deployment(
    body: DeploymentCreateRequest,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> DeploymentCreatedResponse:
    """Start a rollout."""
    deployment_id = await orchestrator.start_deployment(
        body.application_name,
        body.version,
        body.strategy_id,
        target_environment=body.target_environment,
        previous_version=body.previous_version,
    )
    return DeploymentCreatedResponse(deployment_id=deployment_id)


@router.get("/deployments")
async def list_deployments(
    status_filter: str | None = Query(default=None, alias="status"),
    application_name: str | None = Query(default=None, alias="applicationName"),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> list[dict[str, Any]]:
    deployments = await orchestrator.list_deployments(
        status=status_filter, application_name=application_name
    )
    return [deployment_payload(d) for d in deployments]


@router.get("/deployments/summary")
async def deployment_summary(
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Aggregate statistics over retained deployments."""
    return camelize(await orchestrator.summary())


@router.get("/deployments/{deployment_id}")
async def get_deployment(
    deployment_id: str,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    return deployment_payload(await orchestrator.get_deployment(deployment_id))


@router.post("/deployments/{deployment_id}/rollback", response_model=OkResponse)
async def rollback_deployment(
    deployment_id: str,
    body: RollbackRequest | None = None,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> OkResponse:
    """Roll a deployment back to its previous version."""
    reason = body.reason if body else ""
    if not await orchestrator.rollback_deployment(deployment_id, reason):
        raise DeploymentNotFoundError(
            f"Deployment not found: {deployment_id}", details={"deployment_id": deployment_id}
        )
    return OkResponse()


@router.post("/deployments/{deployment_id}/approve", response_model=OkResponse)
async def approve_deployment(
    deployment_id: str,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> OkResponse:
    """Release the approval gate a deployment is paused at."""
    await orchestrator.approve(deployment_id)
    return OkResponse()


@router.post("/deployments/{deployment_id}/cancel", response_model=OkResponse)
async def cancel_deployment(
    deployment_id: str,
    body: CancelRequest | None = None,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> OkResponse:
    await orchestrator.cancel(deployment_id, body.reason if body else "")
    return OkResponse()


@router.get("/strategies")
async def list_strategies(
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> list[dict[str, Any]]:
    return [strategy_payload(s) for s in orchestrator.strategies()]
