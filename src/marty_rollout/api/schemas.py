"""Request and response bodies of the command API (camelCase on the wire)."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..deployment.models import Deployment, DeploymentStrategy


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DeploymentCreateRequest(CamelModel):
    application_name: str = Field(min_length=1)
    version: str = Field(min_length=1)
    strategy_id: str = Field(min_length=1)
    target_environment: str = "production"
    previous_version: str | None = None


class DeploymentCreatedResponse(CamelModel):
    deployment_id: str


class RollbackRequest(CamelModel):
    reason: str = ""


class CancelRequest(CamelModel):
    reason: str = ""


class OkResponse(CamelModel):
    ok: bool = True


def camelize(value: Any) -> Any:
    """Rename dictionary keys to camelCase, recursively."""
    if isinstance(value, dict):
        return {to_camel(str(key)): camelize(item) for key, item in value.items()}
    if isinstance(value, list):
        return [camelize(item) for item in value]
    return value


def deployment_payload(deployment: Deployment) -> dict[str, Any]:
    payload = camelize(deployment.to_dict())
    # Keyed by environment name, left as-is
    payload["traffic"] = deployment.traffic()
    payload["isTerminal"] = deployment.is_terminal
    return payload


def strategy_payload(strategy: DeploymentStrategy) -> dict[str, Any]:
    return camelize(strategy.to_dict())
