"""
Environment lifecycle API.

Called by the user-facing API after it created (or looked up) the environment
row; user authentication and ownership checks happen there.
"""

import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field

from ..dependencies import get_orchestrator, verify_internal_token
from ..schemas import (
    CommandResult,
    EnvironmentCreateOptions,
    EnvironmentInfo,
    EnvironmentResources,
    LogsResult,
)
from ..services.environments import EnvironmentOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/environments",
    tags=["environments"],
    dependencies=[Depends(verify_internal_token)],
)


# ============================================================================
# Request Models
# ============================================================================

class ProvisionEnvironmentRequest(BaseModel):
    """Workload parameters of an environment being provisioned."""
    user_id: str = Field(..., description="Owner of the environment (selects the namespace)")
    name: str
    docker_image: str
    port: int = Field(8080, ge=1, le=65535)
    resources: EnvironmentResources = Field(default_factory=EnvironmentResources)
    environment_variables: Dict[str, str] = Field(default_factory=dict)
    startup_commands: List[str] = Field(default_factory=list)


class ExecuteCommandRequest(BaseModel):
    command: str = Field(..., min_length=1)
    timeout: Optional[int] = Field(None, ge=1, le=600, description="Seconds before the command is abandoned")


# ============================================================================
# Endpoints
# ============================================================================

@router.post("/{environment_id}/provision", response_model=EnvironmentInfo)
async def provision_environment(
    environment_id: str,
    request: ProvisionEnvironmentRequest,
    orchestrator: EnvironmentOrchestrator = Depends(get_orchestrator),
):
    options = EnvironmentCreateOptions(environment_id=environment_id, **request.model_dump())
    return await orchestrator.create_environment(options)


@router.post("/{environment_id}/start", response_model=EnvironmentInfo)
async def start_environment(
    environment_id: str,
    orchestrator: EnvironmentOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.start_environment(environment_id)


@router.post("/{environment_id}/stop", response_model=EnvironmentInfo)
async def stop_environment(
    environment_id: str,
    orchestrator: EnvironmentOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.stop_environment(environment_id)


@router.delete("/{environment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_environment(
    environment_id: str,
    orchestrator: EnvironmentOrchestrator = Depends(get_orchestrator),
):
    await orchestrator.delete_environment(environment_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{environment_id}/status", response_model=EnvironmentInfo)
async def get_environment_status(
    environment_id: str,
    orchestrator: EnvironmentOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.get_environment_info(environment_id)


@router.get("/{environment_id}/logs", response_model=LogsResult)
async def get_environment_logs(
    environment_id: str,
    lines: Optional[int] = Query(None, ge=1, le=10000),
    orchestrator: EnvironmentOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.get_environment_logs(environment_id, lines)


@router.post("/{environment_id}/exec", response_model=CommandResult)
async def execute_command(
    environment_id: str,
    request: ExecuteCommandRequest,
    orchestrator: EnvironmentOrchestrator = Depends(get_orchestrator),
):
    logger.info(f"[EXEC] Command requested for environment {environment_id}")
    return await orchestrator.execute_command(environment_id, request.command, request.timeout)
