from fastapi import APIRouter, Depends, Query, Response, status
from infraflow.core.dependencies import get_current_user_id, get_orchestrator
from infraflow.modules.deployments.schemas import (
    CostEstimateResult,
    DeploymentCreate,
    DeploymentListResponse,
    DeploymentLogsResponse,
    DeploymentResponse,
    DeploymentStatus,
    DeploymentStatusResponse,
    ExportFormat,
    ExportResponse,
    Provider,
    RollbackRequest,
    ValidationRequest,
    ValidationResponse,
)
from infraflow.modules.deployments.service import DeploymentOrchestrator, to_list_response
from typing import Optional

router = APIRouter(prefix="/deployments", tags=["deployments"])


@router.post("", response_model=DeploymentResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_deployment(
    deployment_data: DeploymentCreate,
    user_id: str = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    """
    Create a deployment and start provisioning it.
    Returns immediately; poll /{id}/status or /{id}/logs for progress.
    """
    return orchestrator.create(
        user_id=user_id,
        provider=deployment_data.provider,
        infra_description=deployment_data.infra_description,
        project_id=deployment_data.project_id,
        name=deployment_data.name,
    )


@router.get("", response_model=DeploymentListResponse)
async def list_deployments(
    status_filter: Optional[DeploymentStatus] = Query(None, alias="status"),
    provider: Optional[Provider] = None,
    project_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    """List the caller's deployments, newest first"""
    items, total = orchestrator.list_deployments(
        user_id, status=status_filter, provider=provider, project_id=project_id, page=page, limit=limit
    )
    return to_list_response(items, total, page, limit)


@router.post("/rollback", response_model=DeploymentResponse, status_code=status.HTTP_202_ACCEPTED)
async def rollback_deployment(
    request: RollbackRequest,
    user_id: str = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    """Destroy the resources of the project's latest deployed deployment"""
    return orchestrator.rollback(request.project_id, user_id)


@router.post("/validate", response_model=ValidationResponse)
def validate_configuration(
    request: ValidationRequest,
    user_id: str = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    """Run terraform validate in a throwaway workspace. Blocking, so served from the threadpool."""
    return orchestrator.validate_configuration(request.provider, request.infra_description)


@router.get("/{deployment_id}", response_model=DeploymentResponse)
async def get_deployment(
    deployment_id: str,
    user_id: str = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.get_deployment(deployment_id, user_id)


@router.get("/{deployment_id}/status", response_model=DeploymentStatusResponse)
def get_deployment_status(
    deployment_id: str,
    live: bool = False,
    user_id: str = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    """Stored status; with ?live=true also the resources in terraform state"""
    return orchestrator.get_status(deployment_id, user_id, include_live=live)


@router.get("/{deployment_id}/logs", response_model=DeploymentLogsResponse)
async def get_deployment_logs(
    deployment_id: str,
    user_id: str = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    """
    Poll for deployment logs.
    Returns current logs and deployment status.
    """
    return orchestrator.get_logs(deployment_id, user_id)


@router.get("/{deployment_id}/cost", response_model=CostEstimateResult)
def get_deployment_cost(
    deployment_id: str,
    user_id: str = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.get_cost(deployment_id, user_id)


@router.get("/{deployment_id}/export", response_model=ExportResponse)
async def export_configuration(
    deployment_id: str,
    export_format: ExportFormat = Query(ExportFormat.STRUCTURED, alias="format"),
    user_id: str = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.export_configuration(deployment_id, user_id, export_format)


@router.delete("/{deployment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_deployment(
    deployment_id: str,
    user_id: str = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    """Delete a deployment record; rejected while a job is active"""
    orchestrator.delete(deployment_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
