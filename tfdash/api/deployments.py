from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import PlainTextResponse
from sqlmodel import Session

from tfdash.api.utils import get_orchestrator
from tfdash.db import get_session
from tfdash.models import DeploymentCreate, DeploymentOutput, DeploymentRead, DeploymentStats, PipelineJobRead
from tfdash.services import deployments as deployment_service, jobs as jobs_service
from tfdash.services.orchestrator import DeploymentOrchestrator

router = APIRouter(prefix="/deployments", tags=["deployments"])


@router.post("", response_model=DeploymentRead, status_code=status.HTTP_202_ACCEPTED)
def create_deployment(
    payload: DeploymentCreate, orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)
) -> DeploymentRead:
    return orchestrator.submit_deployment(payload)


@router.get("", response_model=list[DeploymentRead])
def list_deployments(
    status: str | None = None,
    environment: str | None = None,
    limit: int | None = Query(None, ge=1),
    session: Session = Depends(get_session),
) -> list[DeploymentRead]:
    return deployment_service.list_deployments(session, status=status, environment=environment, limit=limit)


@router.get("/stats", response_model=DeploymentStats)
def deployment_stats(session: Session = Depends(get_session)) -> DeploymentStats:
    return deployment_service.deployment_stats(session)


@router.get("/recent", response_model=list[DeploymentRead])
def recent_deployments(
    limit: int = Query(10, ge=1, le=500), session: Session = Depends(get_session)
) -> list[DeploymentRead]:
    return deployment_service.recent_deployments(session, limit=limit)


@router.get("/by-name/{name}", response_model=DeploymentRead)
def get_deployment_by_name(name: str, session: Session = Depends(get_session)) -> DeploymentRead:
    return deployment_service.get_deployment_by_name(session, name=name)


@router.delete("/failed")
def purge_failed_deployments(
    older_than_days: int = Query(7, ge=0), session: Session = Depends(get_session)
) -> dict:
    purged = deployment_service.purge_failed_deployments(session, older_than=timedelta(days=older_than_days))
    return {"purged": purged, "older_than_days": older_than_days}


@router.get("/{deployment_id}", response_model=DeploymentRead)
def get_deployment(deployment_id: str, session: Session = Depends(get_session)) -> DeploymentRead:
    return deployment_service.get_deployment(session, deployment_id=deployment_id)


@router.get("/{deployment_id}/log", response_class=PlainTextResponse)
def get_deployment_log(deployment_id: str, session: Session = Depends(get_session)) -> str:
    return deployment_service.get_log(session, deployment_id=deployment_id)


@router.post("/{deployment_id}/provision", response_model=DeploymentRead, status_code=status.HTTP_202_ACCEPTED)
def provision_deployment(
    deployment_id: str, orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)
) -> DeploymentRead:
    return orchestrator.launch_provision(deployment_id)


@router.post("/{deployment_id}/destroy", response_model=DeploymentRead, status_code=status.HTTP_202_ACCEPTED)
def destroy_deployment(
    deployment_id: str, orchestrator: DeploymentOrchestrator = Depends(get_orchestrator)
) -> DeploymentRead:
    return orchestrator.launch_destroy(deployment_id)


@router.delete("/{deployment_id}", status_code=204)
def delete_deployment_endpoint(deployment_id: str, session: Session = Depends(get_session)) -> None:
    deployment_service.delete_deployment(session, deployment_id=deployment_id)


@router.get("/{deployment_id}/jobs", response_model=list[PipelineJobRead])
def list_deployment_jobs(deployment_id: str, session: Session = Depends(get_session)) -> list[PipelineJobRead]:
    deployment_service.get_deployment(session, deployment_id=deployment_id)
    return jobs_service.list_jobs(session, deployment_id=deployment_id)


@router.get("/{deployment_id}/outputs", response_model=dict[str, DeploymentOutput])
def get_deployment_outputs(deployment_id: str, session: Session = Depends(get_session)) -> dict[str, DeploymentOutput]:
    return deployment_service.get_outputs(session, deployment_id=deployment_id)
