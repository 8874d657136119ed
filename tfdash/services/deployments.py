from __future__ import annotations

from datetime import datetime, timedelta
import json
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy import func
from sqlmodel import Session, select

from tfdash.models import (
    DeploymentCreate,
    DeploymentORM,
    DeploymentOutput,
    DeploymentRead,
    DeploymentStats,
    EnvironmentStats,
)
from tfdash.services import jobs as jobs_service
from tfdash.services.errors import (
    DeploymentInProgressException,
    IntegrityException,
    InvalidTransitionException,
    NotFoundException,
)
from tfdash.services.naming import candidate_names, generate_deployment_id
from tfdash.services.pipeline_constants import (
    ACTIVE_STATUSES,
    ALLOWED_TRANSITIONS,
    DELETABLE_STATUSES,
    DEPLOYMENT_STATUS_DESTROYED,
    DEPLOYMENT_STATUS_FAILED,
    DEPLOYMENT_STATUS_PENDING,
    LAST_ACTION_CREATED,
)
from tfdash.services.variables import check_value
from tfdash.services.workspace import remove_workspace

logger = logging.getLogger(__name__)


def _get_deployment_orm(session: Session, *, deployment_id: str) -> DeploymentORM:
    if not (deployment := session.get(DeploymentORM, deployment_id)):
        raise NotFoundException(f"Deployment '{deployment_id}' not found")
    return deployment


def _name_taken(session: Session, name: str) -> bool:
    return session.exec(select(DeploymentORM.id).where(DeploymentORM.name == name)).first() is not None


def _free_name(session: Session, requested: str) -> str:
    for candidate in candidate_names(requested):
        if not _name_taken(session, candidate):
            return candidate
    raise IntegrityException(f"Could not find a free deployment name for '{requested}'")


def create_deployment(session: Session, *, payload: DeploymentCreate) -> DeploymentRead:
    """Record a new deployment in ``pending``. Nothing is rendered or run here."""
    for name, value in payload.variables.items():
        check_value(value, path=name)

    name = _free_name(session, payload.name)
    if name != payload.name:
        logger.info("Deployment name %r taken; using %r", payload.name, name)
    now = datetime.utcnow()
    deployment = DeploymentORM(
        id=generate_deployment_id(name),
        name=name,
        template_id=payload.template_id,
        environment=payload.environment,
        variables=dict(payload.variables),
        status=DEPLOYMENT_STATUS_PENDING,
        last_action=LAST_ACTION_CREATED,
        log="",
        created_at=now,
        updated_at=now,
    )
    session.add(deployment)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise IntegrityException(f"Deployment '{name}' already exists") from exc
    session.refresh(deployment)
    logger.info("Created deployment id=%s name=%s template_id=%s", deployment.id, name, deployment.template_id)
    return DeploymentRead.model_validate(deployment)


def list_deployments(
    session: Session,
    *,
    status: str | None = None,
    environment: str | None = None,
    limit: int | None = None,
) -> list[DeploymentRead]:
    stmt = select(DeploymentORM)
    if status is not None:
        stmt = stmt.where(DeploymentORM.status == status)
    if environment is not None:
        stmt = stmt.where(DeploymentORM.environment == environment)
    stmt = stmt.order_by(DeploymentORM.created_at.desc(), DeploymentORM.id)
    if limit is not None:
        stmt = stmt.limit(limit)
    return [DeploymentRead.model_validate(d) for d in session.exec(stmt).all()]


def recent_deployments(session: Session, *, limit: int = 10) -> list[DeploymentRead]:
    """Most recently touched deployments first."""
    stmt = select(DeploymentORM).order_by(DeploymentORM.updated_at.desc(), DeploymentORM.id).limit(limit)
    return [DeploymentRead.model_validate(d) for d in session.exec(stmt).all()]


def deployment_stats(session: Session) -> DeploymentStats:
    rows = session.exec(
        select(DeploymentORM.environment, DeploymentORM.status, func.count(DeploymentORM.id)).group_by(
            DeploymentORM.environment, DeploymentORM.status
        )
    ).all()
    stats = DeploymentStats()
    for environment, status, count in rows:
        stats.total += count
        stats.by_status[status] = stats.by_status.get(status, 0) + count
        if status in ACTIVE_STATUSES:
            stats.active += count
        env_stats = stats.by_environment.setdefault(environment, EnvironmentStats())
        env_stats.total += count
        env_stats.by_status[status] = count
    return stats


def get_deployment(session: Session, *, deployment_id: str) -> DeploymentRead:
    return DeploymentRead.model_validate(_get_deployment_orm(session, deployment_id=deployment_id))


def get_deployment_by_name(session: Session, *, name: str) -> DeploymentRead:
    deployment = session.exec(select(DeploymentORM).where(DeploymentORM.name == name)).first()
    if deployment is None:
        raise NotFoundException(f"Deployment named '{name}' not found")
    return DeploymentRead.model_validate(deployment)


def get_log(session: Session, *, deployment_id: str) -> str:
    return _get_deployment_orm(session, deployment_id=deployment_id).log


def get_outputs(session: Session, *, deployment_id: str) -> dict[str, DeploymentOutput]:
    """Root module outputs from the stored ``show -json`` snapshot.

    Empty when there is no snapshot. Sensitive values are withheld.
    """
    deployment = _get_deployment_orm(session, deployment_id=deployment_id)
    if not deployment.state_snapshot:
        return {}
    try:
        snapshot = json.loads(deployment.state_snapshot)
    except json.JSONDecodeError:
        logger.warning("Stored state snapshot for deployment_id=%s is not JSON", deployment_id)
        return {}
    values = snapshot.get("values") if isinstance(snapshot, dict) else None
    outputs = (values or {}).get("outputs") or {}
    result = {}
    for name, entry in sorted(outputs.items()):
        sensitive = bool(entry.get("sensitive"))
        result[name] = DeploymentOutput(
            value=None if sensitive else entry.get("value"),
            type=entry.get("type"),
            sensitive=sensitive,
        )
    return result


def delete_deployment(session: Session, *, deployment_id: str) -> DeploymentRead:
    """Remove a record in ``destroyed`` or ``failed``.

    A destroyed deployment's workspace directory goes with it. A failed one
    keeps its workspace since it may still hold tool state.
    """
    deployment = _get_deployment_orm(session, deployment_id=deployment_id)
    if deployment.status not in DELETABLE_STATUSES:
        raise IntegrityException(
            f"Deployment '{deployment_id}' is {deployment.status}; only destroyed or failed deployments can be deleted"
        )
    if jobs_service.has_open_job(session, deployment_id=deployment_id):
        raise DeploymentInProgressException(f"A pipeline is still open for deployment '{deployment_id}'")

    snapshot = DeploymentRead.model_validate(deployment)
    removed_jobs = jobs_service.delete_jobs_for_deployment(session, deployment_id=deployment_id)
    session.flush()
    session.delete(deployment)
    session.commit()
    if snapshot.status == DEPLOYMENT_STATUS_DESTROYED and snapshot.workspace_path:
        remove_workspace(snapshot.workspace_path)
    logger.info("Deleted deployment id=%s (removed %s jobs)", deployment_id, removed_jobs)
    return snapshot


def purge_failed_deployments(session: Session, *, older_than: timedelta) -> list[str]:
    """Delete ``failed`` deployments last touched before now - older_than.

    Deployments with an open pipeline are skipped. Returns the deleted ids.
    """
    cutoff = datetime.utcnow() - older_than
    candidates = session.exec(
        select(DeploymentORM.id)
        .where(DeploymentORM.status == DEPLOYMENT_STATUS_FAILED, DeploymentORM.updated_at < cutoff)
        .order_by(DeploymentORM.updated_at)
    ).all()
    deleted = []
    for deployment_id in candidates:
        try:
            delete_deployment(session, deployment_id=deployment_id)
        except DeploymentInProgressException:
            logger.info("Skipping purge of deployment_id=%s: pipeline still open", deployment_id)
            continue
        deleted.append(deployment_id)
    logger.info("Purged %s failed deployments older than %s", len(deleted), cutoff)
    return deleted


def transition(deployment: DeploymentORM, target: str, *, last_action: str) -> None:
    """Move along one edge of the state machine; the caller persists."""
    if target not in ALLOWED_TRANSITIONS.get(deployment.status, frozenset()):
        raise InvalidTransitionException(deployment.status, target)
    logger.debug("Deployment %s: %s -> %s (%s)", deployment.id, deployment.status, target, last_action)
    deployment.status = target
    deployment.last_action = last_action
    deployment.updated_at = datetime.utcnow()


def append_log(deployment: DeploymentORM, text: str) -> None:
    if not text:
        return
    if not text.endswith("\n"):
        text += "\n"
    deployment.log = (deployment.log or "") + text
    deployment.updated_at = datetime.utcnow()
