from __future__ import annotations

from datetime import datetime, timedelta
import logging

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from tfdash.models import PipelineJobORM
from tfdash.services.errors import DeploymentInProgressException, IntegrityException, NotFoundException
from tfdash.services.pipeline_constants import (
    JOB_STATUS_DONE,
    JOB_STATUS_FAILED,
    JOB_STATUS_RUNNING,
    OPEN_JOB_STATUSES,
)

logger = logging.getLogger(__name__)


def acquire_lease(
    session: Session,
    *,
    deployment_id: str,
    pipeline: str,
    worker_id: str,
) -> PipelineJobORM:
    """Insert a running job for the deployment in the current transaction.

    The partial unique index on open jobs turns the insert into a
    compare-and-swap: a second caller gets DeploymentInProgressException.
    """
    now = datetime.utcnow()
    job = PipelineJobORM(
        deployment_id=deployment_id,
        pipeline=pipeline,
        status=JOB_STATUS_RUNNING,
        locked_by=worker_id,
        locked_at=now,
        created_at=now,
        updated_at=now,
    )
    try:
        session.add(job)
        session.flush()
    except IntegrityError as exc:
        session.rollback()
        logger.warning("Pipeline already in progress for deployment_id=%s; rejecting %s", deployment_id, pipeline)
        raise DeploymentInProgressException(
            f"A pipeline is already running for deployment '{deployment_id}'"
        ) from exc
    logger.info("Acquired lease job id=%s deployment_id=%s pipeline=%s worker_id=%s",
                job.id, deployment_id, pipeline, worker_id)
    return job


def list_jobs(
    session: Session,
    *,
    status: str | None = None,
    deployment_id: str | None = None,
    limit: int = 100,
) -> list[PipelineJobORM]:
    """List pipeline jobs with optional status/deployment filters, newest first."""
    stmt = select(PipelineJobORM)
    if status is not None:
        stmt = stmt.where(PipelineJobORM.status == status)
    if deployment_id is not None:
        stmt = stmt.where(PipelineJobORM.deployment_id == deployment_id)
    stmt = stmt.order_by(PipelineJobORM.created_at.desc(), PipelineJobORM.id.desc()).limit(limit)
    return list(session.exec(stmt).all())


def mark_job_done(session: Session, *, job_id: int) -> PipelineJobORM:
    """Release a lease after a pipeline ran to its end, whatever the deployment outcome."""
    job = session.get(PipelineJobORM, job_id)
    if job is None:
        raise NotFoundException("Job not found")
    job.status = JOB_STATUS_DONE
    job.last_error = None
    job.locked_by = None
    job.locked_at = None
    job.updated_at = datetime.utcnow()
    session.add(job)
    session.commit()
    session.refresh(job)
    logger.info("Released lease job id=%s as done", job_id)
    return job


def mark_job_failed(session: Session, *, job_id: int, error: str) -> PipelineJobORM:
    """Release a lease after the pipeline itself broke, keeping the error."""
    job = session.get(PipelineJobORM, job_id)
    if job is None:
        raise NotFoundException("Job not found")
    job.status = JOB_STATUS_FAILED
    job.last_error = error
    job.locked_by = None
    job.locked_at = None
    job.updated_at = datetime.utcnow()
    session.add(job)
    session.commit()
    session.refresh(job)
    logger.warning("Released lease job id=%s as failed: %s", job_id, error)
    return job


def release_job(session: Session, *, job_id: int, reason: str = "released manually") -> PipelineJobORM:
    """Fail an open lease left behind by a crashed process."""
    job = session.get(PipelineJobORM, job_id)
    if job is None:
        raise NotFoundException("Job not found")
    if job.status not in OPEN_JOB_STATUSES:
        raise IntegrityException(f"Job {job_id} is already {job.status}")
    return mark_job_failed(session, job_id=job_id, error=reason)


def purge_finished_jobs(session: Session, *, older_than: timedelta) -> int:
    """Delete done/failed jobs last touched before now - older_than."""
    cutoff = datetime.utcnow() - older_than
    jobs = session.exec(
        select(PipelineJobORM).where(
            PipelineJobORM.status.in_((JOB_STATUS_DONE, JOB_STATUS_FAILED)),
            PipelineJobORM.updated_at < cutoff,
        )
    ).all()
    for job in jobs:
        session.delete(job)
    session.commit()
    logger.info("Purged %s finished pipeline jobs older than %s", len(jobs), cutoff)
    return len(jobs)


def delete_jobs_for_deployment(session: Session, *, deployment_id: str) -> int:
    """Delete a deployment's finished jobs in the current transaction."""
    jobs = session.exec(
        select(PipelineJobORM).where(
            PipelineJobORM.deployment_id == deployment_id,
            PipelineJobORM.status.in_((JOB_STATUS_DONE, JOB_STATUS_FAILED)),
        )
    ).all()
    for job in jobs:
        session.delete(job)
    return len(jobs)


def has_open_job(session: Session, *, deployment_id: str) -> bool:
    stmt = select(PipelineJobORM.id).where(
        PipelineJobORM.deployment_id == deployment_id,
        PipelineJobORM.status.in_(OPEN_JOB_STATUSES),
    )
    return session.exec(stmt).first() is not None
