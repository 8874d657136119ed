from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from tfdash.models import DeploymentCreate, PipelineJobORM
from tfdash.services import deployments as deployment_service, jobs as jobs_service
from tfdash.services.errors import DeploymentInProgressException, IntegrityException, NotFoundException


def _seed_deployment(db_session, name: str = "jobs-demo") -> str:
    deployment = deployment_service.create_deployment(
        db_session,
        payload=DeploymentCreate(name=name, template_id="any-template"),
    )
    return deployment.id


def _lease(db_session, deployment_id: str, pipeline: str = "provision") -> PipelineJobORM:
    job = jobs_service.acquire_lease(db_session, deployment_id=deployment_id, pipeline=pipeline, worker_id="w1")
    db_session.commit()
    return job


def test_acquire_lease_creates_running_job(db_session) -> None:
    deployment_id = _seed_deployment(db_session)

    job = _lease(db_session, deployment_id)

    assert job.id is not None
    assert job.status == "running"
    assert job.pipeline == "provision"
    assert job.locked_by == "w1"
    assert job.locked_at is not None


def test_second_lease_on_same_deployment_is_rejected(db_session) -> None:
    deployment_id = _seed_deployment(db_session)
    _lease(db_session, deployment_id)

    with pytest.raises(DeploymentInProgressException):
        jobs_service.acquire_lease(db_session, deployment_id=deployment_id, pipeline="destroy", worker_id="w2")


def test_leases_on_different_deployments_do_not_conflict(db_session) -> None:
    first = _seed_deployment(db_session, "one")
    second = _seed_deployment(db_session, "two")
    _lease(db_session, first)
    _lease(db_session, second)
    assert len(jobs_service.list_jobs(db_session, status="running")) == 2


def test_released_lease_can_be_taken_again(db_session) -> None:
    deployment_id = _seed_deployment(db_session)
    job = _lease(db_session, deployment_id)

    done = jobs_service.mark_job_done(db_session, job_id=job.id)
    assert done.status == "done"
    assert done.locked_by is None

    again = _lease(db_session, deployment_id, pipeline="destroy")
    assert again.id != job.id


def test_mark_job_failed_keeps_error(db_session) -> None:
    deployment_id = _seed_deployment(db_session)
    job = _lease(db_session, deployment_id)

    failed = jobs_service.mark_job_failed(db_session, job_id=job.id, error="boom")

    assert failed.status == "failed"
    assert failed.last_error == "boom"
    assert failed.locked_at is None


def test_mark_unknown_job_raises(db_session) -> None:
    with pytest.raises(NotFoundException):
        jobs_service.mark_job_done(db_session, job_id=9999)


def test_release_job_fails_an_open_lease(db_session) -> None:
    deployment_id = _seed_deployment(db_session)
    job = _lease(db_session, deployment_id)

    released = jobs_service.release_job(db_session, job_id=job.id, reason="worker crashed")

    assert released.status == "failed"
    assert released.last_error == "worker crashed"
    with pytest.raises(IntegrityException):
        jobs_service.release_job(db_session, job_id=job.id)


def test_list_jobs_filters(db_session) -> None:
    first = _seed_deployment(db_session, "one")
    second = _seed_deployment(db_session, "two")
    job = _lease(db_session, first)
    jobs_service.mark_job_done(db_session, job_id=job.id)
    _lease(db_session, first)
    _lease(db_session, second)

    assert len(jobs_service.list_jobs(db_session, deployment_id=first)) == 2
    assert len(jobs_service.list_jobs(db_session, status="done")) == 1
    assert len(jobs_service.list_jobs(db_session, limit=1)) == 1


def test_purge_removes_only_old_finished_jobs(db_session) -> None:
    first = _seed_deployment(db_session, "one")
    second = _seed_deployment(db_session, "two")
    old = _lease(db_session, first)
    jobs_service.mark_job_done(db_session, job_id=old.id)
    old.updated_at = datetime.utcnow() - timedelta(hours=200)
    db_session.add(old)
    db_session.commit()

    recent = _lease(db_session, first)
    jobs_service.mark_job_failed(db_session, job_id=recent.id, error="x")
    stale_but_open = _lease(db_session, second)
    stale_but_open.updated_at = datetime.utcnow() - timedelta(hours=200)
    db_session.add(stale_but_open)
    db_session.commit()

    purged = jobs_service.purge_finished_jobs(db_session, older_than=timedelta(hours=168))

    assert purged == 1
    remaining = {job.id for job in jobs_service.list_jobs(db_session)}
    assert remaining == {recent.id, stale_but_open.id}
