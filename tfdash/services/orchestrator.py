from __future__ import annotations

from concurrent.futures import Executor, Future
from dataclasses import dataclass
import json
import logging
import os
from pathlib import Path
import socket
from typing import Callable, ContextManager

from sqlmodel import Session

from tfdash.logging_config import deployment_context
from tfdash.models import DeploymentCreate, DeploymentORM, DeploymentRead, TemplateORM
from tfdash.provisioner import StepResult, TerraformRunner
from tfdash.services import deployments as deployment_service
from tfdash.services import jobs as jobs_service
from tfdash.services import templates as template_service
from tfdash.services.deployments import _get_deployment_orm, append_log, transition
from tfdash.services.errors import (
    InvalidTransitionException,
    NotFoundException,
    PreconditionException,
    TfdashException,
    WorkspaceException,
)
from tfdash.services.pipeline_constants import (
    DEPLOYMENT_STATUS_DESTROY_FAILED,
    DEPLOYMENT_STATUS_DESTROYED,
    DEPLOYMENT_STATUS_DESTROYING,
    DEPLOYMENT_STATUS_FAILED,
    DEPLOYMENT_STATUS_RUNNING,
    DEPLOYMENT_STATUS_SUCCESS,
    DESTROY_STEPS,
    DESTROYABLE_STATUSES,
    LAST_ACTION_COMPLETED,
    LAST_ACTION_DESTROYED,
    PIPELINE_DESTROY,
    PIPELINE_PROVISION,
    PROVISION_STEPS,
    PROVISIONABLE_STATUSES,
    STEP_INIT,
)
from tfdash.services.variables import resolve_bindings
from tfdash.services.workspace import WorkspaceMaterializer, cleanup_tool_artifacts
from tfdash.settings import EngineSettings

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], ContextManager[Session]]
UpdateCallback = Callable[[DeploymentRead], None]

# Status a pipeline falls into when one of its steps fails.
_FAILURE_STATUS = {
    DEPLOYMENT_STATUS_RUNNING: DEPLOYMENT_STATUS_FAILED,
    DEPLOYMENT_STATUS_DESTROYING: DEPLOYMENT_STATUS_DESTROY_FAILED,
}


@dataclass(frozen=True)
class PipelineOutcome:
    deployment_id: str
    pipeline: str
    status: str
    last_action: str | None
    last_error: str | None


class ForegroundExecutor(Executor):
    """Runs each submitted task to completion inside ``submit``."""

    def submit(self, fn, /, *args, **kwargs) -> Future:
        future: Future = Future()
        try:
            result = fn(*args, **kwargs)
        except Exception as exc:
            future.set_exception(exc)
        else:
            future.set_result(result)
        return future


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def _log_task_error(future: Future) -> None:
    if not future.cancelled() and (exc := future.exception()) is not None:
        logger.error("Pipeline task ended with an unhandled error", exc_info=exc)


class DeploymentOrchestrator:
    """Drives provision and destroy pipelines for deployments.

    ``launch_*`` validate preconditions, take the per-deployment lease and
    persist the first status change in the caller's thread; the remaining
    steps run as one task on the injected executor, each task with its own
    session.
    """

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        materializer: WorkspaceMaterializer,
        runner: TerraformRunner,
        executor: Executor,
        on_update: UpdateCallback | None = None,
        worker_id: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._materializer = materializer
        self._runner = runner
        self._executor = executor
        self._on_update = on_update
        self._worker_id = worker_id or default_worker_id()

    @classmethod
    def from_settings(
        cls,
        settings: EngineSettings,
        *,
        session_factory: SessionFactory,
        executor: Executor,
        on_update: UpdateCallback | None = None,
    ) -> "DeploymentOrchestrator":
        return cls(
            session_factory=session_factory,
            materializer=WorkspaceMaterializer.from_settings(settings),
            runner=TerraformRunner.from_settings(settings),
            executor=executor,
            on_update=on_update,
        )

    # entry points

    def submit_deployment(self, payload: DeploymentCreate) -> DeploymentRead:
        """Create a deployment and launch its provision pipeline.

        A precondition failure leaves the new record in ``pending``.
        """
        with self._session_factory() as session:
            created = deployment_service.create_deployment(session, payload=payload)
        return self.launch_provision(created.id)

    def launch_provision(self, deployment_id: str) -> DeploymentRead:
        with self._session_factory() as session:
            deployment = _get_deployment_orm(session, deployment_id=deployment_id)
            job = jobs_service.acquire_lease(
                session, deployment_id=deployment_id, pipeline=PIPELINE_PROVISION, worker_id=self._worker_id
            )
            if deployment.status not in PROVISIONABLE_STATUSES:
                raise InvalidTransitionException(deployment.status, DEPLOYMENT_STATUS_RUNNING)
            template = self._lookup_template(session, deployment.template_id)
            resolve_bindings(template.variable_schema_json, deployment.variables, environment=deployment.environment)

            deployment.last_error = None
            snapshot = self._begin_step(session, deployment, DEPLOYMENT_STATUS_RUNNING, STEP_INIT)
            job_id = job.id
        logger.info("Launching provision for deployment_id=%s job_id=%s", deployment_id, job_id)
        self._dispatch(deployment_id, job_id, PIPELINE_PROVISION)
        return snapshot

    def launch_destroy(self, deployment_id: str) -> DeploymentRead:
        with self._session_factory() as session:
            deployment = _get_deployment_orm(session, deployment_id=deployment_id)
            job = jobs_service.acquire_lease(
                session, deployment_id=deployment_id, pipeline=PIPELINE_DESTROY, worker_id=self._worker_id
            )
            if deployment.status not in DESTROYABLE_STATUSES:
                raise InvalidTransitionException(deployment.status, DEPLOYMENT_STATUS_DESTROYING)
            if not deployment.workspace_path or not Path(deployment.workspace_path).is_dir():
                raise PreconditionException(f"Deployment '{deployment_id}' has no workspace to destroy")

            deployment.last_error = None
            snapshot = self._begin_step(session, deployment, DEPLOYMENT_STATUS_DESTROYING, STEP_INIT)
            job_id = job.id
        logger.info("Launching destroy for deployment_id=%s job_id=%s", deployment_id, job_id)
        self._dispatch(deployment_id, job_id, PIPELINE_DESTROY)
        return snapshot

    # pipeline task

    def _dispatch(self, deployment_id: str, job_id: int, pipeline: str) -> Future:
        future = self._executor.submit(self._run_pipeline, deployment_id, job_id, pipeline)
        future.add_done_callback(_log_task_error)
        return future

    def _run_pipeline(self, deployment_id: str, job_id: int, pipeline: str) -> PipelineOutcome:
        with deployment_context(deployment_id), self._session_factory() as session:
            deployment = _get_deployment_orm(session, deployment_id=deployment_id)
            try:
                if pipeline == PIPELINE_PROVISION:
                    self._provision(session, deployment)
                else:
                    self._destroy(session, deployment)
            except Exception as exc:
                logger.exception("Pipeline %s crashed for deployment_id=%s", pipeline, deployment_id)
                session.rollback()
                deployment = _get_deployment_orm(session, deployment_id=deployment_id)
                self._record_crash(session, deployment, exc)
                jobs_service.mark_job_failed(session, job_id=job_id, error=str(exc))
            else:
                jobs_service.mark_job_done(session, job_id=job_id)
            session.refresh(deployment)
            logger.info(
                "Pipeline %s finished for deployment_id=%s status=%s last_action=%s",
                pipeline,
                deployment_id,
                deployment.status,
                deployment.last_action,
            )
            return PipelineOutcome(
                deployment_id=deployment_id,
                pipeline=pipeline,
                status=deployment.status,
                last_action=deployment.last_action,
                last_error=deployment.last_error,
            )

    def _provision(self, session: Session, deployment: DeploymentORM) -> None:
        template = self._lookup_template(session, deployment.template_id)
        try:
            workspace = self._materializer.render(deployment, template)
        except TfdashException as exc:
            logger.warning("Rendering workspace failed: %s", exc)
            self._fail_step(session, deployment, STEP_INIT, message=str(exc))
            return
        if deployment.workspace_path is None:
            deployment.workspace_path = str(workspace)
        append_log(deployment, f"Rendered workspace {workspace}")
        self._persist(session, deployment)

        if not self._run_steps(session, deployment, workspace, PROVISION_STEPS, DEPLOYMENT_STATUS_RUNNING):
            return

        self._store_state_snapshot(deployment, workspace)
        transition(deployment, DEPLOYMENT_STATUS_SUCCESS, last_action=LAST_ACTION_COMPLETED)
        deployment.last_error = None
        self._persist(session, deployment)

    def _destroy(self, session: Session, deployment: DeploymentORM) -> None:
        workspace = Path(deployment.workspace_path)
        if not self._run_steps(session, deployment, workspace, DESTROY_STEPS, DEPLOYMENT_STATUS_DESTROYING):
            return

        deployment.state_snapshot = None
        transition(deployment, DEPLOYMENT_STATUS_DESTROYED, last_action=LAST_ACTION_DESTROYED)
        deployment.last_error = None
        try:
            removed = cleanup_tool_artifacts(workspace)
        except WorkspaceException as exc:
            logger.warning("Cleanup after destroy was incomplete: %s", exc)
            append_log(deployment, f"Warning: {exc}")
        else:
            if removed:
                append_log(deployment, f"Removed {', '.join(removed)}")
        self._persist(session, deployment)

    def _run_steps(
        self,
        session: Session,
        deployment: DeploymentORM,
        workspace: Path,
        steps: tuple[str, ...],
        status: str,
    ) -> bool:
        # The header of the first step was persisted at launch.
        for index, step in enumerate(steps):
            if index > 0:
                self._begin_step(session, deployment, status, step)
            result = self._runner.run_step(workspace, step)
            append_log(deployment, result.output)
            if not result.success:
                self._fail_step(session, deployment, step, result=result)
                return False
            self._persist(session, deployment)
        return True

    def _store_state_snapshot(self, deployment: DeploymentORM, workspace: Path) -> None:
        result = self._runner.show_state(workspace)
        if result.success:
            try:
                json.loads(result.output)
            except ValueError:
                reason = "output is not JSON"
            else:
                deployment.state_snapshot = result.output
                return
        else:
            reason = f"exit code {result.returncode}"
        logger.warning("Unable to read state snapshot for deployment_id=%s: %s", deployment.id, reason)
        append_log(deployment, f"Warning: unable to read state snapshot ({reason})")

    # persistence helpers

    def _lookup_template(self, session: Session, template_id: str) -> TemplateORM:
        try:
            return template_service.lookup(session, template_id)
        except NotFoundException as exc:
            raise PreconditionException(f"Unknown template '{template_id}'") from exc

    def _begin_step(self, session: Session, deployment: DeploymentORM, status: str, step: str) -> DeploymentRead:
        transition(deployment, status, last_action=step)
        append_log(deployment, f"==> {step}: {' '.join(self._runner.step_command(step))}")
        return self._persist(session, deployment)

    def _fail_step(
        self,
        session: Session,
        deployment: DeploymentORM,
        step: str,
        *,
        result: StepResult | None = None,
        message: str | None = None,
    ) -> None:
        if result is not None and result.timed_out:
            last_action = f"{step}_timed_out"
            message = message or f"{step} timed out"
        else:
            last_action = f"{step}_failed"
            if message is None:
                message = f"{step} exited with code {result.returncode if result else None}"
        append_log(deployment, f"Error: {message}")
        transition(deployment, _FAILURE_STATUS[deployment.status], last_action=last_action)
        deployment.last_error = message
        self._persist(session, deployment)

    def _record_crash(self, session: Session, deployment: DeploymentORM, exc: Exception) -> None:
        append_log(deployment, f"Error: {exc}")
        deployment.last_error = str(exc)
        if deployment.status in _FAILURE_STATUS:
            step = deployment.last_action or "pipeline"
            transition(deployment, _FAILURE_STATUS[deployment.status], last_action=f"{step}_failed")
        self._persist(session, deployment)

    def _persist(self, session: Session, deployment: DeploymentORM) -> DeploymentRead:
        session.add(deployment)
        session.commit()
        session.refresh(deployment)
        snapshot = DeploymentRead.model_validate(deployment)
        if self._on_update is not None:
            try:
                self._on_update(snapshot)
            except Exception:
                logger.exception("Update callback failed for deployment_id=%s", deployment.id)
        return snapshot
