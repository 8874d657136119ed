from __future__ import annotations

import itertools
import shutil
from pathlib import Path

import pytest

from tfdash.models import DeploymentCreate, TemplateCreate, VariableSpec
from tfdash.services import deployments as deployment_service, jobs as jobs_service, templates as template_service
from tfdash.services import orchestrator as orchestrator_module
from tfdash.services.errors import (
    DeploymentInProgressException,
    InvalidTransitionException,
    PreconditionException,
    WorkspaceException,
)
from tfdash.services.orchestrator import DeploymentOrchestrator, ForegroundExecutor
from tfdash.services.workspace import WorkspaceMaterializer

TEMPLATE_CODE = (
    'resource "aws_instance" "this" {\n'
    "  instance_type = var.instance_type\n"
    "  tags = { Name = var.name }\n"
    "}\n"
)


@pytest.fixture(autouse=True)
def template(session_factory):
    with session_factory() as session:
        return template_service.create_template(
            session,
            TemplateCreate(
                id="ec2-instance",
                name="EC2 instance",
                code=TEMPLATE_CODE,
                variable_schema=[
                    VariableSpec(name="name", required=True),
                    VariableSpec(name="instance_type", default="t3.micro", allowed_values=["t3.micro", "t3.small"]),
                ],
            ),
        )


def _payload(**overrides) -> DeploymentCreate:
    fields = dict(
        name="demo",
        template_id="ec2-instance",
        variables={"name": "demo", "instance_type": "t3.micro"},
    )
    fields.update(overrides)
    return DeploymentCreate(**fields)


def _reload(session_factory, deployment_id: str):
    with session_factory() as session:
        return deployment_service.get_deployment(session, deployment_id=deployment_id)


def _jobs(session_factory, deployment_id: str):
    with session_factory() as session:
        return jobs_service.list_jobs(session, deployment_id=deployment_id)


def _collapse(values):
    return [key for key, _ in itertools.groupby(values)]


def _provisioned(orchestrator, session_factory):
    created = orchestrator.submit_deployment(_payload())
    deployment = _reload(session_factory, created.id)
    assert deployment.status == "success"
    return deployment


def test_provision_reaches_success(orchestrator, session_factory, fake_runner, updates, workspace_root) -> None:
    returned = orchestrator.submit_deployment(_payload())

    assert returned.status == "running"
    assert returned.last_action == "init"
    assert returned.log == "==> init: terraform init -no-color\n"

    deployment = _reload(session_factory, returned.id)
    assert deployment.status == "success"
    assert deployment.last_action == "completed"
    assert deployment.last_error is None
    assert deployment.workspace_path == str(workspace_root.resolve() / deployment.id)
    assert (Path(deployment.workspace_path) / "main.tf").read_text() == TEMPLATE_CODE
    assert deployment.state_snapshot == fake_runner.show_output
    assert fake_runner.steps == ["init", "plan", "apply", "show"]

    headers = [line for line in deployment.log.splitlines() if line.startswith("==> ")]
    assert [h.split(":")[0] for h in headers] == ["==> init", "==> plan", "==> apply"]
    assert deployment.log.index("init ok") < deployment.log.index("plan ok") < deployment.log.index("apply ok")

    assert _collapse(u.status for u in updates) == ["running", "success"]
    assert [job.status for job in _jobs(session_factory, deployment.id)] == ["done"]


def test_unknown_template_is_rejected_before_any_work(
    orchestrator, session_factory, fake_runner, workspace_root
) -> None:
    with pytest.raises(PreconditionException, match="does-not-exist"):
        orchestrator.submit_deployment(_payload(template_id="does-not-exist"))

    with session_factory() as session:
        [deployment] = deployment_service.list_deployments(session)
    assert deployment.status == "pending"
    assert deployment.workspace_path is None
    assert not workspace_root.exists()
    assert fake_runner.calls == []
    assert _jobs(session_factory, deployment.id) == []


def test_missing_required_variable_is_rejected_before_any_work(orchestrator, session_factory, fake_runner) -> None:
    with pytest.raises(PreconditionException, match="name"):
        orchestrator.submit_deployment(_payload(variables={}))
    assert fake_runner.calls == []


def test_apply_failure_stops_in_failed(orchestrator, session_factory, fake_runner) -> None:
    fake_runner.fail_on = "apply"

    created = orchestrator.submit_deployment(_payload())
    deployment = _reload(session_factory, created.id)

    assert deployment.status == "failed"
    assert deployment.last_action == "apply_failed"
    assert deployment.last_error == "apply exited with code 1"
    assert deployment.state_snapshot is None
    assert fake_runner.steps == ["init", "plan", "apply"]
    log = deployment.log
    assert log.index("init ok") < log.index("plan ok") < log.index("Error: apply blew up")
    assert [job.status for job in _jobs(session_factory, deployment.id)] == ["done"]


def test_init_failure_short_circuits(orchestrator, session_factory, fake_runner) -> None:
    fake_runner.fail_on = "init"

    created = orchestrator.submit_deployment(_payload())
    deployment = _reload(session_factory, created.id)

    assert fake_runner.steps == ["init"]
    assert deployment.status == "failed"
    assert deployment.last_action == "init_failed"
    assert deployment.log.count("==> ") == 1


def test_step_timeout_is_recorded(orchestrator, session_factory, fake_runner) -> None:
    fake_runner.timeout_on = "plan"

    created = orchestrator.submit_deployment(_payload())
    deployment = _reload(session_factory, created.id)

    assert deployment.status == "failed"
    assert deployment.last_action == "plan_timed_out"
    assert deployment.last_error == "plan timed out"
    assert "Timed out after" in deployment.log
    assert fake_runner.steps == ["init", "plan"]


def test_unreadable_state_snapshot_keeps_success(orchestrator, session_factory, fake_runner) -> None:
    fake_runner.show_success = False

    deployment = _provisioned(orchestrator, session_factory)

    assert deployment.state_snapshot is None
    assert "Warning: unable to read state snapshot" in deployment.log


def test_non_json_state_snapshot_is_not_stored(orchestrator, session_factory, fake_runner) -> None:
    fake_runner.show_output = "No state."

    deployment = _provisioned(orchestrator, session_factory)

    assert deployment.state_snapshot is None


def test_render_failure_is_attributed_to_init(session_factory, fake_runner, tmp_path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    orchestrator = DeploymentOrchestrator(
        session_factory=session_factory,
        materializer=WorkspaceMaterializer(blocker),
        runner=fake_runner,
        executor=ForegroundExecutor(),
    )

    created = orchestrator.submit_deployment(_payload())
    deployment = _reload(session_factory, created.id)

    assert deployment.status == "failed"
    assert deployment.last_action == "init_failed"
    assert "Unable to write workspace" in deployment.last_error
    assert deployment.workspace_path is None
    assert fake_runner.calls == []


def test_unexpected_error_becomes_failed_state_and_releases_lease(
    orchestrator, session_factory, fake_runner
) -> None:
    def explode(step: str) -> None:
        if step == "plan":
            raise RuntimeError("disk on fire")

    fake_runner.before_step = explode

    created = orchestrator.submit_deployment(_payload())
    deployment = _reload(session_factory, created.id)

    assert deployment.status == "failed"
    assert deployment.last_action == "plan_failed"
    assert deployment.last_error == "disk on fire"
    [job] = _jobs(session_factory, deployment.id)
    assert job.status == "failed"
    assert job.last_error == "disk on fire"

    fake_runner.before_step = None
    orchestrator.launch_provision(deployment.id)
    assert _reload(session_factory, deployment.id).status == "success"


def test_log_only_grows(orchestrator, session_factory, fake_runner, updates) -> None:
    fake_runner.fail_on = "apply"
    created = orchestrator.submit_deployment(_payload())
    fake_runner.fail_on = None
    orchestrator.launch_provision(created.id)
    orchestrator.launch_destroy(created.id)

    logs = [u.log for u in updates]
    assert len(logs) > 5
    for earlier, later in zip(logs, logs[1:]):
        assert later.startswith(earlier)
    assert _reload(session_factory, created.id).status == "destroyed"


def test_reprovision_from_failed_keeps_workspace_path(orchestrator, session_factory, fake_runner) -> None:
    fake_runner.fail_on = "plan"
    created = orchestrator.submit_deployment(_payload())
    failed = _reload(session_factory, created.id)

    fake_runner.fail_on = None
    orchestrator.launch_provision(created.id)
    succeeded = _reload(session_factory, created.id)

    assert succeeded.status == "success"
    assert succeeded.workspace_path == failed.workspace_path
    assert succeeded.log.startswith(failed.log)
    assert succeeded.last_error is None


def test_provision_from_success_is_an_invalid_transition(orchestrator, session_factory) -> None:
    deployment = _provisioned(orchestrator, session_factory)

    with pytest.raises(InvalidTransitionException):
        orchestrator.launch_provision(deployment.id)

    assert [job.status for job in _jobs(session_factory, deployment.id)] == ["done"]


def test_second_launch_while_running_is_rejected(orchestrator, session_factory, fake_runner) -> None:
    with session_factory() as session:
        created = deployment_service.create_deployment(session, payload=_payload())
    rejected: list[Exception] = []

    def compete(step: str) -> None:
        if step != "plan":
            return
        for launch in (orchestrator.launch_provision, orchestrator.launch_destroy):
            try:
                launch(created.id)
            except DeploymentInProgressException as exc:
                rejected.append(exc)

    fake_runner.before_step = compete
    orchestrator.launch_provision(created.id)

    assert len(rejected) == 2
    assert _reload(session_factory, created.id).status == "success"
    assert fake_runner.steps == ["init", "plan", "apply", "show"]


def test_destroy_reaches_destroyed(orchestrator, session_factory, fake_runner, updates) -> None:
    deployment = _provisioned(orchestrator, session_factory)
    workspace = Path(deployment.workspace_path)
    (workspace / ".terraform").mkdir()
    (workspace / "terraform.tfstate").write_text("{}")
    updates.clear()
    fake_runner.calls.clear()

    returned = orchestrator.launch_destroy(deployment.id)

    assert returned.status == "destroying"
    destroyed = _reload(session_factory, deployment.id)
    assert destroyed.status == "destroyed"
    assert destroyed.last_action == "destroyed"
    assert destroyed.state_snapshot is None
    assert fake_runner.steps == ["init", "destroy"]
    assert _collapse(u.status for u in updates) == ["destroying", "destroyed"]
    assert not (workspace / ".terraform").exists()
    assert not (workspace / "terraform.tfstate").exists()
    assert (workspace / "main.tf").exists()


def test_destroy_failure_keeps_snapshot(orchestrator, session_factory, fake_runner) -> None:
    deployment = _provisioned(orchestrator, session_factory)
    fake_runner.fail_on = "destroy"

    orchestrator.launch_destroy(deployment.id)
    after = _reload(session_factory, deployment.id)

    assert after.status == "destroy_failed"
    assert after.last_action == "destroy_failed"
    assert after.state_snapshot == deployment.state_snapshot
    with pytest.raises(InvalidTransitionException):
        orchestrator.launch_destroy(deployment.id)


def test_destroy_without_workspace_is_rejected(orchestrator, session_factory, fake_runner) -> None:
    deployment = _provisioned(orchestrator, session_factory)
    shutil.rmtree(deployment.workspace_path)
    fake_runner.calls.clear()

    with pytest.raises(PreconditionException):
        orchestrator.launch_destroy(deployment.id)

    assert fake_runner.calls == []
    assert _reload(session_factory, deployment.id).status == "success"


def test_destroy_of_pending_deployment_is_an_invalid_transition(orchestrator, session_factory) -> None:
    with session_factory() as session:
        created = deployment_service.create_deployment(session, payload=_payload())

    with pytest.raises(InvalidTransitionException):
        orchestrator.launch_destroy(created.id)

    assert _reload(session_factory, created.id).status == "pending"
    assert _jobs(session_factory, created.id) == []


def test_cleanup_failure_keeps_destroyed(orchestrator, session_factory, monkeypatch) -> None:
    deployment = _provisioned(orchestrator, session_factory)

    def broken_cleanup(workspace):
        raise WorkspaceException("Cleanup incomplete: .terraform: permission denied")

    monkeypatch.setattr(orchestrator_module, "cleanup_tool_artifacts", broken_cleanup)
    orchestrator.launch_destroy(deployment.id)
    after = _reload(session_factory, deployment.id)

    assert after.status == "destroyed"
    assert "Warning: Cleanup incomplete" in after.log


def test_update_callback_errors_do_not_break_the_pipeline(session_factory, fake_runner, workspace_root) -> None:
    def broken_callback(snapshot) -> None:
        raise ValueError("listener went away")

    orchestrator = DeploymentOrchestrator(
        session_factory=session_factory,
        materializer=WorkspaceMaterializer(workspace_root),
        runner=fake_runner,
        executor=ForegroundExecutor(),
        on_update=broken_callback,
    )
    created = orchestrator.submit_deployment(_payload())
    assert _reload(session_factory, created.id).status == "success"
