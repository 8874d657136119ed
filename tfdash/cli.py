from __future__ import annotations

from datetime import timedelta
import json
import logging
from pathlib import Path

import typer
import yaml
from fastapi.encoders import jsonable_encoder

from tfdash.db import session_scope
from tfdash.logging_config import configure_logging
from tfdash.models import DeploymentCreate, PipelineJobRead, TemplateCreate, VariableSpec
from tfdash.services import (
    deployments as deployment_service,
    jobs as jobs_service,
    templates as template_service,
)
from tfdash.services.errors import TfdashException
from tfdash.services.orchestrator import DeploymentOrchestrator, ForegroundExecutor
from tfdash.services.pipeline_constants import DEPLOYMENT_STATUS_DESTROY_FAILED, DEPLOYMENT_STATUS_FAILED
from tfdash.settings import EngineSettings

configure_logging()
logger = logging.getLogger(__name__)
app = typer.Typer(help="tfdash CLI", pretty_exceptions_show_locals=False)


def _parse_json_input(
    *,
    json_text: str | None,
    json_file: Path | None,
    json_option_name: str,
    file_option_name: str,
    expected_type: type = dict,
):
    if json_text is not None and json_file is not None:
        raise ValueError(f"Provide only one of {json_option_name} or {file_option_name}")

    kind = "object" if expected_type is dict else "array"
    if json_text is not None:
        try:
            parsed = json.loads(json_text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid JSON for {json_option_name}: {exc.msg}") from exc
        if not isinstance(parsed, expected_type):
            raise ValueError(f"{json_option_name} must decode to a JSON {kind}")
        return parsed

    if json_file is not None:
        try:
            content = json_file.read_text()
        except OSError as exc:
            raise ValueError(f"Unable to read {file_option_name}: {exc}") from exc
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid JSON in {file_option_name}: {exc.msg}") from exc
        if not isinstance(parsed, expected_type):
            raise ValueError(f"{file_option_name} must contain a JSON {kind}")
        return parsed

    return None


def _exit_for_domain_error(exc: TfdashException) -> None:
    logger.warning("CLI command failed with domain error: %s", exc)
    typer.echo(f"Error: {exc}", err=True)
    raise typer.Exit(code=1)


def _exit_for_input_error(exc: ValueError) -> None:
    logger.warning("Invalid CLI input: %s", exc)
    typer.echo(f"Error: {exc}", err=True)
    raise typer.Exit(code=1)


def _echo_yaml_entity(entity: object) -> None:
    encoded = jsonable_encoder(entity)
    typer.echo(yaml.safe_dump(encoded, sort_keys=False), nl=False)


def _orchestrator() -> DeploymentOrchestrator:
    return DeploymentOrchestrator.from_settings(
        EngineSettings.from_env(),
        session_factory=session_scope,
        executor=ForegroundExecutor(),
    )


def _finish_pipeline(deployment_id: str, pipeline: str) -> None:
    """Print the deployment after a foreground pipeline; exit 1 if it failed."""
    with session_scope() as session:
        deployment = deployment_service.get_deployment(session, deployment_id=deployment_id)
    if deployment.status in (DEPLOYMENT_STATUS_FAILED, DEPLOYMENT_STATUS_DESTROY_FAILED):
        _echo_yaml_entity(deployment)
        typer.echo(
            f"Error: {pipeline} failed for deployment {deployment_id}: {deployment.last_error}",
            err=True,
        )
        raise typer.Exit(code=1)
    _echo_yaml_entity(deployment)


@app.command("create-template")
def create_template(
    template_id: str,
    *,
    name: str = typer.Option(..., "--name", help="Display name of the template."),
    code_file: Path = typer.Option(..., "--code-file", help="Path to the Terraform (HCL) body."),
    description: str | None = typer.Option(None, "--description"),
    variables_json: str | None = typer.Option(
        None,
        "--variables-json",
        help="JSON array of variable declarations, e.g. '[{\"name\":\"region\",\"required\":true}]'.",
    ),
    variables_file: Path | None = typer.Option(
        None,
        "--variables-file",
        help="Path to a JSON file containing the variable declarations array.",
    ),
) -> None:
    try:
        specs = _parse_json_input(
            json_text=variables_json,
            json_file=variables_file,
            json_option_name="--variables-json",
            file_option_name="--variables-file",
            expected_type=list,
        )
        try:
            code = code_file.read_text()
        except OSError as exc:
            raise ValueError(f"Unable to read --code-file: {exc}") from exc
    except ValueError as e:
        _exit_for_input_error(e)

    with session_scope() as session:
        try:
            template = template_service.create_template(
                session,
                TemplateCreate(
                    id=template_id,
                    name=name,
                    description=description,
                    code=code,
                    variable_schema=[VariableSpec.model_validate(spec) for spec in specs or []],
                ),
            )
        except TfdashException as e:
            _exit_for_domain_error(e)
        _echo_yaml_entity(template)


@app.command("list-templates")
def list_templates() -> None:
    with session_scope() as session:
        _echo_yaml_entity(template_service.list_templates(session))


@app.command("get-template")
def get_template(template_id: str) -> None:
    with session_scope() as session:
        try:
            template = template_service.get_template(session, template_id=template_id)
        except TfdashException as e:
            _exit_for_domain_error(e)
        _echo_yaml_entity(template)


@app.command("delete-template")
def delete_template(template_id: str) -> None:
    with session_scope() as session:
        try:
            template = template_service.delete_template(session, template_id=template_id)
        except TfdashException as e:
            _exit_for_domain_error(e)
        _echo_yaml_entity(template)


@app.command("create-deployment")
def create_deployment(
    name: str,
    *,
    template_id: str = typer.Option(..., "--template-id"),
    environment: str = typer.Option("dev", "--environment"),
    variables_json: str | None = typer.Option(
        None,
        "--variables-json",
        help="JSON object string of variable values, e.g. '{\"region\":\"eu-west-1\"}'.",
    ),
    variables_file: Path | None = typer.Option(
        None,
        "--variables-file",
        help="Path to a JSON file containing a JSON object of variable values.",
    ),
    provision: bool = typer.Option(False, "--provision", help="Run the provision pipeline right away."),
) -> None:
    try:
        variables = _parse_json_input(
            json_text=variables_json,
            json_file=variables_file,
            json_option_name="--variables-json",
            file_option_name="--variables-file",
        )
    except ValueError as e:
        _exit_for_input_error(e)

    payload = DeploymentCreate(
        name=name,
        template_id=template_id,
        environment=environment,
        variables=variables or {},
    )
    if provision:
        try:
            deployment = _orchestrator().submit_deployment(payload)
        except TfdashException as e:
            _exit_for_domain_error(e)
        _finish_pipeline(deployment.id, "provision")
        return

    with session_scope() as session:
        try:
            deployment = deployment_service.create_deployment(session, payload=payload)
        except TfdashException as e:
            _exit_for_domain_error(e)
        _echo_yaml_entity(deployment)


@app.command("list-deployments")
def list_deployments(
    status: str | None = typer.Option(None, "--status"),
    environment: str | None = typer.Option(None, "--environment"),
    limit: int | None = typer.Option(None, "--limit", min=1),
) -> None:
    with session_scope() as session:
        _echo_yaml_entity(
            deployment_service.list_deployments(session, status=status, environment=environment, limit=limit)
        )


@app.command("recent-deployments")
def recent_deployments(limit: int = typer.Option(10, "--limit", min=1)) -> None:
    with session_scope() as session:
        _echo_yaml_entity(deployment_service.recent_deployments(session, limit=limit))


@app.command("deployment-stats")
def deployment_stats() -> None:
    with session_scope() as session:
        _echo_yaml_entity(deployment_service.deployment_stats(session))


@app.command("get-deployment")
def get_deployment(deployment_id: str) -> None:
    with session_scope() as session:
        try:
            deployment = deployment_service.get_deployment(session, deployment_id=deployment_id)
        except TfdashException as e:
            _exit_for_domain_error(e)
        _echo_yaml_entity(deployment)


@app.command("get-deployment-by-name")
def get_deployment_by_name(name: str) -> None:
    with session_scope() as session:
        try:
            deployment = deployment_service.get_deployment_by_name(session, name=name)
        except TfdashException as e:
            _exit_for_domain_error(e)
        _echo_yaml_entity(deployment)


@app.command("show-log")
def show_log(deployment_id: str) -> None:
    with session_scope() as session:
        try:
            log = deployment_service.get_log(session, deployment_id=deployment_id)
        except TfdashException as e:
            _exit_for_domain_error(e)
        typer.echo(log, nl=False)


@app.command("show-outputs")
def show_outputs(deployment_id: str) -> None:
    with session_scope() as session:
        try:
            outputs = deployment_service.get_outputs(session, deployment_id=deployment_id)
        except TfdashException as e:
            _exit_for_domain_error(e)
        _echo_yaml_entity(outputs)


@app.command("provision")
def provision(deployment_id: str) -> None:
    try:
        _orchestrator().launch_provision(deployment_id)
    except TfdashException as e:
        _exit_for_domain_error(e)
    _finish_pipeline(deployment_id, "provision")


@app.command("destroy")
def destroy(deployment_id: str) -> None:
    try:
        _orchestrator().launch_destroy(deployment_id)
    except TfdashException as e:
        _exit_for_domain_error(e)
    _finish_pipeline(deployment_id, "destroy")


@app.command("delete-deployment")
def delete_deployment(deployment_id: str) -> None:
    with session_scope() as session:
        try:
            deployment = deployment_service.delete_deployment(session, deployment_id=deployment_id)
        except TfdashException as e:
            _exit_for_domain_error(e)
        _echo_yaml_entity(deployment)


@app.command("purge-failed")
def purge_failed(
    older_than_days: int = typer.Option(7, "--older-than-days", min=0),
) -> None:
    """Delete failed deployments not touched for the given number of days."""
    with session_scope() as session:
        purged = deployment_service.purge_failed_deployments(session, older_than=timedelta(days=older_than_days))
    _echo_yaml_entity({"purged": purged, "older_than_days": older_than_days})


@app.command("list-jobs")
def list_jobs(
    status: str | None = typer.Option(None, "--status"),
    deployment_id: str | None = typer.Option(None, "--deployment-id"),
    limit: int = typer.Option(100, "--limit"),
) -> None:
    with session_scope() as session:
        jobs = jobs_service.list_jobs(session, status=status, deployment_id=deployment_id, limit=limit)
        _echo_yaml_entity([PipelineJobRead.model_validate(job) for job in jobs])


@app.command("purge-jobs")
def purge_jobs(
    older_than_hours: int | None = typer.Option(
        None, "--older-than-hours", help="Defaults to TFDASH_JOB_RETENTION_HOURS."
    ),
) -> None:
    hours = older_than_hours if older_than_hours is not None else EngineSettings.from_env().job_retention_hours
    with session_scope() as session:
        purged = jobs_service.purge_finished_jobs(session, older_than=timedelta(hours=hours))
    _echo_yaml_entity({"purged": purged, "older_than_hours": hours})


@app.command("release-job")
def release_job(
    job_id: int,
    reason: str = typer.Option("released manually", "--reason"),
) -> None:
    with session_scope() as session:
        try:
            job = jobs_service.release_job(session, job_id=job_id, reason=reason)
        except TfdashException as e:
            _exit_for_domain_error(e)
        _echo_yaml_entity(PipelineJobRead.model_validate(job))


if __name__ == "__main__":
    app()
