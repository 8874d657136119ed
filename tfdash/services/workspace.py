from __future__ import annotations

import logging
from pathlib import Path
import shutil

from tfdash.models import DeploymentORM, TemplateORM
from tfdash.services.errors import WorkspaceException
from tfdash.services.naming import is_safe_path_segment
from tfdash.services.variables import render_tfvars, render_variable_declarations, resolve_bindings
from tfdash.settings import EngineSettings

logger = logging.getLogger(__name__)

MAIN_FILE = "main.tf"
VARIABLES_FILE = "variables.tf"
TFVARS_FILE = "terraform.tfvars"

# Written by the tool itself; removed after a successful destroy.
TOOL_ARTIFACTS = (
    ".terraform",
    ".terraform.lock.hcl",
    "tfplan",
    "terraform.tfstate",
    "terraform.tfstate.backup",
)


class WorkspaceMaterializer:
    """Renders a deployment's configuration into its own directory."""

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root).resolve()

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> "WorkspaceMaterializer":
        return cls(settings.workspace_root)

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, deployment_id: str) -> Path:
        if not is_safe_path_segment(deployment_id):
            raise WorkspaceException(f"Deployment id {deployment_id!r} is not a safe directory name")
        return self._root / deployment_id

    def render(self, deployment: DeploymentORM, template: TemplateORM) -> Path:
        """Write main.tf, variables.tf and terraform.tfvars; return the workspace path.

        Rendering the same inputs twice produces byte-identical files.
        """
        bindings = resolve_bindings(
            template.variable_schema_json,
            deployment.variables,
            environment=deployment.environment,
        )
        files = {
            MAIN_FILE: template.code if template.code.endswith("\n") else f"{template.code}\n",
            VARIABLES_FILE: render_variable_declarations(template.variable_schema_json, template.code),
            TFVARS_FILE: render_tfvars(bindings),
        }
        workspace = self.path_for(deployment.id)
        try:
            workspace.mkdir(parents=True, exist_ok=True)
            for name, content in files.items():
                (workspace / name).write_text(content, encoding="utf-8", newline="\n")
        except OSError as exc:
            raise WorkspaceException(f"Unable to write workspace {workspace}: {exc}") from exc
        logger.info("Rendered workspace %s with %s bound variables", workspace, len(bindings))
        return workspace


def cleanup_tool_artifacts(workspace: Path | str) -> list[str]:
    """Remove the tool's cache and state files; return what was removed.

    Every artifact is attempted. Failures are collected into one
    WorkspaceException raised at the end.
    """
    workspace = Path(workspace)
    removed: list[str] = []
    failures: list[str] = []
    for name in TOOL_ARTIFACTS:
        target = workspace / name
        try:
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            elif target.exists() or target.is_symlink():
                target.unlink()
            else:
                continue
        except OSError as exc:
            failures.append(f"{name}: {exc}")
            continue
        removed.append(name)
    if failures:
        raise WorkspaceException("Cleanup incomplete: " + "; ".join(failures))
    logger.debug("Removed tool artifacts from %s: %s", workspace, removed)
    return removed


def remove_workspace(workspace: Path | str) -> bool:
    workspace = Path(workspace)
    if not workspace.exists():
        return False
    try:
        shutil.rmtree(workspace)
    except OSError as exc:
        logger.warning("Unable to remove workspace %s: %s", workspace, exc)
        return False
    logger.info("Removed workspace %s", workspace)
    return True
