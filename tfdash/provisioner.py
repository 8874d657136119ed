from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Mapping, Sequence

from tfdash.proc import StreamRunner, automation_env, run_streaming
from tfdash.services.pipeline_constants import STEP_APPLY, STEP_DESTROY, STEP_INIT, STEP_PLAN
from tfdash.settings import EngineSettings

logger = logging.getLogger(__name__)

PLAN_FILE = "tfplan"
STEP_SHOW = "show"

_STEP_ARGS: dict[str, tuple[str, ...]] = {
    STEP_INIT: ("init", "-input=false", "-no-color"),
    STEP_PLAN: ("plan", "-input=false", "-no-color", f"-out={PLAN_FILE}"),
    STEP_APPLY: ("apply", "-input=false", "-no-color", "-auto-approve", PLAN_FILE),
    STEP_DESTROY: ("destroy", "-input=false", "-no-color", "-auto-approve"),
    STEP_SHOW: ("show", "-json", "-no-color"),
}


@dataclass(frozen=True)
class StepResult:
    step: str
    command: list[str]
    success: bool
    output: str
    returncode: int | None = None
    timed_out: bool = False


class TerraformRunner:
    """Runs one terraform subcommand per call inside a workspace directory."""

    def __init__(
        self,
        *,
        binary: str = "terraform",
        step_timeout: float | None = None,
        env: Mapping[str, str] | None = None,
        runner: StreamRunner | None = None,
    ) -> None:
        self._binary = binary
        self._step_timeout = step_timeout
        self._env = automation_env(env)
        self._runner = runner or run_streaming

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> "TerraformRunner":
        return cls(binary=settings.terraform_bin, step_timeout=settings.step_timeout_sec)

    def step_command(self, step: str) -> list[str]:
        if step not in _STEP_ARGS:
            raise ValueError(f"Unknown pipeline step '{step}'")
        return [self._binary, *_STEP_ARGS[step]]

    def run(self, workspace: Path | str, subcommand: str, args: Sequence[str] = ()) -> StepResult:
        command = [self._binary, subcommand, *args]
        return self._execute(workspace, subcommand, command)

    def run_step(self, workspace: Path | str, step: str) -> StepResult:
        return self._execute(workspace, step, self.step_command(step))

    def _execute(self, workspace: Path | str, step: str, command: list[str]) -> StepResult:
        logger.info("Running %s in %s", " ".join(command), workspace)
        result = self._runner(command, cwd=workspace, env=self._env, timeout=self._step_timeout)
        if result.success:
            logger.info("Step %s succeeded", step)
        else:
            logger.warning(
                "Step %s failed returncode=%s timed_out=%s", step, result.returncode, result.timed_out
            )
        return StepResult(
            step=step,
            command=command,
            success=result.success,
            output=result.output,
            returncode=result.returncode,
            timed_out=result.timed_out,
        )

    def init(self, workspace: Path | str) -> StepResult:
        return self.run_step(workspace, STEP_INIT)

    def plan(self, workspace: Path | str) -> StepResult:
        return self.run_step(workspace, STEP_PLAN)

    def apply(self, workspace: Path | str) -> StepResult:
        return self.run_step(workspace, STEP_APPLY)

    def destroy(self, workspace: Path | str) -> StepResult:
        return self.run_step(workspace, STEP_DESTROY)

    def show_state(self, workspace: Path | str) -> StepResult:
        return self.run_step(workspace, STEP_SHOW)
