from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


@dataclass(frozen=True)
class EngineSettings:
    workspace_root: Path = Path("./terraform-workspaces")
    terraform_bin: str = "terraform"
    step_timeout_sec: int | None = 1800
    max_pipelines: int = 4
    job_retention_hours: int = 168

    @classmethod
    def from_env(cls) -> "EngineSettings":
        timeout = _int_env("TFDASH_STEP_TIMEOUT_SEC", 1800)
        return cls(
            workspace_root=Path(os.getenv("TFDASH_WORKSPACE_ROOT", "./terraform-workspaces")),
            terraform_bin=os.getenv("TFDASH_TERRAFORM_BIN", "terraform"),
            # 0 disables the per-step deadline
            step_timeout_sec=timeout if timeout > 0 else None,
            max_pipelines=max(1, _int_env("TFDASH_MAX_PIPELINES", 4)),
            job_retention_hours=_int_env("TFDASH_JOB_RETENTION_HOURS", 168),
        )
