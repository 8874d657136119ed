from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from pathlib import Path
import subprocess
import threading
from typing import Callable, IO, Mapping

logger = logging.getLogger(__name__)

# Seconds a terminated process gets to exit before it is killed.
KILL_GRACE_SEC = 10.0


@dataclass(frozen=True)
class CommandResult:
    command: list[str]
    returncode: int | None
    output: str
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out


StreamRunner = Callable[..., CommandResult]


def _drain(stream: IO[str], chunks: list[str]) -> None:
    try:
        for line in iter(stream.readline, ""):
            chunks.append(line)
    finally:
        stream.close()


def _stop(process: subprocess.Popen[str]) -> int:
    process.terminate()
    try:
        return process.wait(timeout=KILL_GRACE_SEC)
    except subprocess.TimeoutExpired:
        logger.warning("Process pid=%s ignored SIGTERM; killing", process.pid)
        process.kill()
        return process.wait()


def run_streaming(
    command: list[str],
    *,
    cwd: Path | str,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
) -> CommandResult:
    """Run one process and capture stdout and stderr as a single ordered buffer.

    Never raises for process-level failures: a binary that cannot be started
    or a missing working directory comes back as a failed result whose output
    carries the reason.
    """
    try:
        process = subprocess.Popen(
            command,
            cwd=str(cwd),
            env=dict(env) if env is not None else None,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
        )
    except OSError as exc:
        logger.warning("Unable to start %s in %s: %s", command[0], cwd, exc)
        return CommandResult(command=command, returncode=None, output=f"Unable to start {command[0]}: {exc}\n")

    chunks: list[str] = []
    reader = threading.Thread(target=_drain, args=(process.stdout, chunks), daemon=True)
    reader.start()

    timed_out = False
    try:
        returncode = process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        logger.warning("Command %r exceeded %ss; terminating pid=%s", " ".join(command), timeout, process.pid)
        returncode = _stop(process)

    # Grandchildren may still hold the pipe open after a forced stop.
    reader.join(timeout=KILL_GRACE_SEC if timed_out else None)
    output = "".join(chunks)
    if timed_out:
        output += f"Timed out after {timeout}s; process terminated\n"
    logger.debug("Command %r finished returncode=%s timed_out=%s", " ".join(command), returncode, timed_out)
    return CommandResult(command=command, returncode=returncode, output=output, timed_out=timed_out)


def automation_env(extra: Mapping[str, str] | None = None) -> dict[str, str]:
    env = dict(os.environ)
    env["TF_IN_AUTOMATION"] = "1"
    env["TF_INPUT"] = "0"
    if extra:
        env.update(extra)
    return env
