from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
import logging
import os
import sys
from typing import Iterator

LOG_LEVEL_ENV = "TFDASH_LOG_LEVEL"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(deployment)s | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

_ANSI_RESET = "\x1b[0m"
_ANSI_BY_LEVELNO = {
    logging.DEBUG: "\x1b[36m",
    logging.INFO: "\x1b[32m",
    logging.WARNING: "\x1b[33m",
    logging.ERROR: "\x1b[31m",
    logging.CRITICAL: "\x1b[1;31m",
}

_deployment_var: ContextVar[str | None] = ContextVar("tfdash_deployment", default=None)


@contextmanager
def deployment_context(deployment_id: str) -> Iterator[None]:
    """Tag every log record emitted in this context with the deployment id."""
    token = _deployment_var.set(deployment_id)
    try:
        yield
    finally:
        _deployment_var.reset(token)


class _DeploymentFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "deployment", None) is None:
            record.deployment = _deployment_var.get() or "-"
        return True


class _EngineFormatter(logging.Formatter):
    def __init__(self, *, colorize: bool) -> None:
        super().__init__(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)
        self._colorize = colorize

    def format(self, record: logging.LogRecord) -> str:
        ansi = _ANSI_BY_LEVELNO.get(record.levelno) if self._colorize else None
        if ansi is None:
            return super().format(record)
        plain = record.levelname
        record.levelname = f"{ansi}{plain}{_ANSI_RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = plain


def _wants_color() -> bool:
    return not os.getenv("NO_COLOR") and sys.stderr.isatty()


def _level_from(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    name = (level or os.getenv(LOG_LEVEL_ENV) or "INFO").upper()
    value = logging.getLevelName(name)
    return value if isinstance(value, int) else logging.INFO


def configure_logging(*, level: str | int | None = None, force: bool = False) -> None:
    """Install the engine's stderr handler on the root logger.

    Calling it again only adjusts levels unless ``force`` is set, so the CLI
    and the API can both call it at import time.
    """
    resolved = _level_from(level)
    root = logging.getLogger()
    root.setLevel(resolved)

    if root.handlers and not force:
        for existing in root.handlers:
            existing.setLevel(resolved)
            if not any(isinstance(f, _DeploymentFilter) for f in existing.filters):
                existing.addFilter(_DeploymentFilter())
        return

    stream = logging.StreamHandler()
    stream.setLevel(resolved)
    stream.addFilter(_DeploymentFilter())
    stream.setFormatter(_EngineFormatter(colorize=_wants_color()))
    root.handlers.clear()
    root.addHandler(stream)
