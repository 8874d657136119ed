import logging

from starlette.requests import Request
from starlette.responses import JSONResponse

from tfdash.services.errors import (
    DeploymentInProgressException,
    IntegrityException,
    InvalidTransitionException,
    NotFoundException,
    PreconditionException,
    TfdashException,
    WorkspaceException,
)
from tfdash.services.orchestrator import DeploymentOrchestrator

ERROR_STATUS = {
    IntegrityException: 409,
    InvalidTransitionException: 409,
    DeploymentInProgressException: 409,
    NotFoundException: 404,
    PreconditionException: 422,
    WorkspaceException: 500,
}

logger = logging.getLogger(__name__)


def _exception_handler(request: Request, exc: Exception):
    status = ERROR_STATUS.get(type(exc), 500)
    if status >= 500:
        logger.exception("Unhandled application error for path=%s: %s", request.url.path, exc)
    else:
        logger.warning("Request failed path=%s status=%s error=%s", request.url.path, status, exc)
    return JSONResponse({"detail": str(exc)}, status_code=status)


def register_exception_handlers(app):
    app.exception_handler(TfdashException)(_exception_handler)


def get_orchestrator(request: Request) -> DeploymentOrchestrator:
    return request.app.state.orchestrator
