from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from datetime import timedelta
from functools import partial
import logging

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse
from sqlmodel import Session

from tfdash import db
from tfdash.api import deployments, templates
from tfdash.api.utils import register_exception_handlers
from tfdash.logging_config import configure_logging
from tfdash.services import jobs as jobs_service
from tfdash.services.orchestrator import DeploymentOrchestrator
from tfdash.settings import EngineSettings

configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = EngineSettings.from_env()
    db.init_db(db.engine)
    with Session(db.engine) as session:
        jobs_service.purge_finished_jobs(session, older_than=timedelta(hours=settings.job_retention_hours))
    executor = ThreadPoolExecutor(max_workers=settings.max_pipelines, thread_name_prefix="pipeline")
    app.state.orchestrator = DeploymentOrchestrator.from_settings(
        settings,
        session_factory=partial(Session, db.engine),
        executor=executor,
    )
    logger.info(
        "Engine ready workspace_root=%s max_pipelines=%s step_timeout_sec=%s",
        settings.workspace_root,
        settings.max_pipelines,
        settings.step_timeout_sec,
    )
    try:
        yield
    finally:
        # In-flight pipelines run to the end so no lease is left open.
        executor.shutdown(wait=True)


app = FastAPI(
    title="tfdash",
    description="Runs Terraform templates as tracked deployments",
    version="0.1.0",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/", include_in_schema=False)
def root() -> RedirectResponse:
    """Redirect root URL to Swagger UI docs."""
    return RedirectResponse(url="/docs")


app.include_router(templates.router)
app.include_router(deployments.router)

register_exception_handlers(app)

if __name__ == "__main__":
    uvicorn.run("tfdash.main:app", host="0.0.0.0", port=8001, log_level="info", reload=True)
