from __future__ import annotations

from functools import partial
import importlib
from pathlib import Path
import stat
import sys

import pytest
from sqlalchemy import create_engine, StaticPool
from sqlmodel import Session
from starlette.testclient import TestClient
from typer.testing import CliRunner

from runner_utils import FakeRunner
from tfdash import db
from tfdash.api.utils import get_orchestrator
from tfdash.db import get_session, init_db, make_engine
from tfdash.main import app
from tfdash.services.orchestrator import DeploymentOrchestrator, ForegroundExecutor
from tfdash.services.workspace import WorkspaceMaterializer

FAKE_TERRAFORM = """#!{python}
import json
import os
import sys

command = sys.argv[1]
if command == "show":
    print(json.dumps({{"format_version": "1.0", "values": {{"root_module": {{}}}}}}))
    sys.exit(0)
print("fake terraform " + " ".join(sys.argv[1:]))
print("warning on stderr", file=sys.stderr)
if os.environ.get("FAKE_TF_FAIL") == command:
    print("Error: simulated " + command + " failure", file=sys.stderr)
    sys.exit(1)
"""


@pytest.fixture
def db_session():
    engine = create_engine(
        "sqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    init_db(engine)
    with Session(engine) as session:
        yield session


@pytest.fixture
def engine(tmp_path):
    # Pipelines open their own sessions, so they need a database that
    # outlives any single connection.
    file_engine = make_engine(f"sqlite:///{tmp_path / 'tfdash-test.db'}")
    init_db(file_engine)
    yield file_engine
    file_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return partial(Session, engine)


@pytest.fixture
def workspace_root(tmp_path) -> Path:
    return tmp_path / "workspaces"


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def updates() -> list:
    return []


@pytest.fixture
def orchestrator(session_factory, workspace_root, fake_runner, updates) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(
        session_factory=session_factory,
        materializer=WorkspaceMaterializer(workspace_root),
        runner=fake_runner,
        executor=ForegroundExecutor(),
        on_update=updates.append,
        worker_id="test-worker",
    )


@pytest.fixture
def fake_terraform(tmp_path) -> Path:
    script = tmp_path / "bin" / "terraform"
    script.parent.mkdir()
    script.write_text(FAKE_TERRAFORM.format(python=sys.executable))
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


@pytest.fixture()
def cli_runner(tmp_path, monkeypatch, fake_terraform):
    project_root = Path(__file__).resolve().parents[1]
    sys.path.append(str(project_root))
    # Use a temporary file-based SQLite DB for isolation
    db_path = tmp_path / "test_cli.db"
    if db_path.exists():
        db_path.unlink()
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("TFDASH_WORKSPACE_ROOT", str(tmp_path / "cli-workspaces"))
    monkeypatch.setenv("TFDASH_TERRAFORM_BIN", str(fake_terraform))
    monkeypatch.setenv("TFDASH_STEP_TIMEOUT_SEC", "60")
    monkeypatch.delenv("FAKE_TF_FAIL", raising=False)

    import tfdash.db as cli_db

    importlib.reload(cli_db)
    init_db(cli_db.engine)

    import tfdash.cli as cli

    importlib.reload(cli)

    yield CliRunner(), cli.app

    cli_db.engine.dispose()


@pytest.fixture
def client(engine, orchestrator, workspace_root, monkeypatch):
    monkeypatch.setattr(db, "engine", engine)
    monkeypatch.setenv("TFDASH_WORKSPACE_ROOT", str(workspace_root))

    def override_get_db():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_get_db
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
