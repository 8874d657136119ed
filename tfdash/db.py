from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Iterator, Generator

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine


def _database_url() -> str:
    return os.getenv("DATABASE_URL", "sqlite:///./tfdash.db")


def make_engine(url: str) -> Engine:
    is_sqlite = url.startswith("sqlite")
    connect_args = {"check_same_thread": False} if is_sqlite else {}
    # An in-memory database only exists on a single connection.
    in_memory = is_sqlite and (url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url)
    kwargs = {"poolclass": StaticPool} if in_memory else {}
    created = create_engine(url, echo=False, connect_args=connect_args, **kwargs)
    if is_sqlite:
        event.listen(created, "connect", _enable_sqlite_foreign_keys)
    return created


def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


DATABASE_URL = _database_url()
engine = make_engine(DATABASE_URL)


def init_db(engine) -> None:
    # Ensure models are imported before creating tables.
    import tfdash.models  # noqa: F401

    SQLModel.metadata.create_all(engine)


def get_session() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


@contextmanager
def session_scope() -> Iterator[Session]:
    with Session(engine) as session:
        yield session
