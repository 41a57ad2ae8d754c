from __future__ import annotations

from typing import Callable

from sqlmodel import Session, SQLModel, create_engine
from sqlalchemy.engine import Engine

from callinsights.config import Settings


def build_engine(settings: Settings) -> Engine:
    url = settings.database_url
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


def init_db(engine: Engine) -> None:
    # Make sure table models are registered on the metadata
    from callinsights.models import insight, recording  # noqa: F401

    if engine.url.get_backend_name() == "sqlite" and engine.url.database not in (None, "", ":memory:"):
        # SQLite with WAL enabled
        with engine.begin() as conn:
            conn.exec_driver_sql("PRAGMA journal_mode=WAL;")
            conn.exec_driver_sql("PRAGMA synchronous=NORMAL;")
    SQLModel.metadata.create_all(engine)


def session_factory(engine: Engine) -> Callable[[], Session]:
    def _make() -> Session:
        return Session(engine)

    return _make
