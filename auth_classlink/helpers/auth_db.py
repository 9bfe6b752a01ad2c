"""Shared SQLAlchemy base, engine and session factories for the plugin tables."""

import os
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

Base = declarative_base()

DEFAULT_DATABASE_URL = "sqlite:///auth_classlink.db"

_engine: Engine | None = None
_session_factory: sessionmaker | None = None


def get_database_url() -> str:
    return os.environ.get("CLASSLINK_DATABASE_URL", DEFAULT_DATABASE_URL)


def enable_sqlite_savepoints(engine: Engine) -> None:
    """Have SQLAlchemy emit BEGIN itself so SAVEPOINTs nest inside it.

    The pysqlite driver otherwise defers BEGIN until the first DML
    statement, which breaks ``Connection.begin_nested()``.
    """

    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")


def get_engine() -> Engine:
    """Return the process-wide engine, creating it on first use."""
    global _engine
    if _engine is None:
        url = get_database_url()
        _engine = create_engine(url)
        if url.startswith("sqlite"):
            enable_sqlite_savepoints(_engine)
    return _engine


def get_session_factory() -> sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(bind=get_engine(), expire_on_commit=False)
    return _session_factory


@contextmanager
def get_session() -> Iterator[Session]:
    """Yield a session that commits on success and rolls back on error."""
    session = get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
