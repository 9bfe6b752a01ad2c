"""Shared fixtures: in-memory SQLite store and identity token factory."""

from contextlib import contextmanager

import jwt
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from auth_classlink.helpers.auth_db import Base, enable_sqlite_savepoints
from auth_classlink.helpers import config_store, token_store, user_store  # noqa: F401

_SIGNING_KEY = "test-signing-key-that-is-long-enough-for-hs256"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    enable_sqlite_savepoints(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def scoped_session(session_factory):
    """Context-managed session factory shaped like ``auth_db.get_session``."""

    @contextmanager
    def _scope():
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return _scope


@pytest.fixture
def make_id_token():
    def _make(**claims):
        return jwt.encode(claims, _SIGNING_KEY, algorithm="HS256")

    return _make


@pytest.fixture
def bearer_response(make_id_token):
    """Build a token endpoint response carrying an id token with ``claims``."""

    def _make(token_type="Bearer", **claims):
        return {
            "token_type": token_type,
            "access_token": "access-123",
            "refresh_token": "refresh-123",
            "expires_in": 3600,
            "scope": "openid profile",
            "id_token": make_id_token(**claims),
        }

    return _make
