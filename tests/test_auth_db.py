"""Tests for the shared engine and session scope."""

import pytest

from auth_classlink.helpers import auth_db
from auth_classlink.helpers.config_store import get_config, set_config


@pytest.fixture
def file_engine(tmp_path, monkeypatch):
    monkeypatch.setenv("CLASSLINK_DATABASE_URL", f"sqlite:///{tmp_path / 'plugin.db'}")
    monkeypatch.setattr(auth_db, "_engine", None)
    monkeypatch.setattr(auth_db, "_session_factory", None)
    engine = auth_db.get_engine()
    auth_db.Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


def test_engine_and_factory_are_cached(file_engine):
    assert auth_db.get_engine() is file_engine
    assert auth_db.get_session_factory() is auth_db.get_session_factory()


def test_session_commits_on_success(file_engine):
    with auth_db.get_session() as db:
        set_config(db, "clientid", "abc")

    with auth_db.get_session() as db:
        assert get_config(db, "clientid") == "abc"


def test_session_rolls_back_on_error(file_engine):
    with pytest.raises(RuntimeError):
        with auth_db.get_session() as db:
            set_config(db, "clientid", "abc")
            raise RuntimeError("boom")

    with auth_db.get_session() as db:
        assert get_config(db, "clientid") is None


def test_file_sqlite_supports_savepoints(file_engine):
    with file_engine.begin() as conn:
        set_config(conn, "clientid", "kept")
        with pytest.raises(RuntimeError):
            with conn.begin_nested():
                set_config(conn, "clientid", "discarded")
                raise RuntimeError("undo")

    with file_engine.connect() as conn:
        assert get_config(conn, "clientid") == "kept"
