"""Tests for the versioned upgrade steps and runner."""

from datetime import datetime

import pytest
import sqlalchemy as sa
from alembic.operations import Operations

from auth_classlink.helpers.config_store import PluginConfig, get_config, set_config
from auth_classlink.helpers.upgrade import (
    LATEST_VERSION,
    NEW_AUTH_ENDPOINT,
    NEW_TOKEN_ENDPOINT,
    OLD_AUTH_ENDPOINT,
    OLD_TOKEN_ENDPOINT,
    UPGRADE_STEPS,
    UpgradeRunner,
    UpgradeStep,
    install_or_upgrade,
)
from auth_classlink.helpers.user_store import LocalUser

STAMP = datetime(2015, 1, 1, 12, 0, 0)

# Plugin tables as first released, before any upgrade step.
_legacy = sa.MetaData()
legacy_token = sa.Table(
    "auth_classlink_token",
    _legacy,
    sa.Column("id", sa.String, primary_key=True),
    sa.Column("external_unique_id", sa.String(255), nullable=False, unique=True),
    sa.Column("username", sa.String(255), nullable=False),
    sa.Column("scope", sa.String(35)),
    sa.Column("resource", sa.String(127)),
    sa.Column("auth_code", sa.Text),
    sa.Column("access_token", sa.Text),
    sa.Column("refresh_token", sa.Text),
    sa.Column("expiry", sa.Integer),
    sa.Column("id_token", sa.Text),
    sa.Column("time_created", sa.DateTime),
    sa.Column("time_modified", sa.DateTime),
)
legacy_state = sa.Table(
    "auth_classlink_state",
    _legacy,
    sa.Column("id", sa.String, primary_key=True),
    sa.Column("state", sa.String(15), nullable=False),
    sa.Column("nonce", sa.String(15), nullable=False),
    sa.Column("time_created", sa.DateTime),
)
users = LocalUser.__table__


@pytest.fixture
def legacy_engine(engine):
    _legacy.create_all(engine)
    users.create(engine)
    PluginConfig.__table__.create(engine)
    return engine


def _add_user(conn, user_id, username, auth="classlink", deleted=False):
    conn.execute(
        users.insert().values(id=user_id, username=username, auth=auth, deleted=deleted)
    )


def _add_token(conn, token_id, unique_id, username, id_token=None):
    conn.execute(
        legacy_token.insert().values(
            id=token_id,
            external_unique_id=unique_id,
            username=username,
            scope="openid",
            access_token="a",
            id_token=id_token,
            time_created=STAMP,
            time_modified=STAMP,
        )
    )


def _tokens(engine):
    with engine.connect() as conn:
        table = sa.Table("auth_classlink_token", sa.MetaData(), autoload_with=conn)
        return {row.id: row._asdict() for row in conn.execute(sa.select(table))}


def _usernames(engine):
    with engine.connect() as conn:
        return dict(conn.execute(sa.select(users.c.id, users.c.username)).all())


def _columns(engine, table):
    with engine.connect() as conn:
        return {c["name"] for c in sa.inspect(conn).get_columns(table)}


# ---------------------------------------------------------------------------
# Full run
# ---------------------------------------------------------------------------


def test_full_run_reaches_latest_schema(legacy_engine):
    version = UpgradeRunner(legacy_engine).run(0)

    assert version == LATEST_VERSION
    assert {"external_username", "user_id", "scope"} <= _columns(legacy_engine, "auth_classlink_token")
    assert "additional_data" in _columns(legacy_engine, "auth_classlink_state")
    with legacy_engine.connect() as conn:
        assert sa.inspect(conn).has_table("auth_classlink_prevlogin")
        assert float(get_config(conn, "version")) == LATEST_VERSION


def test_marker_is_read_when_version_not_given(legacy_engine):
    runner = UpgradeRunner(legacy_engine)
    runner.run()

    assert runner.current_version() == LATEST_VERSION
    assert runner.run() == LATEST_VERSION


def test_running_twice_from_zero_is_idempotent(legacy_engine, make_id_token):
    with legacy_engine.begin() as conn:
        _add_user(conn, "u1", "u-abc")
        _add_token(conn, "t1", "U-ABC", "u-abc", make_id_token(oid="U-ABC", upn="Carol@school.edu"))
        _add_token(conn, "t2", "Z9", " Zed ")
        set_config(conn, "authendpoint", OLD_AUTH_ENDPOINT)

    runner = UpgradeRunner(legacy_engine)
    runner.run(0)
    first = (_tokens(legacy_engine), _usernames(legacy_engine))
    runner.run(0)
    second = (_tokens(legacy_engine), _usernames(legacy_engine))

    assert first == second


# ---------------------------------------------------------------------------
# Data steps
# ---------------------------------------------------------------------------


def test_backfill_renames_account_named_after_unique_id(legacy_engine, make_id_token):
    with legacy_engine.begin() as conn:
        _add_user(conn, "u1", "u-abc")
        _add_token(conn, "t1", "U-ABC", "u-abc", make_id_token(oid="U-ABC", upn="Carol@school.edu"))

    UpgradeRunner(legacy_engine).run(0)

    token = _tokens(legacy_engine)["t1"]
    assert token["external_username"] == "Carol@school.edu"
    assert token["username"] == "carol@school.edu"
    assert _usernames(legacy_engine)["u1"] == "carol@school.edu"


def test_backfill_never_renames_other_accounts(legacy_engine, make_id_token):
    with legacy_engine.begin() as conn:
        _add_user(conn, "u2", "dave")
        _add_token(conn, "t2", "D1", "dave", make_id_token(oid="D1", upn="dave.x@school.edu"))

    UpgradeRunner(legacy_engine).run(0)

    token = _tokens(legacy_engine)["t2"]
    assert token["external_username"] == "dave.x@school.edu"
    assert token["username"] == "dave"
    assert _usernames(legacy_engine)["u2"] == "dave"


def test_backfill_falls_back_to_sub_claim(legacy_engine, make_id_token):
    with legacy_engine.begin() as conn:
        _add_user(conn, "u3", "s-1")
        _add_token(conn, "t3", "S-1", "s-1", make_id_token(oid="S-1", sub="erin"))

    UpgradeRunner(legacy_engine).run(0)

    assert _tokens(legacy_engine)["t3"]["external_username"] == "erin"
    assert _usernames(legacy_engine)["u3"] == "erin"


def test_backfill_skips_legacy_and_undecodable_rows(legacy_engine, make_id_token):
    with legacy_engine.begin() as conn:
        _add_user(conn, "u4", "x-1")
        _add_token(conn, "t4", "X-1", "x-1", None)
        _add_user(conn, "u5", "y-1")
        _add_token(conn, "t5", "Y-1", "y-1", "not-a-jwt")
        _add_user(conn, "u6", "w-1")
        _add_token(conn, "t6", "W-1", "w-1", make_id_token(oid="W-1", upn="wes@school.edu"))

    UpgradeRunner(legacy_engine).run(0)

    tokens = _tokens(legacy_engine)
    assert tokens["t4"]["external_username"] is None
    assert tokens["t5"]["external_username"] is None
    assert tokens["t6"]["external_username"] == "wes@school.edu"
    names = _usernames(legacy_engine)
    assert names["u4"] == "x-1"
    assert names["u5"] == "y-1"
    assert names["u6"] == "wes@school.edu"


def test_backfill_skips_rename_onto_existing_account(legacy_engine, make_id_token):
    with legacy_engine.begin() as conn:
        _add_user(conn, "u1", "u-abc")
        _add_token(conn, "t1", "U-ABC", "u-abc", make_id_token(oid="U-ABC", upn="carol@school.edu"))
        _add_user(conn, "u2", "carol@school.edu", auth="manual")
        _add_user(conn, "u6", "w-1")
        _add_token(conn, "t6", "W-1", "w-1", make_id_token(oid="W-1", upn="wes@school.edu"))

    runner = UpgradeRunner(legacy_engine)

    assert runner.run(0) == LATEST_VERSION
    names = _usernames(legacy_engine)
    assert names["u1"] == "u-abc"
    assert names["u2"] == "carol@school.edu"
    assert names["u6"] == "wes@school.edu"
    tokens = _tokens(legacy_engine)
    assert tokens["t1"]["username"] == "u-abc"
    assert tokens["t1"]["external_username"] is None
    assert tokens["t6"]["username"] == "wes@school.edu"


def test_backfill_ignores_accounts_of_other_plugins(legacy_engine, make_id_token):
    with legacy_engine.begin() as conn:
        _add_user(conn, "u7", "m-1", auth="manual")
        _add_token(conn, "t7", "M-1", "m-1", make_id_token(oid="M-1", upn="mia@school.edu"))

    UpgradeRunner(legacy_engine).run(0)

    assert _tokens(legacy_engine)["t7"]["external_username"] is None
    assert _usernames(legacy_engine)["u7"] == "m-1"


def test_lowercase_only_rewrites_changed_rows(legacy_engine):
    with legacy_engine.begin() as conn:
        _add_token(conn, "t1", "A1", " Alice ")
        _add_token(conn, "t2", "B1", "bob")

    UpgradeRunner(legacy_engine).run(2015012710)

    tokens = _tokens(legacy_engine)
    assert tokens["t1"]["username"] == "alice"
    assert tokens["t2"]["username"] == "bob"
    assert tokens["t2"]["time_modified"] == STAMP


def test_user_id_backfilled_by_username(legacy_engine):
    with legacy_engine.begin() as conn:
        _add_user(conn, "u1", "nina", auth="manual")
        _add_token(conn, "t1", "N1", "nina")
        _add_token(conn, "t2", "O1", "orphan")

    UpgradeRunner(legacy_engine).run(0)

    tokens = _tokens(legacy_engine)
    assert tokens["t1"]["user_id"] == "u1"
    assert tokens["t2"]["user_id"] is None


def test_endpoints_are_reseated(legacy_engine):
    with legacy_engine.begin() as conn:
        set_config(conn, "authendpoint", OLD_AUTH_ENDPOINT)
        set_config(conn, "tokenendpoint", OLD_TOKEN_ENDPOINT)

    UpgradeRunner(legacy_engine).run(0)

    with legacy_engine.connect() as conn:
        assert get_config(conn, "authendpoint") == NEW_AUTH_ENDPOINT
        assert get_config(conn, "tokenendpoint") == NEW_TOKEN_ENDPOINT


def test_custom_endpoints_are_kept(legacy_engine):
    with legacy_engine.begin() as conn:
        set_config(conn, "tokenendpoint", "https://launchpad.classlink.com/oauth2/v2/token")

    UpgradeRunner(legacy_engine).run(0)

    with legacy_engine.connect() as conn:
        assert get_config(conn, "tokenendpoint") == "https://launchpad.classlink.com/oauth2/v2/token"


def _scope_type(engine):
    with engine.connect() as conn:
        for col in sa.inspect(conn).get_columns("auth_classlink_token"):
            if col["name"] == "scope":
                return col["type"]


def test_widen_scope_only_widens(legacy_engine):
    first = [step for step in UPGRADE_STEPS if step.version <= 2014111703]

    UpgradeRunner(legacy_engine, first).run(0)

    scope = _scope_type(legacy_engine)
    assert not isinstance(scope, sa.Text)
    assert scope.length == 255


def test_replay_keeps_scope_unbounded(legacy_engine, monkeypatch):
    UpgradeRunner(legacy_engine).run(0)
    assert isinstance(_scope_type(legacy_engine), sa.Text)

    altered = []
    real_batch = Operations.batch_alter_table

    def spy(self, table_name, *args, **kwargs):
        altered.append(table_name)
        return real_batch(self, table_name, *args, **kwargs)

    monkeypatch.setattr(Operations, "batch_alter_table", spy)
    UpgradeRunner(legacy_engine).run(0)

    assert altered == []
    assert isinstance(_scope_type(legacy_engine), sa.Text)


def test_prevlogin_table_is_left_alone_when_present(legacy_engine):
    UpgradeRunner(legacy_engine).run(0)
    with legacy_engine.begin() as conn:
        conn.execute(
            sa.text(
                "INSERT INTO auth_classlink_prevlogin (id, user_id, method, password) "
                "VALUES ('p1', 'u1', 'manual', 'x')"
            )
        )

    UpgradeRunner(legacy_engine).run(0)

    with legacy_engine.connect() as conn:
        count = conn.execute(sa.text("SELECT COUNT(*) FROM auth_classlink_prevlogin"))
        assert count.scalar_one() == 1


# ---------------------------------------------------------------------------
# Runner semantics
# ---------------------------------------------------------------------------


def test_failed_step_stops_at_last_committed_marker(legacy_engine):
    applied = []

    def ok(name):
        return lambda ctx: applied.append(name)

    def boom(ctx):
        raise RuntimeError("step failed")

    runner = UpgradeRunner(
        legacy_engine,
        [UpgradeStep(1, "one", ok("one")), UpgradeStep(2, "two", boom), UpgradeStep(3, "three", ok("three"))],
    )
    with pytest.raises(RuntimeError):
        runner.run(0)

    assert applied == ["one"]
    assert runner.current_version() == 1

    fixed = UpgradeRunner(
        legacy_engine,
        [UpgradeStep(1, "one", ok("one")), UpgradeStep(2, "two", ok("two")), UpgradeStep(3, "three", ok("three"))],
    )
    assert fixed.run() == 3
    assert applied == ["one", "two", "three"]


def test_steps_at_or_below_current_version_are_skipped(legacy_engine):
    applied = []
    runner = UpgradeRunner(
        legacy_engine,
        [UpgradeStep(5, "five", lambda ctx: applied.append(5)), UpgradeStep(7, "seven", lambda ctx: applied.append(7))],
    )

    assert runner.run(5) == 7
    assert applied == [7]


def test_install_or_upgrade_on_fresh_database(engine):
    assert install_or_upgrade(engine) == LATEST_VERSION

    assert "user_id" in _columns(engine, "auth_classlink_token")
    with engine.connect() as conn:
        assert float(get_config(conn, "version")) == LATEST_VERSION
    assert install_or_upgrade(engine) == LATEST_VERSION


def test_install_or_upgrade_upgrades_existing_database(legacy_engine):
    assert install_or_upgrade(legacy_engine) == LATEST_VERSION
    assert "external_username" in _columns(legacy_engine, "auth_classlink_token")
