"""Versioned upgrade steps for the plugin tables.

Each ``UpgradeStep`` runs when the stored plugin version is below the
step's version. The step's action and the version marker are written in
one transaction, so a failed step leaves the marker at the last step that
completed and the runner can be invoked again from there.

Structural steps check for the column or table before touching it. Data
steps only write rows they actually change.

Revision history:
    2014111703     token.scope widened to 255 chars
    2015012702     state.additional_data
    2015012703     token.external_username
    2015012704     backfill external usernames from stored id tokens
    2015012707     auth_classlink_prevlogin table
    2015012710     token.scope becomes unbounded text
    2015111904.01  lowercase token usernames
    2015111905.01  reseat login.windows.net endpoints
    2018051700.01  token.user_id, backfilled from users
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from auth_classlink.helpers.auth_db import Base
from auth_classlink.helpers.config_store import PluginConfig, get_config, set_config
from auth_classlink.helpers.idtoken import IdToken, IdTokenDecodeError, first_claim
from auth_classlink.helpers.token_store import ClasslinkPrevLogin, ClasslinkToken
from auth_classlink.helpers.user_store import AUTH_METHOD, LocalUser

logger = logging.getLogger(__name__)

TOKEN_TABLE = ClasslinkToken.__tablename__
STATE_TABLE = "auth_classlink_state"
USER_TABLE = LocalUser.__tablename__

OLD_AUTH_ENDPOINT = "https://login.windows.net/common/oauth2/authorize"
NEW_AUTH_ENDPOINT = "https://login.microsoftonline.com/common/oauth2/authorize"
OLD_TOKEN_ENDPOINT = "https://login.windows.net/common/oauth2/token"
NEW_TOKEN_ENDPOINT = "https://login.microsoftonline.com/common/oauth2/token"


class UpgradeContext:
    """What an upgrade action gets to work with."""

    def __init__(self, conn: Connection) -> None:
        self.conn = conn
        self.op = Operations(MigrationContext.configure(conn))

    def has_table(self, table: str) -> bool:
        return sa.inspect(self.conn).has_table(table)

    def has_column(self, table: str, column: str) -> bool:
        return column in {c["name"] for c in sa.inspect(self.conn).get_columns(table)}

    def column_type(self, table: str, column: str) -> sa.types.TypeEngine | None:
        for col in sa.inspect(self.conn).get_columns(table):
            if col["name"] == column:
                return col["type"]
        return None


@dataclass(frozen=True)
class UpgradeStep:
    version: float
    name: str
    action: Callable[[UpgradeContext], None]


# ---------------------------------------------------------------------------
# Structural steps
# ---------------------------------------------------------------------------


def widen_scope(ctx: UpgradeContext) -> None:
    coltype = ctx.column_type(TOKEN_TABLE, "scope")
    # Never narrow; a replay finds the column already unbounded.
    if isinstance(coltype, sa.Text) or (
        isinstance(coltype, sa.String) and (coltype.length or 0) >= 255
    ):
        return
    with ctx.op.batch_alter_table(TOKEN_TABLE) as batch:
        batch.alter_column("scope", type_=sa.String(255))


def add_state_additional_data(ctx: UpgradeContext) -> None:
    if not ctx.has_column(STATE_TABLE, "additional_data"):
        ctx.op.add_column(
            STATE_TABLE, sa.Column("additional_data", sa.Text(), nullable=True)
        )


def add_token_external_username(ctx: UpgradeContext) -> None:
    if not ctx.has_column(TOKEN_TABLE, "external_username"):
        ctx.op.add_column(
            TOKEN_TABLE, sa.Column("external_username", sa.String(255), nullable=True)
        )


def install_prevlogin_table(ctx: UpgradeContext) -> None:
    if not ctx.has_table(ClasslinkPrevLogin.__tablename__):
        ClasslinkPrevLogin.__table__.create(ctx.conn)


def scope_to_text(ctx: UpgradeContext) -> None:
    if isinstance(ctx.column_type(TOKEN_TABLE, "scope"), sa.Text):
        return
    with ctx.op.batch_alter_table(TOKEN_TABLE) as batch:
        batch.alter_column("scope", type_=sa.Text(), nullable=True)


# ---------------------------------------------------------------------------
# Data steps
# ---------------------------------------------------------------------------


def backfill_external_usernames(ctx: UpgradeContext) -> None:
    """Populate external usernames from stored id tokens.

    Accounts still named after their lowercased external unique id are
    renamed to the decoded ``upn`` (or ``sub``) so they can use the
    password login flow. Rows without an id token are legacy and skipped.
    Each row is written under its own savepoint; a token that fails to
    decode or a rename that collides with an existing account skips that
    row only.
    """
    tok = sa.table(
        TOKEN_TABLE,
        sa.column("id"),
        sa.column("username"),
        sa.column("external_unique_id"),
        sa.column("external_username"),
        sa.column("id_token"),
    )
    users = sa.table(
        USER_TABLE,
        sa.column("id"),
        sa.column("username"),
        sa.column("auth"),
        sa.column("deleted", sa.Boolean),
    )
    stmt = (
        sa.select(
            users.c.id.label("user_id"),
            users.c.username,
            tok.c.id.label("token_id"),
            tok.c.external_unique_id,
            tok.c.external_username,
            tok.c.id_token,
        )
        .select_from(tok.join(users, users.c.username == tok.c.username))
        .where(users.c.auth == AUTH_METHOD, users.c.deleted == sa.false())
    )

    for row in ctx.conn.execute(stmt).mappings().all():
        if not row["id_token"]:
            continue
        try:
            with ctx.conn.begin_nested():
                _backfill_row(ctx, tok, users, row)
        except (IdTokenDecodeError, SQLAlchemyError) as exc:
            logger.warning("Skipping token %s: %s", row["token_id"], exc)


def _backfill_row(ctx: UpgradeContext, tok, users, row) -> None:
    idtoken = IdToken.from_encoded(row["id_token"])
    external_username = first_claim(idtoken, "upn", "sub")
    if not external_username:
        return

    if not row["external_username"]:
        ctx.conn.execute(
            tok.update()
            .where(tok.c.id == row["token_id"])
            .values(external_username=external_username)
        )

    if row["username"] != str(row["external_unique_id"]).lower():
        return
    new_username = external_username.strip().lower()
    if new_username == row["username"]:
        return

    ctx.conn.execute(
        users.update()
        .where(users.c.id == row["user_id"])
        .values(username=new_username)
    )
    ctx.conn.execute(
        tok.update()
        .where(tok.c.id == row["token_id"])
        .values(username=new_username)
    )
    logger.info("Renamed account %s to %s", row["username"], new_username)


def lowercase_token_usernames(ctx: UpgradeContext) -> None:
    tok = sa.table(TOKEN_TABLE, sa.column("id"), sa.column("username"))
    for row in ctx.conn.execute(sa.select(tok.c.id, tok.c.username)).all():
        normalized = (row.username or "").strip().lower()
        if normalized != row.username:
            ctx.conn.execute(
                tok.update().where(tok.c.id == row.id).values(username=normalized)
            )


def reseat_endpoints(ctx: UpgradeContext) -> None:
    if get_config(ctx.conn, "authendpoint") == OLD_AUTH_ENDPOINT:
        set_config(ctx.conn, "authendpoint", NEW_AUTH_ENDPOINT)
    if get_config(ctx.conn, "tokenendpoint") == OLD_TOKEN_ENDPOINT:
        set_config(ctx.conn, "tokenendpoint", NEW_TOKEN_ENDPOINT)


def add_token_user_id(ctx: UpgradeContext) -> None:
    if ctx.has_column(TOKEN_TABLE, "user_id"):
        return

    ctx.op.add_column(TOKEN_TABLE, sa.Column("user_id", sa.String(), nullable=True))

    tok = sa.table(
        TOKEN_TABLE, sa.column("id"), sa.column("username"), sa.column("user_id")
    )
    users = sa.table(USER_TABLE, sa.column("id"), sa.column("username"))
    stmt = sa.select(tok.c.id, users.c.id.label("user_id")).select_from(
        tok.join(users, users.c.username == tok.c.username)
    )
    for row in ctx.conn.execute(stmt).all():
        ctx.conn.execute(
            tok.update().where(tok.c.id == row.id).values(user_id=row.user_id)
        )


UPGRADE_STEPS: list[UpgradeStep] = [
    UpgradeStep(2014111703, "widen token scope", widen_scope),
    UpgradeStep(2015012702, "state additional data", add_state_additional_data),
    UpgradeStep(2015012703, "token external username", add_token_external_username),
    UpgradeStep(2015012704, "backfill external usernames", backfill_external_usernames),
    UpgradeStep(2015012707, "previous login table", install_prevlogin_table),
    UpgradeStep(2015012710, "unbounded token scope", scope_to_text),
    UpgradeStep(2015111904.01, "lowercase token usernames", lowercase_token_usernames),
    UpgradeStep(2015111905.01, "reseat endpoints", reseat_endpoints),
    UpgradeStep(2018051700.01, "token user id", add_token_user_id),
]

LATEST_VERSION = max(step.version for step in UPGRADE_STEPS)


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


def format_version(version: float) -> str:
    return f"{version:.2f}"


class UpgradeRunner:
    def __init__(self, engine: Engine, steps: list[UpgradeStep] | None = None) -> None:
        self._engine = engine
        if steps is None:
            steps = UPGRADE_STEPS
        self._steps = sorted(steps, key=lambda s: s.version)

    def current_version(self) -> float:
        """Version recorded by the last committed step, 0 when none."""
        with self._engine.connect() as conn:
            if not sa.inspect(conn).has_table(PluginConfig.__tablename__):
                return 0.0
            value = get_config(conn, "version")
        return float(value) if value else 0.0

    def run(self, current_version: float | None = None) -> float:
        """Apply every step above ``current_version`` in order.

        Returns the version reached. An exception from a step propagates
        after that step's transaction has been rolled back.
        """
        with self._engine.begin() as conn:
            PluginConfig.__table__.create(conn, checkfirst=True)

        if current_version is None:
            current_version = self.current_version()

        for step in self._steps:
            if current_version >= step.version:
                continue
            logger.info(
                "Applying upgrade %s (%s)", format_version(step.version), step.name
            )
            with self._engine.begin() as conn:
                step.action(UpgradeContext(conn))
                set_config(conn, "version", format_version(step.version))
            current_version = step.version

        return current_version


def install_or_upgrade(engine: Engine) -> float:
    """Create the current schema on a fresh database, otherwise upgrade it."""
    with engine.connect() as conn:
        fresh = not sa.inspect(conn).has_table(TOKEN_TABLE)

    if not fresh:
        return UpgradeRunner(engine).run()

    Base.metadata.create_all(engine)
    with engine.begin() as conn:
        set_config(conn, "version", format_version(LATEST_VERSION))
    logger.info("Installed plugin tables at version %s", format_version(LATEST_VERSION))
    return LATEST_VERSION
