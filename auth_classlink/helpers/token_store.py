"""Persisted OAuth token records and the plugin's companion tables.

One ``auth_classlink_token`` row binds an external identity (the
provider's unique id) to a local account. Rows are created on the first
successful exchange for an identity and updated in place afterwards.
"""

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.orm import Session

from auth_classlink.helpers.auth_db import Base
from auth_classlink.helpers.settings import DEFAULT_SCOPE

DAYSECS = 86400

# ---------------------------------------------------------------------------
# ORM Models
# ---------------------------------------------------------------------------


class ClasslinkToken(Base):
    __tablename__ = "auth_classlink_token"

    id = Column(String, primary_key=True)  # UUID
    external_unique_id = Column(String(255), nullable=False, unique=True)
    username = Column(String(255), nullable=False)  # lowercase, trimmed
    user_id = Column(String)  # users.id once linked
    external_username = Column(String(255))
    scope = Column(Text)
    resource = Column(String(127))
    auth_code = Column(Text)
    access_token = Column(Text)
    refresh_token = Column(Text)
    expiry = Column(Integer)  # epoch seconds
    id_token = Column(Text)
    time_created = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    time_modified = Column(DateTime, default=lambda: datetime.now(timezone.utc))


class ClasslinkState(Base):
    __tablename__ = "auth_classlink_state"

    id = Column(String, primary_key=True)  # UUID
    state = Column(String(15), nullable=False)
    nonce = Column(String(15), nullable=False)
    time_created = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    additional_data = Column(Text)  # JSON blob, added in 2015012702


class ClasslinkPrevLogin(Base):
    __tablename__ = "auth_classlink_prevlogin"

    id = Column(String, primary_key=True)  # UUID
    user_id = Column(String, nullable=False)
    method = Column(String(50))
    password = Column(String(255))


# ---------------------------------------------------------------------------
# Token CRUD
# ---------------------------------------------------------------------------


def normalize_username(username: str) -> str:
    return username.strip().lower()


def get_token_by_id(db: Session, token_id: str) -> ClasslinkToken | None:
    return db.query(ClasslinkToken).filter(ClasslinkToken.id == token_id).first()


def get_token_by_username(db: Session, username: str) -> ClasslinkToken | None:
    """Look up the token bound to a local username."""
    return (
        db.query(ClasslinkToken)
        .filter(ClasslinkToken.username == normalize_username(username))
        .first()
    )


def get_token_by_external_id(
    db: Session, external_unique_id: str
) -> ClasslinkToken | None:
    """Look up the token for a provider-assigned unique id."""
    return (
        db.query(ClasslinkToken)
        .filter(ClasslinkToken.external_unique_id == external_unique_id)
        .first()
    )


def token_expiry(tokenparams: dict[str, Any], now: datetime) -> int:
    """Absolute expiry from ``expires_on``, else ``expires_in``, else one day."""
    if tokenparams.get("expires_on"):
        return int(tokenparams["expires_on"])
    base = int(now.timestamp())
    if tokenparams.get("expires_in") is not None:
        return base + int(tokenparams["expires_in"])
    return base + DAYSECS


def create_token(
    db: Session,
    external_unique_id: str,
    username: str,
    tokenparams: dict[str, Any],
    *,
    external_username: str | None,
    default_resource: str = "",
    user_id: str | None = None,
    auth_code: str = "",
    now: datetime | None = None,
) -> ClasslinkToken:
    """Insert a token row for an identity seen for the first time."""
    now = now or datetime.now(timezone.utc)
    token = ClasslinkToken(
        id=str(uuid.uuid4()),
        external_unique_id=external_unique_id,
        username=normalize_username(username),
        user_id=user_id,
        external_username=external_username,
        scope=tokenparams.get("scope") or DEFAULT_SCOPE,
        resource=tokenparams.get("resource") or default_resource,
        auth_code=auth_code,
        access_token=tokenparams.get("access_token"),
        refresh_token=tokenparams.get("refresh_token") or "",
        expiry=token_expiry(tokenparams, now),
        id_token=tokenparams.get("id_token"),
        time_created=now,
        time_modified=now,
    )
    db.add(token)
    db.flush()
    return token


def update_token(
    db: Session,
    token: ClasslinkToken,
    tokenparams: dict[str, Any],
    *,
    external_username: str | None = None,
    auth_code: str = "",
    now: datetime | None = None,
) -> ClasslinkToken:
    """Refresh the token material of an existing row; ``id`` never changes."""
    now = now or datetime.now(timezone.utc)
    token.auth_code = auth_code
    token.access_token = tokenparams.get("access_token")
    token.refresh_token = tokenparams.get("refresh_token") or ""
    token.expiry = token_expiry(tokenparams, now)
    token.id_token = tokenparams.get("id_token")
    if external_username:
        token.external_username = external_username
    token.time_modified = now
    db.flush()
    return token


def link_token_to_user(db: Session, token: ClasslinkToken, user_id: str) -> None:
    token.user_id = user_id
    db.flush()
