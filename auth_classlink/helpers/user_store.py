"""SQLAlchemy models and CRUD for local accounts and legacy federation links.

``users`` belongs to the host application; this plugin reads it and creates
rows on the single account auto-creation path. ``legacy_federation_objects``
belongs to an optional companion plugin and is only ever read.
"""

import uuid
from datetime import datetime, timezone

from argon2 import PasswordHasher
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, select
from sqlalchemy.orm import Session

from auth_classlink.helpers.auth_db import Base
from auth_classlink.helpers.config_store import get_config

AUTH_METHOD = "classlink"
LEGACY_FEDERATION_PLUGIN = "legacy_federation"

# ---------------------------------------------------------------------------
# ORM Models
# ---------------------------------------------------------------------------


class LocalUser(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True)  # UUID
    username = Column(String, nullable=False, unique=True)
    auth = Column(String, nullable=False, default="manual")  # owning auth plugin
    email = Column(String)
    password_hash = Column(String)  # argon2 hash, unset for external accounts
    deleted = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    last_login_at = Column(DateTime)


class LegacyFederationObject(Base):
    __tablename__ = "legacy_federation_objects"

    id = Column(String, primary_key=True)  # UUID
    object_type = Column(String, nullable=False)  # "user", "group", ...
    external_name = Column(String, nullable=False)
    local_user_id = Column(String, ForeignKey("users.id"), nullable=False)


# ---------------------------------------------------------------------------
# Password utilities (argon2)
# ---------------------------------------------------------------------------

_ph = PasswordHasher()


def hash_password(password: str) -> str:
    """Hash a plaintext password using Argon2id."""
    return _ph.hash(password)


# ---------------------------------------------------------------------------
# User CRUD
# ---------------------------------------------------------------------------


def get_user_by_id(db: Session, user_id: str) -> LocalUser | None:
    """Look up a user by primary key."""
    return db.query(LocalUser).filter(LocalUser.id == user_id).first()


def get_user_by_username(db: Session, username: str) -> LocalUser | None:
    """Look up a live (not deleted) user; usernames are stored lowercase."""
    return (
        db.query(LocalUser)
        .filter(
            LocalUser.username == username.strip().lower(),
            LocalUser.deleted.is_(False),
        )
        .first()
    )


def username_taken(db: Session, username: str) -> bool:
    """True when any account, deleted or not, holds ``username``."""
    stmt = select(LocalUser.id).where(LocalUser.username == username.strip().lower())
    return db.execute(stmt).first() is not None


def create_user_record(
    db: Session,
    username: str,
    password: str | None,
    auth: str = AUTH_METHOD,
    *,
    store_password: bool = False,
) -> LocalUser:
    """Create a local account owned by ``auth``.

    The password hash is only kept when the owning plugin allows local
    passwords; external accounts otherwise authenticate at the provider.
    """
    user = LocalUser(
        id=str(uuid.uuid4()),
        username=username.strip().lower(),
        auth=auth,
        password_hash=hash_password(password) if store_password and password else None,
        last_login_at=datetime.now(timezone.utc),
    )
    db.add(user)
    db.flush()
    return user


# ---------------------------------------------------------------------------
# Legacy federation lookups
# ---------------------------------------------------------------------------


def legacy_federation_installed(db: Session) -> bool:
    """The companion plugin is installed once it has recorded a version."""
    return bool(get_config(db, "version", plugin=LEGACY_FEDERATION_PLUGIN))


def get_legacy_username(db: Session, external_name: str) -> str | None:
    """Return the local username mapped to ``external_name``, if any."""
    stmt = (
        select(LocalUser.username)
        .join(
            LegacyFederationObject,
            LegacyFederationObject.local_user_id == LocalUser.id,
        )
        .where(
            LegacyFederationObject.external_name == external_name,
            LegacyFederationObject.object_type == "user",
        )
    )
    return db.execute(stmt).scalars().first()
