"""Plugin key/value configuration rows (``config_plugins``).

The functions here accept either an ORM ``Session`` or a Core
``Connection`` so the same rows can be read by request handlers and by
the upgrade runner.
"""

import uuid

from sqlalchemy import Column, String, Text, UniqueConstraint, select

from auth_classlink.helpers.auth_db import Base

PLUGIN = "auth_classlink"


class PluginConfig(Base):
    __tablename__ = "config_plugins"

    id = Column(String, primary_key=True)  # UUID
    plugin = Column(String, nullable=False)
    name = Column(String, nullable=False)
    value = Column(Text)

    __table_args__ = (UniqueConstraint("plugin", "name"),)


_config = PluginConfig.__table__


def get_config(db, name: str, plugin: str = PLUGIN) -> str | None:
    """Return a single config value, or None when unset."""
    stmt = select(_config.c.value).where(
        _config.c.plugin == plugin, _config.c.name == name
    )
    return db.execute(stmt).scalar_one_or_none()


def get_plugin_config(db, plugin: str = PLUGIN) -> dict[str, str | None]:
    """Return every config value stored for a plugin."""
    stmt = select(_config.c.name, _config.c.value).where(_config.c.plugin == plugin)
    return {row.name: row.value for row in db.execute(stmt)}


def set_config(db, name: str, value: str | None, plugin: str = PLUGIN) -> None:
    """Insert or overwrite a config value."""
    existing = db.execute(
        select(_config.c.id).where(_config.c.plugin == plugin, _config.c.name == name)
    ).scalar_one_or_none()
    if existing is None:
        db.execute(
            _config.insert().values(
                id=str(uuid.uuid4()), plugin=plugin, name=name, value=value
            )
        )
    else:
        db.execute(
            _config.update().where(_config.c.id == existing).values(value=value)
        )
