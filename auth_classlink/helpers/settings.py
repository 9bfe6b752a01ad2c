"""Plugin settings.

Values resolve in three layers: built-in defaults, ``CLASSLINK_SET_<NAME>``
environment overrides, then rows stored in ``config_plugins`` by the admin
UI. Components receive a ``ClasslinkSettings`` instance explicitly.
"""

import logging
import os
from dataclasses import dataclass, fields
from typing import Any

from auth_classlink.helpers.config_store import get_plugin_config

logger = logging.getLogger(__name__)

ENV_PREFIX = "CLASSLINK_SET_"

DEFAULT_SCOPE = "openid profile email"


@dataclass(frozen=True)
class ClasslinkSettings:
    loginflow: str = "rocreds"
    clientid: str = ""
    clientsecret: str = ""
    authendpoint: str = "https://launchpad.classlink.com/oauth2/v2/auth"
    tokenendpoint: str = "https://launchpad.classlink.com/oauth2/v2/token"
    oidcresource: str = ""
    oidcscope: str = DEFAULT_SCOPE
    autoappend: str = ""
    userrestrictions: str = ""
    userrestrictionscasesensitive: bool = True
    prevent_account_creation: bool = False  # host-wide policy
    prevent_local_passwords: bool = True
    wwwroot: str = ""
    http_timeout: float = 10.0


def get_default_settings() -> dict[str, Any]:
    return {
        f.name: get_default_value(f.name, f.default) for f in fields(ClasslinkSettings)
    }


def get_default_value(name: str, value: Any) -> Any:
    """Return ``value`` unless an environment override is set for ``name``."""
    env_value = os.environ.get(f"{ENV_PREFIX}{name.upper()}")
    if env_value is None:
        return value
    return _coerce(env_value, value)


def load_settings(db=None) -> ClasslinkSettings:
    """Build settings from defaults, the environment and stored config rows."""
    values = get_default_settings()
    if db is not None:
        for name, raw in get_plugin_config(db).items():
            if name not in values or raw is None:
                continue
            try:
                values[name] = _coerce(raw, values[name])
            except ValueError:
                logger.warning("Ignoring invalid stored setting %s=%r", name, raw)
    return ClasslinkSettings(**values)


def _coerce(raw: str, like: Any) -> Any:
    if isinstance(like, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(like, float):
        return float(raw)
    if isinstance(like, int):
        return int(raw)
    return raw
