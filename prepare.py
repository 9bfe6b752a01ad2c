import logging

from auth_classlink.helpers.auth_db import get_engine
from auth_classlink.helpers.upgrade import format_version, install_or_upgrade

logger = logging.getLogger("prepare")


def prepare() -> float:
    """Bring the plugin tables to the latest version."""
    engine = get_engine()
    version = install_or_upgrade(engine)
    logger.info("auth_classlink schema at version %s", format_version(version))
    return version


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    try:
        prepare()
    except Exception:
        logger.exception("Error preparing auth_classlink schema")
        raise SystemExit(1)
