"""Map a submitted username onto a local account name."""

import logging

from sqlalchemy.orm import Session

from auth_classlink.helpers.user_store import (
    get_legacy_username,
    legacy_federation_installed,
)

logger = logging.getLogger(__name__)


class AccountResolver:
    def __init__(self, db: Session) -> None:
        self._db = db

    def resolve_local_username(self, candidate: str) -> str:
        """Return the local username linked to ``candidate`` by the legacy
        federation plugin, or ``candidate`` itself when there is no link.
        """
        if not legacy_federation_installed(self._db):
            return candidate

        username = get_legacy_username(self._db, candidate)
        if not username:
            return candidate

        logger.debug("Resolved %s to legacy-linked account %s", candidate, username)
        return username
