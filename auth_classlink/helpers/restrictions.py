"""User restriction policy.

Admins may configure one regular expression per line; when any are
configured, a user may only log in if their identity claim (``upn``,
falling back to ``sub``) matches at least one of them.
"""

import logging
import re

from auth_classlink.helpers.idtoken import IdToken, first_claim

logger = logging.getLogger(__name__)


class RestrictionPolicy:
    def __init__(self, restrictions: str = "", case_sensitive: bool = True) -> None:
        self._patterns = [
            line.strip() for line in (restrictions or "").splitlines() if line.strip()
        ]
        self._flags = 0 if case_sensitive else re.IGNORECASE

    @property
    def has_restrictions(self) -> bool:
        return bool(self._patterns)

    def check(self, idtoken: IdToken) -> bool:
        """Return True when the identity is allowed to log in."""
        if not self._patterns:
            return True

        tomatch = first_claim(idtoken, "upn", "sub") or ""
        for pattern in self._patterns:
            try:
                if re.search(pattern, tomatch, self._flags):
                    return True
            except re.error as exc:
                logger.warning("Ignoring invalid user restriction %r: %s", pattern, exc)
        return False
