"""Resource owner password credentials exchange.

``CredentialExchange.authenticate`` forwards a username/password pair to
the identity provider, validates the returned identity token, applies the
restriction policy and records the resulting token row.

Expected failures (provider rejection, undecodable token, restriction
denial) are reported as ``False``. Store errors propagate.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from sqlalchemy.orm import Session

from auth_classlink.helpers.idtoken import (
    IdToken,
    IdTokenDecodeError,
    decode_id_token,
    first_claim,
)
from auth_classlink.helpers.restrictions import RestrictionPolicy
from auth_classlink.helpers.token_store import (
    create_token,
    get_token_by_external_id,
    get_token_by_username,
    update_token,
)
from auth_classlink.helpers.user_store import get_user_by_username

logger = logging.getLogger(__name__)

BEARER = "Bearer"


class TokenClient(Protocol):
    def rocreds_request(self, username: str, password: str) -> dict[str, Any] | None: ...


def external_username_from(idtoken: IdToken) -> str | None:
    return first_claim(idtoken, "upn", "preferred_username", "sub")


class CredentialExchange:
    def __init__(
        self,
        db: Session,
        client: TokenClient,
        restrictions: RestrictionPolicy,
        *,
        default_resource: str = "",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db
        self._client = client
        self._restrictions = restrictions
        self._default_resource = default_resource
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def authenticate(self, username: str, password: str | None) -> bool:
        """Exchange credentials with the provider and persist the token."""
        subject = username
        existing = get_token_by_username(self._db, username)
        if existing is not None and existing.external_username:
            subject = existing.external_username

        if not password:
            return False

        tokenparams = self._client.rocreds_request(subject, password)
        if not tokenparams or tokenparams.get("token_type") != BEARER:
            return False

        try:
            unique_id, idtoken = decode_id_token(tokenparams.get("id_token", ""))
        except IdTokenDecodeError as exc:
            logger.info("Could not decode identity token for %s: %s", subject, exc)
            return False

        if not self._restrictions.check(idtoken):
            logger.info(
                "User prevented from logging in due to restrictions: %s",
                first_claim(idtoken, "upn", "sub"),
            )
            return False

        now = self._clock()
        external_username = external_username_from(idtoken)
        token = get_token_by_external_id(self._db, unique_id)
        if token is not None:
            update_token(
                self._db,
                token,
                tokenparams,
                external_username=external_username,
                now=now,
            )
        else:
            user = get_user_by_username(self._db, username)
            create_token(
                self._db,
                unique_id,
                username,
                tokenparams,
                external_username=external_username,
                default_resource=self._default_resource,
                user_id=user.id if user is not None else None,
                now=now,
            )
        return True
