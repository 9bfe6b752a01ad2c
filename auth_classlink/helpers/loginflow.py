"""Login flows.

A login flow exposes two capabilities to the host's authentication
pipeline: ``loginpage_hook`` runs when the login form is posted and may
resolve the user directly, and ``user_login`` is the plain credential check
the host falls back to. The active flow is chosen by the ``loginflow``
setting through ``get_loginflow``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Protocol

from sqlalchemy.orm import Session

from auth_classlink.helpers.account_resolver import AccountResolver
from auth_classlink.helpers.classlink_client import ClasslinkClient
from auth_classlink.helpers.credential_exchange import CredentialExchange, TokenClient
from auth_classlink.helpers.events import (
    EventSink,
    LoggingEventSink,
    LoginFailedEvent,
    LoginFailureReason,
)
from auth_classlink.helpers.restrictions import RestrictionPolicy
from auth_classlink.helpers.settings import ClasslinkSettings
from auth_classlink.helpers.token_store import get_token_by_username, link_token_to_user
from auth_classlink.helpers.user_store import (
    AUTH_METHOD,
    LocalUser,
    create_user_record,
    get_user_by_username,
    username_taken,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoginForm:
    username: str
    password: str
    remote_addr: str = ""
    user_agent: str = ""


@dataclass(frozen=True)
class LoginResult:
    continue_flow: bool
    user: LocalUser | None = None


class LoginFlow(Protocol):
    def loginpage_hook(self, form: LoginForm | None) -> LoginResult: ...

    def user_login(self, username: str, password: str | None = None) -> bool: ...


class RocredsLoginFlow:
    """Login flow for the OAuth2 resource owner password credentials grant."""

    def __init__(
        self,
        db: Session,
        settings: ClasslinkSettings,
        exchange: CredentialExchange,
        *,
        resolver: AccountResolver | None = None,
        events: EventSink | None = None,
    ) -> None:
        self._db = db
        self._settings = settings
        self._exchange = exchange
        self._resolver = resolver or AccountResolver(db)
        self._events = events or LoggingEventSink()

    def user_login(self, username: str, password: str | None = None) -> bool:
        return self._exchange.authenticate(username, password)

    def loginpage_hook(self, form: LoginForm | None) -> LoginResult:
        if form is None:
            return LoginResult(True)

        password = form.password
        username = self._resolver.resolve_local_username(form.username)
        if username != form.username:
            if self.user_login(username, password):
                existing = get_user_by_username(self._db, username)
                if existing is not None:
                    return LoginResult(True, existing)
            # TODO: confirm whether this should retry under form.username.
            # The resolved name is kept for the autoappend path below.

        autoappend = self._settings.autoappend
        if not autoappend:
            return LoginResult(True)

        if get_user_by_username(self._db, username) is not None:
            return LoginResult(True)

        username += autoappend
        if not self.user_login(username, password):
            return LoginResult(False)

        existing = get_user_by_username(self._db, username)
        if existing is not None:
            return LoginResult(True, existing)

        if username_taken(self._db, username):
            # Only a deleted account can still hold the name here.
            self._login_failed(form, username, LoginFailureReason.SUSPENDED)
            logger.warning(
                "[client %s]  %s  Account is deleted, not recreating:  %s  %s",
                form.remote_addr,
                self._settings.wwwroot,
                username,
                form.user_agent,
            )
            return LoginResult(False)

        if self._settings.prevent_account_creation:
            self._login_failed(form, username, LoginFailureReason.UNAUTHORISED)
            logger.error(
                "[client %s]  %s  Unknown user, can not create new accounts:  %s  %s",
                form.remote_addr,
                self._settings.wwwroot,
                username,
                form.user_agent,
            )
            return LoginResult(False)

        user = create_user_record(
            self._db,
            username,
            password,
            AUTH_METHOD,
            store_password=not self._settings.prevent_local_passwords,
        )
        token = get_token_by_username(self._db, username)
        if token is not None and not token.user_id:
            link_token_to_user(self._db, token, user.id)
        logger.info("Created account %s from ClassLink login", user.username)
        return LoginResult(True, user)

    def _login_failed(
        self, form: LoginForm, username: str, reason: LoginFailureReason
    ) -> None:
        self._events.emit(
            LoginFailedEvent(
                username=username,
                reason=reason,
                remote_addr=form.remote_addr,
                user_agent=form.user_agent,
            )
        )


def build_rocreds_flow(
    db: Session,
    settings: ClasslinkSettings,
    *,
    client: TokenClient | None = None,
    events: EventSink | None = None,
) -> RocredsLoginFlow:
    exchange = CredentialExchange(
        db,
        client or ClasslinkClient.from_settings(settings),
        RestrictionPolicy(
            settings.userrestrictions, settings.userrestrictionscasesensitive
        ),
        default_resource=settings.oidcresource,
    )
    return RocredsLoginFlow(db, settings, exchange, events=events)


LOGIN_FLOWS: dict[str, Callable[..., LoginFlow]] = {
    "rocreds": build_rocreds_flow,
}


def get_loginflow(
    db: Session,
    settings: ClasslinkSettings,
    *,
    client: TokenClient | None = None,
    events: EventSink | None = None,
) -> LoginFlow:
    """Build the login flow named by ``settings.loginflow``."""
    try:
        factory = LOGIN_FLOWS[settings.loginflow]
    except KeyError:
        raise ValueError(f"Unsupported login flow: {settings.loginflow!r}") from None
    return factory(db, settings, client=client, events=events)
