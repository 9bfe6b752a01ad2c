"""Client for the ClassLink OAuth2 token endpoint.

Only the resource owner password credentials grant is issued from here;
the browser based authorization code flow lives elsewhere.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from auth_classlink.helpers.settings import ClasslinkSettings

logger = logging.getLogger(__name__)


class ClasslinkClient:
    """Sync client for the provider's token endpoint."""

    def __init__(
        self,
        clientid: str,
        clientsecret: str,
        tokenendpoint: str,
        *,
        scope: str = "openid profile email",
        resource: str = "",
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.clientid = clientid
        self.clientsecret = clientsecret
        self.tokenendpoint = tokenendpoint
        self.scope = scope
        self.resource = resource
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(
        cls, settings: ClasslinkSettings, transport: httpx.BaseTransport | None = None
    ) -> ClasslinkClient:
        return cls(
            settings.clientid,
            settings.clientsecret,
            settings.tokenendpoint,
            scope=settings.oidcscope,
            resource=settings.oidcresource,
            timeout=settings.http_timeout,
            transport=transport,
        )

    def rocreds_request(self, username: str, password: str) -> dict[str, Any] | None:
        """Exchange a username/password pair for token parameters.

        Returns the decoded token response, or None when the provider
        rejects the request or cannot be reached.
        """
        data = {
            "grant_type": "password",
            "username": username,
            "password": password,
            "scope": self.scope,
            "client_id": self.clientid,
            "client_secret": self.clientsecret,
        }
        if self.resource:
            data["resource"] = self.resource

        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                resp = client.post(self.tokenendpoint, data=data)
        except httpx.HTTPError as exc:
            logger.warning("ClassLink token request failed: %s", exc)
            return None

        if resp.status_code != 200:
            logger.info(
                "ClassLink token endpoint rejected credentials for %s (status %s)",
                username,
                resp.status_code,
            )
            return None

        try:
            body = resp.json()
        except ValueError:
            logger.warning("ClassLink token endpoint returned a non-JSON body")
            return None
        return body if isinstance(body, dict) else None
