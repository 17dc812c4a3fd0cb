# Dataverse Dataset MCP Server
# File: auth.py
# Version: v1

"""OAuth2 client for obtaining access tokens for the Dataverse Web API."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from .config import DataverseConfig
from .errors import ConfigurationError, TransportError

# Refresh this many seconds before the token actually expires.
_EXPIRY_MARGIN_SECONDS = 60


@dataclass
class OAuthClient:
    """Client-credentials OAuth2 client for an application user.

    The scope is the environment URL with ``/.default`` appended, as the
    identity platform expects for Dataverse resources.
    """

    config: DataverseConfig
    transport: Optional[httpx.AsyncBaseTransport] = None
    _cached_token: Optional[str] = None
    _expires_at: float = 0.0

    @property
    def scope(self) -> str:
        base = (self.config.environment_url or "").rstrip("/")
        return f"{base}/.default"

    async def get_access_token(self) -> str:
        """Return a valid access token, fetching a new one when expired."""
        if self._cached_token and time.time() < self._expires_at:
            return self._cached_token

        if (
            not self.config.oauth_token_url
            or not self.config.client_id
            or not self.config.client_secret
            or not self.config.environment_url
        ):
            raise ConfigurationError(
                "OAuth configuration is incomplete. "
                "Set DATAVERSE_URL, DATAVERSE_OAUTH_TOKEN_URL, DATAVERSE_CLIENT_ID "
                "and DATAVERSE_CLIENT_SECRET."
            )

        form = {
            "grant_type": "client_credentials",
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "scope": self.scope,
        }

        async with httpx.AsyncClient(
            timeout=float(self.config.timeout_seconds),
            verify=self.config.verify_tls,
            transport=self.transport,
        ) as client:
            try:
                response = await client.post(self.config.oauth_token_url, data=form)
            except httpx.RequestError as exc:
                raise TransportError(
                    f"Error calling token endpoint '{self.config.oauth_token_url}': {exc}",
                    url=self.config.oauth_token_url,
                ) from exc

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            body_preview = exc.response.text[:500]
            raise TransportError(
                f"Failed to obtain access token from '{self.config.oauth_token_url}' "
                f"(HTTP {status}). Check DATAVERSE_OAUTH_TOKEN_URL, "
                "DATAVERSE_CLIENT_ID and DATAVERSE_CLIENT_SECRET. "
                f"Response snippet: {body_preview}",
                status_code=status,
                url=self.config.oauth_token_url,
                body_preview=body_preview,
            ) from exc

        try:
            data: Any = response.json()
        except ValueError as exc:
            raise TransportError(
                f"Token endpoint '{self.config.oauth_token_url}' did not return JSON",
                status_code=response.status_code,
                url=self.config.oauth_token_url,
                body_preview=response.text[:500],
            ) from exc
        if not isinstance(data, dict):
            raise TransportError(
                "OAuth token response is not a JSON object",
                url=self.config.oauth_token_url,
            )

        token = data.get("access_token")
        if not token:
            raise TransportError("OAuth token response did not contain 'access_token'")

        try:
            expires_in = float(data.get("expires_in") or 3600)
        except (TypeError, ValueError):
            expires_in = 3600.0

        self._cached_token = token
        self._expires_at = time.time() + max(expires_in - _EXPIRY_MARGIN_SECONDS, 0.0)
        return token
