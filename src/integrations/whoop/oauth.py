"""Whoop OAuth 2.0 helpers.

Reference: https://developer.whoop.com/docs/developing/oauth

The token endpoint takes a JSON body for the authorization-code and revoke
calls, and a form-encoded body for refresh.  The ``offline`` scope is
required to receive refresh tokens at all.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

import httpx

from src.config import Settings, get_settings
from src.integrations.base import TokenSet
from src.integrations.errors import (
    IntegrationNotConfiguredError,
    UpstreamUnavailableError,
    WhoopAPIError,
)

logger = logging.getLogger("fitsync.whoop.oauth")

WHOOP_AUTH_URL = "https://api.prod.whoop.com/oauth/oauth2/auth"
WHOOP_TOKEN_URL = "https://api.prod.whoop.com/oauth/oauth2/token"
WHOOP_REVOKE_URL = "https://api.prod.whoop.com/oauth/oauth2/revoke"

DEFAULT_SCOPES: list[str] = [
    "read:recovery",
    "read:sleep",
    "read:workout",
    "read:profile",
    "offline",
]


def generate_state() -> str:
    """CSRF state parameter.  Whoop requires at least 8 characters."""
    return secrets.token_hex(16)


class WhoopOAuth:
    """Authorization-code flow, refresh, and revocation against Whoop.

    Args:
        client_id:     OAuth2 client ID (WHOOP_CLIENT_ID).
        client_secret: OAuth2 client secret (WHOOP_CLIENT_SECRET).
        http_client:   Optional pre-configured httpx client (for testing).
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self._http_client = http_client

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> "WhoopOAuth":
        s = settings or get_settings()
        return cls(s.whoop_client_id, s.whoop_client_secret, http_client=http_client)

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def _require_configured(self) -> None:
        if not self.is_configured:
            raise IntegrationNotConfiguredError(
                "Whoop OAuth not configured. Set WHOOP_CLIENT_ID and WHOOP_CLIENT_SECRET."
            )

    def get_authorization_url(
        self,
        redirect_uri: str,
        scopes: list[str] | None = None,
        state: str | None = None,
    ) -> str:
        """Build the URL the user visits to grant access."""
        self._require_configured()
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(scopes or DEFAULT_SCOPES),
            "state": state or generate_state(),
        }
        return f"{WHOOP_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet:
        """Exchange an authorization code for tokens.

        ``redirect_uri`` must match the one used for the authorization URL.
        """
        self._require_configured()
        data = await self._post(
            WHOOP_TOKEN_URL,
            "exchange code",
            json={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
        )
        return self._token_set(data)

    async def refresh_access_token(self, refresh_token: str) -> TokenSet:
        """Trade a refresh token for a new token pair.

        Whoop rotates refresh tokens; the old one stops working once used.
        """
        self._require_configured()
        data = await self._post(
            WHOOP_TOKEN_URL,
            "refresh token",
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "scope": "offline",
            },
        )
        return self._token_set(data, fallback_refresh=refresh_token)

    async def revoke_token(self, token: str) -> None:
        """Revoke an access or refresh token."""
        self._require_configured()
        await self._post(
            WHOOP_REVOKE_URL,
            "revoke token",
            json={
                "token": token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
            expect_json=False,
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _post(self, url: str, action: str, expect_json: bool = True, **kwargs) -> dict:
        try:
            if self._http_client:
                response = await self._http_client.post(url, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=30.0) as client:
                    response = await client.post(url, **kwargs)
        except httpx.TransportError as exc:
            raise UpstreamUnavailableError(f"Whoop {action} failed: {exc}") from exc

        if not response.is_success:
            logger.warning("Whoop %s failed: %s", action, response.status_code)
            raise WhoopAPIError(response.status_code, response.text)
        if not expect_json or not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as exc:
            raise WhoopAPIError(response.status_code, f"{action} returned invalid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise WhoopAPIError(response.status_code, f"{action} returned {type(data).__name__}, not an object")
        return data

    @staticmethod
    def _token_set(data: dict, fallback_refresh: str | None = None) -> TokenSet:
        access = data.get("access_token")
        refresh = data.get("refresh_token") or fallback_refresh
        if not access or not refresh:
            raise WhoopAPIError(200, "Token response missing access_token or refresh_token")
        expires_in = data.get("expires_in")
        if not expires_in:
            return TokenSet(access_token=access, refresh_token=refresh, expires_at=None)
        try:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=float(expires_in))
        except (TypeError, ValueError, OverflowError) as exc:
            raise WhoopAPIError(200, f"Token response has invalid expires_in {expires_in!r}") from exc
        return TokenSet(access_token=access, refresh_token=refresh, expires_at=expires_at)
