"""Whoop implementation of the DeviceIntegration contract."""

from __future__ import annotations

import asyncio
import logging
from datetime import date, timedelta
from typing import Any, Awaitable, Callable

import httpx

from src.config import Settings
from src.integrations.base import (
    DeviceIntegration,
    RecoveryData,
    SleepData,
    TokenSet,
    WebhookEvent,
    WebhookRequest,
    WorkoutData,
    resolve_timezone,
)
from src.integrations.config_loader import RetryPolicy
from src.integrations.errors import TokensNotFoundError
from src.integrations.tokens import Clock, TokenCustodian
from src.integrations.whoop.client import WhoopClient
from src.integrations.whoop.oauth import WhoopOAuth
from src.integrations.whoop.webhooks import (
    is_scored,
    normalize_recovery,
    normalize_sleep,
    normalize_workout,
    parse_whoop_webhook,
    verify_whoop_webhook,
)
from src.services.documents import DocumentStore

logger = logging.getLogger("fitsync.whoop")


class WhoopIntegration(DeviceIntegration):
    """Whoop sleep, recovery and workout sync.

    Args:
        settings:    Application settings (credentials, secrets, timezone).
        store:       Shared document store holding the token document.
        http_client: Optional httpx client for OAuth and API calls (for testing).
        retry:       Override for the API retry policy.
        sleep:       Backoff delay function.  Tests pass a no-op.
        clock:       Current-time source for token expiry checks.
    """

    name = "Whoop"
    slug = "whoop"

    def __init__(
        self,
        settings: Settings,
        store: DocumentStore,
        http_client: httpx.AsyncClient | None = None,
        retry: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Clock | None = None,
    ) -> None:
        self.settings = settings
        self.oauth = WhoopOAuth.from_settings(settings, http_client=http_client)
        self.custodian = TokenCustodian(store, self.slug, clock=clock)
        self.tz = resolve_timezone(settings.timezone)
        self._http_client = http_client
        self._retry = retry
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Configuration and OAuth
    # ------------------------------------------------------------------

    def is_configured(self) -> bool:
        return self.oauth.is_configured

    def get_auth_url(self, redirect_uri: str) -> str:
        return self.oauth.get_authorization_url(redirect_uri)

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet:
        tokens = await self.oauth.exchange_code(code, redirect_uri)
        await self.custodian.persist_tokens(tokens)
        return tokens

    async def refresh(self) -> TokenSet:
        """Refresh the stored token pair now, whether or not it is expired."""
        tokens = await self.custodian.get_stored_tokens()
        if tokens is None:
            raise TokensNotFoundError("No whoop tokens found. Complete the OAuth flow first.")
        return await self.custodian.refresh_tokens(self.oauth.refresh_access_token, tokens)

    async def revoke(self) -> None:
        """Revoke the stored refresh token at Whoop and drop the cached copy."""
        tokens = await self.custodian.get_stored_tokens()
        if tokens is None:
            raise TokensNotFoundError("No whoop tokens found.")
        await self.oauth.revoke_token(tokens.refresh_token)
        self.custodian.reset_cache()

    async def get_client(self) -> WhoopClient:
        return await WhoopClient.from_custodian(
            self.custodian,
            self.oauth,
            http_client=self._http_client,
            retry=self._retry,
            sleep=self._sleep,
        )

    async def get_profile(self) -> dict:
        client = await self.get_client()
        return await client.get_user()

    # ------------------------------------------------------------------
    # Backfill
    # ------------------------------------------------------------------

    # Local days can straddle two UTC days, so each fetch queries one day on
    # either side and keeps records whose local date matches.

    async def fetch_sleep(self, day: date) -> SleepData | None:
        client = await self.get_client()
        records = await client.get_sleep(day - timedelta(days=1), day + timedelta(days=1))
        candidates = [
            normalize_sleep(r, self.tz) for r in records if is_scored(r) and not r.get("nap")
        ]
        candidates = [s for s in candidates if s.date == day]
        if not candidates:
            return None
        return max(candidates, key=lambda s: s.duration_minutes)

    async def fetch_recovery(self, day: date) -> RecoveryData | None:
        client = await self.get_client()
        records = await client.get_recovery(day - timedelta(days=1), day + timedelta(days=1))
        candidates = [normalize_recovery(r, self.tz) for r in records if is_scored(r)]
        candidates = [r for r in candidates if r.date == day]
        if not candidates:
            return None
        return max(candidates, key=lambda r: str(r.raw.get("created_at", "")))

    async def fetch_workouts(self, day: date) -> list[WorkoutData]:
        client = await self.get_client()
        records = await client.get_workouts(day - timedelta(days=1), day + timedelta(days=1))
        workouts: dict[str, WorkoutData] = {}
        for record in records:
            if not is_scored(record):
                continue
            workout = normalize_workout(record, self.tz)
            if workout.date == day:
                workouts[workout.dedup_key] = workout
        return list(workouts.values())

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_webhook(self, request: WebhookRequest) -> bool:
        return verify_whoop_webhook(
            request,
            webhook_secret=self.settings.whoop_webhook_secret,
            expected_user_id=self.settings.whoop_user_id,
        )

    async def parse_webhook(self, payload: Any) -> WebhookEvent | None:
        client = await self.get_client()
        return await parse_whoop_webhook(payload, client, self.tz)
