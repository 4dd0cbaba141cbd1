"""Tests for the Whoop integration: OAuth flow and daily backfill."""

from __future__ import annotations

import json
from datetime import date, timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from src.config import Settings
from src.integrations.base import TokenSet
from src.integrations.errors import (
    IntegrationNotConfiguredError,
    IntegrationUnavailableError,
    TokensNotFoundError,
    WhoopAPIError,
)
from src.integrations.tests.conftest import (
    TEST_DATE,
    TEST_NOW,
    FakeWhoopAPI,
    fixed_clock,
    no_sleep,
    token_document,
)
from src.integrations.tokens import TokenCustodian, tokens_path
from src.integrations.whoop.oauth import WhoopOAuth
from src.integrations.whoop.integration import WhoopIntegration
from src.services.documents import InMemoryDocumentStore

TOKENS_PATH = tokens_path("whoop")


def _stored_tokens(store: InMemoryDocumentStore) -> TokenSet | None:
    return TokenSet.from_document(store.snapshot()[TOKENS_PATH])


class TestOAuth:
    def test_authorization_url(self, whoop_integration: WhoopIntegration) -> None:
        url = whoop_integration.get_auth_url("https://example.com/callback")
        parsed = urlparse(url)
        query = parse_qs(parsed.query)

        assert parsed.netloc == "api.prod.whoop.com"
        assert query["client_id"] == ["test_client_id"]
        assert query["redirect_uri"] == ["https://example.com/callback"]
        assert query["response_type"] == ["code"]
        assert "offline" in query["scope"][0].split()
        assert len(query["state"][0]) >= 8

    def test_unconfigured_integration(self, memory_store: InMemoryDocumentStore) -> None:
        integration = WhoopIntegration(Settings(_env_file=None, whoop_client_id=""), memory_store)
        assert not integration.is_configured()
        with pytest.raises(IntegrationNotConfiguredError):
            integration.get_auth_url("https://example.com/callback")

    @pytest.mark.asyncio
    async def test_exchange_code_persists_tokens(
        self,
        whoop_integration: WhoopIntegration,
        whoop_api: FakeWhoopAPI,
        seeded_store: InMemoryDocumentStore,
    ) -> None:
        tokens = await whoop_integration.exchange_code("auth-code", "https://example.com/callback")

        assert tokens.access_token == "access-1"
        assert _stored_tokens(seeded_store) == tokens
        sent = json.loads(whoop_api.requests[0].content)
        assert sent["grant_type"] == "authorization_code"
        assert sent["code"] == "auth-code"

    @pytest.mark.asyncio
    async def test_refresh_rotates_stored_tokens(
        self,
        whoop_integration: WhoopIntegration,
        whoop_api: FakeWhoopAPI,
        seeded_store: InMemoryDocumentStore,
    ) -> None:
        tokens = await whoop_integration.refresh()

        assert tokens.refresh_token == "refresh-1"
        assert _stored_tokens(seeded_store).refresh_token == "refresh-1"
        form = parse_qs(whoop_api.requests[0].content.decode())
        assert form["grant_type"] == ["refresh_token"]
        assert form["refresh_token"] == ["refresh-initial"]
        assert form["scope"] == ["offline"]

    @pytest.mark.asyncio
    async def test_refresh_without_tokens(
        self, test_settings: Settings, memory_store: InMemoryDocumentStore
    ) -> None:
        integration = WhoopIntegration(test_settings, memory_store, clock=fixed_clock)
        with pytest.raises(TokensNotFoundError):
            await integration.refresh()

    @pytest.mark.asyncio
    async def test_token_endpoint_error(
        self, whoop_integration: WhoopIntegration, whoop_api: FakeWhoopAPI
    ) -> None:
        whoop_api.failures["/oauth/oauth2/token"] = [400]
        with pytest.raises(WhoopAPIError):
            await whoop_integration.exchange_code("bad-code", "https://example.com/callback")

    @pytest.mark.asyncio
    async def test_revoke_clears_cache(
        self, whoop_integration: WhoopIntegration, whoop_api: FakeWhoopAPI
    ) -> None:
        await whoop_integration.custodian.get_stored_tokens()
        await whoop_integration.revoke()

        assert whoop_api.paths() == ["/oauth/oauth2/revoke"]
        assert whoop_integration.custodian.cached_tokens is None

    @pytest.mark.asyncio
    async def test_profile(self, whoop_integration: WhoopIntegration) -> None:
        profile = await whoop_integration.get_profile()
        assert profile["user_id"] == 10129


def _oauth(response: httpx.Response) -> WhoopOAuth:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: response))
    return WhoopOAuth("id", "secret", http_client=client)


class TestMalformedTokenResponses:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(200, text="<html>maintenance</html>"),
            httpx.Response(200, json=["access", "refresh"]),
            httpx.Response(200, json={"access_token": "a", "refresh_token": "r", "expires_in": "soon"}),
            httpx.Response(200, json={"access_token": "a", "refresh_token": "r", "expires_in": [3600]}),
        ],
    )
    async def test_raise_whoop_api_error(self, response: httpx.Response) -> None:
        with pytest.raises(WhoopAPIError):
            await _oauth(response).refresh_access_token("refresh-initial")

    @pytest.mark.asyncio
    async def test_numeric_string_expiry_is_accepted(self) -> None:
        response = httpx.Response(
            200, json={"access_token": "a", "refresh_token": "r", "expires_in": "3600"}
        )
        tokens = await _oauth(response).refresh_access_token("refresh-initial")
        assert tokens.expires_at is not None

    @pytest.mark.asyncio
    async def test_custodian_falls_back_on_garbled_refresh(self) -> None:
        stale = token_document(expires_at=TEST_NOW - timedelta(minutes=5))
        store = InMemoryDocumentStore({TOKENS_PATH: stale})
        custodian = TokenCustodian(store, "whoop", clock=fixed_clock)
        oauth = _oauth(httpx.Response(200, text="not json"))

        with pytest.raises(IntegrationUnavailableError):
            await custodian.get_valid_tokens(oauth.refresh_access_token)

        assert store.snapshot()[TOKENS_PATH] == stale


class TestBackfill:
    @pytest.mark.asyncio
    async def test_fetch_sleep_picks_main_scored_sleep(
        self,
        whoop_integration: WhoopIntegration,
        whoop_api: FakeWhoopAPI,
        whoop_sleep_raw: dict,
    ) -> None:
        whoop_api.add_sleep(whoop_sleep_raw)
        whoop_api.add_sleep(
            dict(
                whoop_sleep_raw,
                id="nap",
                nap=True,
                start="2026-01-26T18:00:00.000Z",
                end="2026-01-27T02:00:00.000Z",
            )
        )
        whoop_api.add_sleep(dict(whoop_sleep_raw, id="pending", score_state="PENDING_SCORE"))
        whoop_api.add_sleep(
            dict(whoop_sleep_raw, id="next-night", start="2026-01-28T03:00:00.000Z", end="2026-01-28T11:00:00.000Z")
        )

        sleep = await whoop_integration.fetch_sleep(TEST_DATE)

        assert sleep is not None
        assert sleep.record_id == whoop_sleep_raw["id"]
        params = whoop_api.requests[0].url.params
        assert params["start"] == "2026-01-25T00:00:00.000Z"
        assert params["end"] == "2026-01-27T23:59:59.999Z"

    @pytest.mark.asyncio
    async def test_fetch_sleep_none_for_empty_day(self, whoop_integration: WhoopIntegration) -> None:
        assert await whoop_integration.fetch_sleep(TEST_DATE) is None

    @pytest.mark.asyncio
    async def test_fetch_recovery_by_local_date(
        self,
        whoop_integration: WhoopIntegration,
        whoop_api: FakeWhoopAPI,
        whoop_recovery_raw: dict,
    ) -> None:
        whoop_api.add_recovery(whoop_recovery_raw)

        recovery = await whoop_integration.fetch_recovery(date(2026, 1, 27))
        assert recovery is not None
        assert recovery.score == 68.0
        assert await whoop_integration.fetch_recovery(TEST_DATE) is None

    @pytest.mark.asyncio
    async def test_fetch_workouts_filters_day_and_score(
        self,
        whoop_integration: WhoopIntegration,
        whoop_api: FakeWhoopAPI,
        whoop_workout_raw: dict,
    ) -> None:
        whoop_api.add_workout(whoop_workout_raw)
        whoop_api.add_workout(dict(whoop_workout_raw, id="unscored", score_state="UNSCORABLE"))
        whoop_api.add_workout(
            dict(whoop_workout_raw, id="tomorrow", start="2026-01-27T15:00:00.000Z", end="2026-01-27T16:00:00.000Z")
        )

        workouts = await whoop_integration.fetch_workouts(TEST_DATE)

        assert [w.record_id for w in workouts] == [whoop_workout_raw["id"]]

    @pytest.mark.asyncio
    async def test_expired_tokens_refresh_before_fetch(
        self,
        test_settings: Settings,
        whoop_api: FakeWhoopAPI,
        http_client: httpx.AsyncClient,
    ) -> None:
        store = InMemoryDocumentStore(
            {TOKENS_PATH: TokenSet("old", "refresh-initial", None).to_document()}
        )
        integration = WhoopIntegration(
            test_settings, store, http_client=http_client, sleep=no_sleep, clock=fixed_clock
        )

        assert await integration.fetch_workouts(TEST_DATE) == []
        assert whoop_api.paths() == ["/oauth/oauth2/token", "/developer/v2/activity/workout"]
        assert whoop_api.requests[1].headers["Authorization"] == "Bearer access-1"
