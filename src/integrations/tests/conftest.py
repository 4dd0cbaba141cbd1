"""Shared fixtures and a fake Whoop API for integration tests."""

from __future__ import annotations

import copy
import json
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo

import httpx
import pytest

from src.config import Settings
from src.integrations.base import (
    DeviceIntegration,
    RecoveryData,
    SleepData,
    TokenSet,
    WebhookEvent,
    WebhookRequest,
    WorkoutData,
)
from src.integrations.config_loader import IntegrationConfig, RetryPolicy, load_integration_config
from src.integrations.tokens import tokens_path
from src.integrations.whoop.integration import WhoopIntegration
from src.services.documents import InMemoryDocumentStore, WriteConflict

# Fixtures directory
FIXTURES_DIR = Path(__file__).parent / "fixtures"

TEST_DATE = date(2026, 1, 26)
TEST_NOW = datetime(2026, 1, 27, 12, 0, tzinfo=timezone.utc)
TEST_TZ = ZoneInfo("America/New_York")
WEBHOOK_SECRET = "test_webhook_secret"
WHOOP_USER_ID = 10129


def fixed_clock() -> datetime:
    return TEST_NOW


async def no_sleep(_seconds: float) -> None:
    return None


def token_document(
    access: str = "access-initial",
    refresh: str = "refresh-initial",
    expires_at: datetime | None = TEST_NOW + timedelta(hours=1),
) -> str:
    return TokenSet(access, refresh, expires_at).to_document()


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def integration_config() -> IntegrationConfig:
    """Load the real integration config for tests."""
    return load_integration_config()


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(max_retries=4, initial_backoff_seconds=1.0)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        timezone="America/New_York",
        whoop_client_id="test_client_id",
        whoop_client_secret="test_client_secret",
        whoop_webhook_secret="",
        whoop_user_id="",
        cron_secret="",
        webhook_processing="background",
        document_store="memory",
    )


# ---------------------------------------------------------------------------
# JSON fixture loaders
# ---------------------------------------------------------------------------


@pytest.fixture
def whoop_sleep_raw() -> dict:
    return json.loads((FIXTURES_DIR / "whoop_sleep.json").read_text())


@pytest.fixture
def whoop_recovery_raw() -> dict:
    return json.loads((FIXTURES_DIR / "whoop_recovery.json").read_text())


@pytest.fixture
def whoop_workout_raw() -> dict:
    return json.loads((FIXTURES_DIR / "whoop_workout.json").read_text())


# ---------------------------------------------------------------------------
# Fake Whoop API
# ---------------------------------------------------------------------------


class FakeWhoopAPI:
    """In-process stand-in for the Whoop OAuth and REST endpoints.

    Served through ``httpx.MockTransport``.  Records are looked up by id, and
    collection endpoints return everything regardless of the date range.
    ``failures`` maps a request path to a queue of status codes returned
    before the real response.
    """

    def __init__(self) -> None:
        self.sleeps: dict[str, dict] = {}
        self.workouts: dict[str, dict] = {}
        self.recoveries: list[dict] = []
        self.profile: dict = {"user_id": WHOOP_USER_ID, "first_name": "Test"}
        self.failures: dict[str, list[int]] = {}
        self.refresh_fails = False
        self.refresh_count = 0
        self.requests: list[httpx.Request] = []

    def add_sleep(self, record: dict) -> None:
        self.sleeps[str(record["id"])] = copy.deepcopy(record)

    def add_workout(self, record: dict) -> None:
        self.workouts[str(record["id"])] = copy.deepcopy(record)

    def add_recovery(self, record: dict) -> None:
        self.recoveries.append(copy.deepcopy(record))

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        queued = self.failures.get(path)
        if queued:
            return httpx.Response(queued.pop(0), json={"error": "injected"})

        if path == "/oauth/oauth2/token":
            return self._token(request)
        if path == "/oauth/oauth2/revoke":
            return httpx.Response(204)

        prefix = "/developer/v2"
        if not path.startswith(prefix):
            return httpx.Response(404)
        resource = path[len(prefix) :]

        if resource == "/user/profile/basic":
            return httpx.Response(200, json=self.profile)
        if resource == "/activity/sleep":
            return httpx.Response(200, json={"records": list(self.sleeps.values())})
        if resource.startswith("/activity/sleep/"):
            return self._by_id(self.sleeps, resource.rsplit("/", 1)[-1])
        if resource == "/activity/workout":
            return httpx.Response(200, json={"records": list(self.workouts.values())})
        if resource.startswith("/activity/workout/"):
            return self._by_id(self.workouts, resource.rsplit("/", 1)[-1])
        if resource == "/recovery":
            return httpx.Response(200, json={"records": self.recoveries})
        if resource == "/cycle":
            return httpx.Response(200, json={"records": []})
        return httpx.Response(404)

    def _token(self, request: httpx.Request) -> httpx.Response:
        if self.refresh_fails:
            return httpx.Response(400, json={"error": "invalid_grant"})
        self.refresh_count += 1
        return httpx.Response(
            200,
            json={
                "access_token": f"access-{self.refresh_count}",
                "refresh_token": f"refresh-{self.refresh_count}",
                "expires_in": 3600,
                "token_type": "bearer",
            },
        )

    @staticmethod
    def _by_id(records: dict[str, dict], record_id: str) -> httpx.Response:
        record = records.get(record_id)
        if record is None:
            return httpx.Response(404, json={"error": "not found"})
        return httpx.Response(200, json=record)


@pytest.fixture
def whoop_api() -> FakeWhoopAPI:
    return FakeWhoopAPI()


@pytest.fixture
def http_client(whoop_api: FakeWhoopAPI) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(whoop_api.handler))


# ---------------------------------------------------------------------------
# Store and integration fixtures
# ---------------------------------------------------------------------------


class AlwaysConflictStore(InMemoryDocumentStore):
    """Every write loses the revision race."""

    def __init__(self) -> None:
        super().__init__()
        self.attempts = 0

    async def write(self, path, content, revision, message=""):
        self.attempts += 1
        return WriteConflict(path=path, expected_revision=revision)


@pytest.fixture
def memory_store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def seeded_store() -> InMemoryDocumentStore:
    """Store holding a Whoop token document valid for an hour past TEST_NOW."""
    return InMemoryDocumentStore({tokens_path("whoop"): token_document()})


@pytest.fixture
def whoop_integration(
    test_settings: Settings,
    seeded_store: InMemoryDocumentStore,
    http_client: httpx.AsyncClient,
    fast_retry: RetryPolicy,
) -> WhoopIntegration:
    return WhoopIntegration(
        test_settings,
        seeded_store,
        http_client=http_client,
        retry=fast_retry,
        sleep=no_sleep,
        clock=fixed_clock,
    )


def webhook_payload(kind: str, resource_id: Any, user_id: Any = WHOOP_USER_ID) -> dict:
    return {
        "type": kind,
        "user_id": user_id,
        "id": resource_id,
        "trace_id": "d3c1e4b2-5f6a-4b7c-8d9e-0f1a2b3c4d5e",
    }


# ---------------------------------------------------------------------------
# Stub integration
# ---------------------------------------------------------------------------


class StubIntegration(DeviceIntegration):
    """Minimal integration with canned answers."""

    def __init__(self, slug: str, configured: bool = True) -> None:
        self.slug = slug
        self.name = slug.title()
        self.configured = configured

    def is_configured(self) -> bool:
        return self.configured

    def get_auth_url(self, redirect_uri: str) -> str:
        return f"https://{self.slug}.example.com/auth?redirect_uri={redirect_uri}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet:
        return TokenSet(f"access-{code}", f"refresh-{code}")

    async def refresh(self) -> TokenSet:
        return TokenSet("access", "refresh")

    async def fetch_sleep(self, day: date) -> SleepData | None:
        return None

    async def fetch_recovery(self, day: date) -> RecoveryData | None:
        return None

    async def fetch_workouts(self, day: date) -> list[WorkoutData]:
        return []

    def verify_webhook(self, request: WebhookRequest) -> bool:
        return True

    async def parse_webhook(self, payload: Any) -> WebhookEvent | None:
        return None

