"""Tests for backfill, token refresh and webhook processing."""

from __future__ import annotations

from datetime import date
from typing import Any
from unittest.mock import AsyncMock

import pytest

from src.integrations.base import (
    SleepData,
    SleepEvent,
    TokenSet,
    WebhookEvent,
    WorkoutData,
)
from src.integrations.config_loader import IntegrationMetadata
from src.integrations.errors import (
    IntegrationUnavailableError,
    StorageError,
    TokensNotFoundError,
    WhoopAPIError,
)
from src.integrations.registry import IntegrationRegistry
from src.integrations.storage import BiometricStorage
from src.integrations.sync import (
    process_webhook,
    process_webhook_in_background,
    refresh_all,
    sync_all,
)
from src.integrations.tests.conftest import TEST_DATE, TEST_NOW, AlwaysConflictStore, StubIntegration
from src.services.documents import InMemoryDocumentStore


def _sleep(source: str) -> SleepData:
    return SleepData(
        source=source,
        date=TEST_DATE,
        start_time=None,
        end_time=None,
        duration_minutes=420,
        score=88.0,
        record_id=f"{source}-sleep",
    )


class HealthyIntegration(StubIntegration):
    async def fetch_sleep(self, day: date) -> SleepData | None:
        return _sleep(self.slug)

    async def fetch_workouts(self, day: date) -> list[WorkoutData]:
        return [WorkoutData(self.slug, day, "Running", 30, record_id="w1")]

    async def refresh(self) -> TokenSet:
        return TokenSet("access", "refresh", TEST_NOW)

    async def parse_webhook(self, payload: Any) -> WebhookEvent | None:
        if payload.get("type") == "sleep.updated":
            return SleepEvent(_sleep(self.slug))
        return None


class BrokenIntegration(StubIntegration):
    def __init__(self, slug: str, error: Exception) -> None:
        super().__init__(slug)
        self.error = error

    async def fetch_sleep(self, day: date) -> SleepData | None:
        raise self.error

    async def refresh(self) -> TokenSet:
        raise self.error

    async def parse_webhook(self, payload: Any) -> WebhookEvent | None:
        raise self.error


def _registry(*integrations: StubIntegration) -> IntegrationRegistry:
    registry = IntegrationRegistry(
        {i.slug: IntegrationMetadata(slug=i.slug, name=i.name) for i in integrations}
    )
    for integration in integrations:
        registry.register(integration)
    return registry


class TestSyncAll:
    @pytest.mark.asyncio
    async def test_one_failure_does_not_abort_others(self) -> None:
        store = InMemoryDocumentStore()
        registry = _registry(
            HealthyIntegration("whoop"),
            BrokenIntegration("oura", WhoopAPIError(500, "boom")),
        )

        results = {r.integration: r for r in await sync_all(registry, BiometricStorage(store), TEST_DATE)}

        assert results["whoop"].success
        assert results["whoop"].data == {
            "date": "2026-01-26",
            "sleep": True,
            "recovery": False,
            "workouts": 1,
            "stored": True,
        }
        assert not results["oura"].success
        assert "500" in results["oura"].error
        assert "weeks/2026-W05/2026-01-26.md" in store.snapshot()

    @pytest.mark.asyncio
    async def test_unconfigured_integrations_are_skipped(self) -> None:
        registry = _registry(HealthyIntegration("whoop", configured=False))
        assert await sync_all(registry, BiometricStorage(InMemoryDocumentStore()), TEST_DATE) == []

    @pytest.mark.asyncio
    async def test_result_dict_drops_empty_fields(self) -> None:
        registry = _registry(BrokenIntegration("whoop", RuntimeError("nope")))
        [result] = await sync_all(registry, BiometricStorage(InMemoryDocumentStore()), TEST_DATE)
        assert result.to_dict() == {"integration": "whoop", "success": False, "error": "nope"}


class TestRefreshAll:
    @pytest.mark.asyncio
    async def test_reports_each_integration(self) -> None:
        registry = _registry(
            HealthyIntegration("whoop"),
            BrokenIntegration("oura", TokensNotFoundError("No oura tokens found.")),
            BrokenIntegration("garmin", IntegrationUnavailableError("refresh failed")),
        )

        results = {r.integration: r for r in await refresh_all(registry)}

        assert results["whoop"].success
        assert results["whoop"].data == {"expires_at": TEST_NOW.isoformat()}
        assert results["oura"].error == "No oura tokens found."
        assert not results["garmin"].success


class TestProcessWebhook:
    @pytest.mark.asyncio
    async def test_event_is_stored_and_announced(self) -> None:
        store = InMemoryDocumentStore()
        notifier = AsyncMock()

        event = await process_webhook(
            HealthyIntegration("whoop"), {"type": "sleep.updated"}, BiometricStorage(store), notifier
        )

        assert isinstance(event, SleepEvent)
        notifier.assert_awaited_once_with(event)
        assert "weeks/2026-W05/2026-01-26.md" in store.snapshot()

    @pytest.mark.asyncio
    async def test_redelivery_is_idempotent(self) -> None:
        store = InMemoryDocumentStore()
        storage = BiometricStorage(store)
        integration = HealthyIntegration("whoop")

        await process_webhook(integration, {"type": "sleep.updated"}, storage)
        first = store.snapshot()
        await process_webhook(integration, {"type": "sleep.updated"}, storage)

        assert store.snapshot() == first
        assert store.write_count == 1

    @pytest.mark.asyncio
    async def test_nothing_actionable(self) -> None:
        store = InMemoryDocumentStore()
        event = await process_webhook(
            HealthyIntegration("whoop"), {"type": "sleep.deleted"}, BiometricStorage(store)
        )
        assert event is None
        assert store.snapshot() == {}

    @pytest.mark.asyncio
    async def test_notifier_failure_is_contained(self) -> None:
        notifier = AsyncMock(side_effect=RuntimeError("chat service down"))

        event = await process_webhook(
            HealthyIntegration("whoop"),
            {"type": "sleep.updated"},
            BiometricStorage(InMemoryDocumentStore()),
            notifier,
        )
        assert event is not None
        notifier.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_lost_write_is_not_announced(self) -> None:
        store = AlwaysConflictStore()
        notifier = AsyncMock()

        with pytest.raises(StorageError, match="whoop sleep"):
            await process_webhook(
                HealthyIntegration("whoop"),
                {"type": "sleep.updated"},
                BiometricStorage(store, max_write_attempts=3),
                notifier,
            )

        notifier.assert_not_awaited()
        assert store.attempts == 3
        assert store.snapshot() == {}

    @pytest.mark.asyncio
    async def test_lost_write_in_background_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        notifier = AsyncMock()

        await process_webhook_in_background(
            HealthyIntegration("whoop"),
            {"type": "sleep.updated"},
            BiometricStorage(AlwaysConflictStore(), max_write_attempts=2),
            notifier,
        )

        notifier.assert_not_awaited()
        assert "Background processing of whoop webhook failed" in caplog.text

    @pytest.mark.asyncio
    async def test_resolution_failure_propagates(self) -> None:
        with pytest.raises(WhoopAPIError):
            await process_webhook(
                BrokenIntegration("whoop", WhoopAPIError(503, "down")),
                {"type": "sleep.updated"},
                BiometricStorage(InMemoryDocumentStore()),
            )

    @pytest.mark.asyncio
    async def test_background_processing_logs_failures(self, caplog: pytest.LogCaptureFixture) -> None:
        await process_webhook_in_background(
            BrokenIntegration("whoop", WhoopAPIError(503, "down")),
            {"type": "sleep.updated"},
            BiometricStorage(InMemoryDocumentStore()),
        )
        assert "Background processing of whoop webhook failed" in caplog.text
