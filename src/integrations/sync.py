"""Backfill, token refresh, and webhook processing across integrations.

These functions are what the HTTP endpoints dispatch to.  Each one isolates
integrations from each other: one vendor failing is reported in its own
result entry and never aborts the rest.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import date
from typing import Any, Awaitable, Callable

from src.integrations.base import DeviceIntegration, WebhookEvent
from src.integrations.errors import IntegrationError, StorageError, TokensNotFoundError
from src.integrations.registry import IntegrationRegistry
from src.integrations.storage import BiometricStorage

logger = logging.getLogger("fitsync.sync")

Notifier = Callable[[WebhookEvent], Awaitable[None]]


@dataclass
class IntegrationSyncResult:
    """Outcome of one integration's part of a sync or refresh run.

    Attributes:
        integration: Integration slug.
        success:     False if anything raised for this integration.
        data:        Summary of what was fetched/stored on success.
        error:       Error message on failure.
    """

    integration: str
    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


# ---------------------------------------------------------------------------
# Manual / cron backfill
# ---------------------------------------------------------------------------


async def sync_integration(
    integration: DeviceIntegration,
    storage: BiometricStorage,
    day: date,
) -> IntegrationSyncResult:
    """Fetch and store one day of data for one integration.  Never raises."""
    try:
        sleep = await integration.fetch_sleep(day)
        recovery = await integration.fetch_recovery(day)
        workouts = await integration.fetch_workouts(day)
        stored = await storage.store_day(
            integration.slug,
            day,
            sleep=sleep,
            recovery=recovery,
            workouts=workouts,
        )
    except Exception as exc:
        logger.exception("Sync failed for %s on %s", integration.slug, day)
        return IntegrationSyncResult(integration=integration.slug, success=False, error=str(exc))

    logger.info(
        "Synced %s for %s: sleep=%s recovery=%s workouts=%d",
        integration.slug,
        day,
        sleep is not None,
        recovery is not None,
        len(workouts),
    )
    return IntegrationSyncResult(
        integration=integration.slug,
        success=True,
        data={
            "date": day.isoformat(),
            "sleep": sleep is not None,
            "recovery": recovery is not None,
            "workouts": len(workouts),
            "stored": stored,
        },
    )


async def sync_all(
    registry: IntegrationRegistry,
    storage: BiometricStorage,
    day: date,
) -> list[IntegrationSyncResult]:
    """Backfill ``day`` for every configured integration."""
    integrations = registry.configured()
    if not integrations:
        logger.info("No configured integrations to sync")
        return []
    return list(
        await asyncio.gather(*(sync_integration(i, storage, day) for i in integrations))
    )


# ---------------------------------------------------------------------------
# Proactive token refresh
# ---------------------------------------------------------------------------


async def refresh_integration(integration: DeviceIntegration) -> IntegrationSyncResult:
    """Refresh one integration's tokens so they never lapse between uses."""
    try:
        tokens = await integration.refresh()
    except TokensNotFoundError as exc:
        logger.warning("Skipping %s token refresh: %s", integration.slug, exc)
        return IntegrationSyncResult(integration=integration.slug, success=False, error=str(exc))
    except IntegrationError as exc:
        logger.error("Token refresh failed for %s: %s", integration.slug, exc)
        return IntegrationSyncResult(integration=integration.slug, success=False, error=str(exc))

    expires = tokens.expires_at.isoformat() if tokens.expires_at else None
    logger.info("Refreshed %s tokens (expires %s)", integration.slug, expires)
    return IntegrationSyncResult(
        integration=integration.slug,
        success=True,
        data={"expires_at": expires},
    )


async def refresh_all(registry: IntegrationRegistry) -> list[IntegrationSyncResult]:
    return [await refresh_integration(i) for i in registry.configured()]


# ---------------------------------------------------------------------------
# Webhook processing
# ---------------------------------------------------------------------------


async def process_webhook(
    integration: DeviceIntegration,
    payload: Any,
    storage: BiometricStorage,
    notifier: Notifier | None = None,
) -> WebhookEvent | None:
    """Resolve, normalize, store and announce one verified webhook.

    Returns the stored event, or None when the payload was not actionable.
    Re-delivery of the same payload is safe: stored records are replaced,
    not appended.

    Raises:
        IntegrationError, StorageError: Resolution or storage failed.
    """
    event = await integration.parse_webhook(payload)
    if event is None:
        logger.info("%s webhook produced no event", integration.slug)
        return None

    if not await storage.store_event(event):
        raise StorageError(
            f"Could not store {integration.slug} {event.kind} event for {event.data.date}: "
            "every write lost a revision race"
        )
    logger.info("Stored %s %s event for %s", integration.slug, event.kind, event.data.date)

    if notifier is not None:
        try:
            await notifier(event)
        except Exception:
            logger.exception("Notifier failed for %s %s event", integration.slug, event.kind)
    return event


async def process_webhook_in_background(
    integration: DeviceIntegration,
    payload: Any,
    storage: BiometricStorage,
    notifier: Notifier | None = None,
) -> None:
    """``process_webhook`` for use after the response has been sent.

    Nobody is left to receive an exception at that point, so failures are
    logged here.
    """
    try:
        await process_webhook(integration, payload, storage, notifier)
    except Exception:
        logger.exception("Background processing of %s webhook failed", integration.slug)
