"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

import hmac
from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.config import Settings, get_settings
from src.integrations.registry import IntegrationRegistry
from src.integrations.storage import BiometricStorage
from src.integrations.sync import Notifier


def get_registry(request: Request) -> IntegrationRegistry:
    """The registry built in the app lifespan."""
    return request.app.state.registry


def get_storage(request: Request) -> BiometricStorage:
    return BiometricStorage(request.app.state.store)


def get_notifier(request: Request) -> Notifier | None:
    return getattr(request.app.state, "notifier", None)


async def require_cron_secret(
    request: Request,
    settings: Annotated[Settings, Depends(get_settings)],
) -> None:
    """Enforce ``Authorization: Bearer <CRON_SECRET>`` when a secret is configured."""
    if not settings.cron_secret:
        return
    expected = f"Bearer {settings.cron_secret}"
    provided = request.headers.get("Authorization", "")
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Unauthorized")


# Annotated shortcuts for route signatures
AppSettings = Annotated[Settings, Depends(get_settings)]
Registry = Annotated[IntegrationRegistry, Depends(get_registry)]
Storage = Annotated[BiometricStorage, Depends(get_storage)]
EventNotifier = Annotated[Notifier | None, Depends(get_notifier)]
CronAuth = Depends(require_cron_secret)
