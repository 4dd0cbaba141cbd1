"""Pydantic schemas for the integration endpoints."""

from __future__ import annotations

import datetime as dt
from typing import Any, Literal

from pydantic import Field

from src.models.base import FitSyncBase


class IntegrationInfo(FitSyncBase):
    slug: str
    name: str
    description: str = ""
    available: bool = False
    configured: bool = False
    docs_url: str | None = None
    scopes: list[str] = Field(default_factory=list)


class IntegrationList(FitSyncBase):
    integrations: list[IntegrationInfo]


class WebhookResponse(FitSyncBase):
    """Webhook acknowledgement.

    ``status`` is "accepted" when processing continues in the background,
    "processed" when an event was stored, and "ignored" when the payload was
    valid but not actionable.
    """

    ok: bool = True
    status: Literal["accepted", "processed", "ignored"]
    type: str | None = None
    date: dt.date | None = None


class IntegrationResult(FitSyncBase):
    integration: str
    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None


class SyncResponse(FitSyncBase):
    ok: bool = True
    date: dt.date
    results: list[IntegrationResult]


class RefreshResponse(FitSyncBase):
    ok: bool = True
    results: list[IntegrationResult]


class ConnectRequest(FitSyncBase):
    code: str = Field(min_length=1)
    redirect_uri: str = Field(min_length=1)


class ConnectResponse(FitSyncBase):
    ok: bool = True
    integration: str
    expires_at: dt.datetime | None = None
