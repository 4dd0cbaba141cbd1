"""Device integration endpoints: webhooks, OAuth callback, sync and refresh.

Routes:
    GET  /api/integrations                    catalog with configured flags
    POST /api/integrations/sync               backfill one date (bearer CRON_SECRET)
    POST /api/integrations/refresh-tokens     proactive token refresh (bearer CRON_SECRET)
    POST /api/integrations/{device}/webhook   vendor push notifications
    GET  /api/integrations/{device}/callback  OAuth redirect target
    GET  /api/integrations/{device}/authorize redirect to the vendor consent page
    POST /api/integrations/{device}/connect   exchange a copied code for tokens (bearer CRON_SECRET)
"""

from __future__ import annotations

import html
import logging
from datetime import date, datetime, timezone
from typing import Annotated, Any

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request
from fastapi.responses import HTMLResponse, RedirectResponse

from src.dependencies import AppSettings, CronAuth, EventNotifier, Registry, Storage
from src.integrations.base import WebhookRequest, local_date, resolve_timezone
from src.integrations.errors import IntegrationError, IntegrationNotConfiguredError
from src.integrations.sync import (
    process_webhook,
    process_webhook_in_background,
    refresh_all,
    sync_all,
)
from src.models.integrations import (
    ConnectRequest,
    ConnectResponse,
    IntegrationInfo,
    IntegrationList,
    RefreshResponse,
    SyncResponse,
    WebhookResponse,
)

router = APIRouter(prefix="/api/integrations", tags=["integrations"])
logger = logging.getLogger("fitsync.integrations.routes")

_PAGE_STYLE = "font-family: system-ui; padding: 40px; max-width: 600px; margin: 0 auto;"
_CODE_BOX_STYLE = "background: #f0f0f0; padding: 20px; border-radius: 8px; margin: 20px 0;"


# ---------- Catalog ----------


@router.get("", response_model=IntegrationList)
async def list_integrations(registry: Registry) -> Any:
    integrations = []
    for meta in registry.metadata():
        integration = registry.get(meta.slug)
        integrations.append(
            IntegrationInfo(
                slug=meta.slug,
                name=meta.name,
                description=meta.description,
                available=meta.available,
                configured=bool(integration and integration.is_configured()),
                docs_url=meta.docs_url,
                scopes=meta.scopes,
            )
        )
    return IntegrationList(integrations=integrations)


# ---------- Sync / refresh (cron) ----------


@router.post("/sync", response_model=SyncResponse, dependencies=[CronAuth])
async def sync_integrations(
    registry: Registry,
    storage: Storage,
    settings: AppSettings,
    day: Annotated[date | None, Query(alias="date")] = None,
) -> Any:
    """Pull sleep, recovery and workouts for one date from every configured integration.

    Defaults to today in the configured timezone.  A failing integration is
    reported in its own result entry; the others still run.
    """
    if day is None:
        day = local_date(datetime.now(timezone.utc), resolve_timezone(settings.timezone))
    logger.info("Syncing integrations for %s", day)

    results = await sync_all(registry, storage, day)
    return SyncResponse(date=day, results=[r.to_dict() for r in results])


@router.post("/refresh-tokens", response_model=RefreshResponse, dependencies=[CronAuth])
async def refresh_integration_tokens(registry: Registry) -> Any:
    """Refresh every configured integration's tokens ahead of expiry."""
    results = await refresh_all(registry)
    return RefreshResponse(
        ok=all(r.success for r in results),
        results=[r.to_dict() for r in results],
    )


# ---------- Webhooks ----------


@router.post("/{device}/webhook", response_model=WebhookResponse, response_model_exclude_none=True)
async def integration_webhook(
    device: str,
    request: Request,
    background_tasks: BackgroundTasks,
    registry: Registry,
    storage: Storage,
    settings: AppSettings,
    notifier: EventNotifier,
) -> Any:
    """Receive a vendor push notification.

    The payload is verified before anything else.  By default the response
    is sent right away and resolution/storage continue in the background.
    With ``WEBHOOK_PROCESSING=sync`` the outcome is returned instead.
    """
    integration = registry.get(device)
    if integration is None:
        logger.info("Webhook for unknown integration: %s", device)
        raise HTTPException(status_code=404, detail="Unknown integration")

    webhook = WebhookRequest(body=await request.body(), headers=dict(request.headers))
    if not integration.verify_webhook(webhook):
        logger.info("Rejected webhook for %s", device)
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    payload = webhook.json()

    if settings.webhook_fast_ack:
        background_tasks.add_task(
            process_webhook_in_background, integration, payload, storage, notifier
        )
        return WebhookResponse(status="accepted")

    try:
        event = await process_webhook(integration, payload, storage, notifier)
    except Exception as exc:
        logger.exception("Error processing %s webhook", device)
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    if event is None:
        return WebhookResponse(status="ignored")
    return WebhookResponse(status="processed", type=event.kind, date=event.data.date)


# ---------- OAuth callback ----------


def _page(title: str, body: str) -> str:
    return (
        "<!DOCTYPE html>\n"
        f"<html>\n<head><title>{title}</title></head>\n"
        f'<body style="{_PAGE_STYLE}">\n{body}\n</body>\n</html>\n'
    )


@router.get("/{device}/callback", response_class=HTMLResponse)
async def integration_oauth_callback(
    device: str,
    registry: Registry,
    code: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
) -> HTMLResponse:
    """Show the authorization code (or error) for manual copy into setup.

    Every value taken from the query string is HTML-escaped before it is
    placed in the page.
    """
    if registry.get(device) is None:
        raise HTTPException(status_code=404, detail="Unknown integration")
    logger.info("OAuth callback for %s", device)

    if error:
        details = (
            html.escape(error_description) if error_description else "No additional details available."
        )
        body = (
            "<h1>Authorization Failed</h1>\n"
            f"<p><strong>Error:</strong> {html.escape(error)}</p>\n"
            f"<p>{details}</p>\n"
            "<p>Please try the authorization process again.</p>"
        )
        return HTMLResponse(_page("Authorization Failed", body), status_code=400)

    if not code:
        body = (
            "<h1>Missing Authorization Code</h1>\n"
            "<p>No authorization code was received. "
            "Please try the authorization process again.</p>"
        )
        return HTMLResponse(_page("Missing Authorization Code", body), status_code=400)

    body = (
        "<h1>Authorization Successful!</h1>\n"
        "<p>Copy this authorization code and paste it into the setup wizard:</p>\n"
        f'<div style="{_CODE_BOX_STYLE}">'
        f'<code style="font-size: 14px; word-break: break-all;">{html.escape(code)}</code>'
        "</div>\n"
        "<p>You can close this window after copying the code.</p>"
    )
    return HTMLResponse(_page("Authorization Successful", body))


# ---------- OAuth setup ----------


@router.get("/{device}/authorize")
async def integration_authorize(
    device: str,
    registry: Registry,
    redirect_uri: Annotated[str, Query(min_length=1)],
) -> RedirectResponse:
    """Redirect to the vendor's consent page."""
    integration = registry.get(device)
    if integration is None:
        raise HTTPException(status_code=404, detail="Unknown integration")
    try:
        url = integration.get_auth_url(redirect_uri)
    except IntegrationNotConfiguredError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return RedirectResponse(url, status_code=307)


@router.post("/{device}/connect", response_model=ConnectResponse, dependencies=[CronAuth])
async def integration_connect(device: str, body: ConnectRequest, registry: Registry) -> Any:
    """Exchange an authorization code copied from the callback page and store the tokens."""
    integration = registry.get(device)
    if integration is None:
        raise HTTPException(status_code=404, detail="Unknown integration")
    try:
        tokens = await integration.exchange_code(body.code, body.redirect_uri)
    except IntegrationNotConfiguredError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except IntegrationError as exc:
        logger.warning("Code exchange failed for %s: %s", device, exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    logger.info("Connected %s", device)
    return ConnectResponse(integration=device, expires_at=tokens.expires_at)
