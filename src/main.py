"""FitSync API: FastAPI application entry point.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from src.config import Settings, get_settings
from src.integrations.config_loader import get_integration_config
from src.integrations.registry import IntegrationRegistry, build_registry
from src.integrations.sync import Notifier
from src.middleware.security import SecurityHeadersMiddleware
from src.routers import health, integrations
from src.services.documents import DocumentStore, InMemoryDocumentStore
from src.services.github import GitHubDocumentStore

# ---------- Logging ----------

logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("fitsync")


def create_store(settings: Settings) -> DocumentStore:
    """Build the document store selected by ``DOCUMENT_STORE``.

    Raises:
        ValueError: Unknown store kind, or GitHub credentials missing.
    """
    kind = settings.document_store.lower()
    if kind == "memory":
        logger.warning("Using in-memory document store; data is lost on restart")
        return InMemoryDocumentStore()
    if kind == "github":
        return GitHubDocumentStore.from_settings(settings)
    raise ValueError(f"Unknown DOCUMENT_STORE {settings.document_store!r} (expected github|memory)")


# ---------- Lifespan ----------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks.

    Anything already placed on ``app.state`` by ``create_app`` is used as-is.
    """
    settings = get_settings()
    logger.info(
        "Starting FitSync API v%s [%s]",
        settings.app_version,
        settings.environment,
    )
    get_integration_config()  # fail fast on a bad tuning file

    if getattr(app.state, "store", None) is None:
        app.state.store = create_store(settings)
    if getattr(app.state, "registry", None) is None:
        app.state.registry = build_registry(settings, app.state.store)

    yield

    await app.state.store.close()
    logger.info("FitSync API shut down")


# ---------- App factory ----------


def create_app(
    store: DocumentStore | None = None,
    registry: IntegrationRegistry | None = None,
    notifier: Notifier | None = None,
) -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="FitSync API",
        description=(
            "Wearable data sync: OAuth token custody, webhook ingestion and "
            "daily backfill into a shared document store."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.store = store
    app.state.registry = registry
    app.state.notifier = notifier

    # Security headers on every response
    app.add_middleware(SecurityHeadersMiddleware)

    # ---------- Health check (always at /health) ----------
    app.include_router(health.router)

    # ---------- Integrations (/api/integrations) ----------
    app.include_router(integrations.router)

    return app


app = create_app()
