"""Integration registry: slug -> DeviceIntegration.

The registry is built once at startup by ``build_registry`` and stored on
``app.state``.  Routes look integrations up by the slug in the URL and never
name a concrete vendor class.

Usage::

    registry = IntegrationRegistry()
    registry.register(WhoopIntegration(settings, store))

    registry.get("whoop")        # WhoopIntegration
    registry.configured()        # integrations with credentials present
    registry.available()         # metadata entries marked feature-complete
"""

from __future__ import annotations

import logging

from src.config import Settings
from src.integrations.base import DeviceIntegration
from src.integrations.config_loader import IntegrationMetadata, get_integration_config
from src.integrations.whoop import WhoopIntegration
from src.services.documents import DocumentStore

logger = logging.getLogger("fitsync.integrations.registry")


class IntegrationRegistry:
    """Table of registered integrations plus the integration catalog."""

    def __init__(self, metadata: dict[str, IntegrationMetadata] | None = None) -> None:
        self._integrations: dict[str, DeviceIntegration] = {}
        self._metadata = (
            dict(metadata) if metadata is not None else dict(get_integration_config().integrations)
        )

    def register(self, integration: DeviceIntegration) -> None:
        """Add an integration.  Registering a slug again replaces the earlier one."""
        if integration.slug in self._integrations:
            logger.debug("Replacing registered integration %s", integration.slug)
        self._integrations[integration.slug] = integration
        logger.debug("Registered integration %s", integration.slug)

    def unregister(self, slug: str) -> None:
        """Remove an integration.  Unknown slugs are ignored."""
        self._integrations.pop(slug, None)

    def get(self, slug: str) -> DeviceIntegration | None:
        return self._integrations.get(slug)

    def all(self) -> list[DeviceIntegration]:
        return list(self._integrations.values())

    def configured(self) -> list[DeviceIntegration]:
        """Integrations whose client credentials are present."""
        return [i for i in self._integrations.values() if i.is_configured()]

    def has_configured(self) -> bool:
        return bool(self.configured())

    def metadata(self, slug: str | None = None) -> list[IntegrationMetadata]:
        """Catalog entries, optionally filtered to one slug."""
        if slug is not None:
            entry = self._metadata.get(slug)
            return [entry] if entry else []
        return list(self._metadata.values())

    def available(self) -> list[IntegrationMetadata]:
        """Catalog entries marked feature-complete."""
        return [m for m in self._metadata.values() if m.available]

    def clear(self) -> None:
        self._integrations.clear()

    def __contains__(self, slug: object) -> bool:
        return slug in self._integrations

    def __len__(self) -> int:
        return len(self._integrations)


def build_registry(settings: Settings, store: DocumentStore) -> IntegrationRegistry:
    """Create the registry with every built-in integration registered."""
    registry = IntegrationRegistry()
    registry.register(WhoopIntegration(settings, store))
    logger.info(
        "Integrations registered: %s (configured: %s)",
        ", ".join(i.slug for i in registry.all()) or "none",
        ", ".join(i.slug for i in registry.configured()) or "none",
    )
    return registry
