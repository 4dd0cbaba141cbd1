"""FitSync device integrations.

This package syncs sleep, recovery and workout data from wearable vendors
into the shared document store, and keeps each vendor's OAuth tokens fresh
across stateless process instances.

Subpackages:
    whoop/  Whoop OAuth, API client, webhook verification and normalization

Core modules:
    base           DeviceIntegration ABC and normalized data models
    registry       Slug -> integration table built at startup
    tokens         TokenCustodian: shared OAuth token custody
    storage        Per-day document read-modify-write
    frontmatter    Header parser/serializer for data documents
    sync           Backfill, token refresh and webhook processing
    config_loader  Load/validate/reload integration_config.yaml
    errors         Exception hierarchy
"""

from src.integrations.base import (
    DeviceIntegration,
    RecoveryData,
    RecoveryEvent,
    SleepData,
    SleepEvent,
    TokenSet,
    WebhookEvent,
    WebhookRequest,
    WorkoutData,
    WorkoutEvent,
)
from src.integrations.config_loader import IntegrationConfig, get_integration_config

__all__ = [
    "DeviceIntegration",
    "IntegrationConfig",
    "RecoveryData",
    "RecoveryEvent",
    "SleepData",
    "SleepEvent",
    "TokenSet",
    "WebhookEvent",
    "WebhookRequest",
    "WorkoutData",
    "WorkoutEvent",
    "get_integration_config",
]
