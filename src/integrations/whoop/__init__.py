"""Whoop integration: OAuth, API client, webhooks, and the DeviceIntegration."""

from src.integrations.whoop.integration import WhoopIntegration

__all__ = ["WhoopIntegration"]
