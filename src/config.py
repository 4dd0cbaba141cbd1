"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "FitSync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Local calendar ---
    timezone: str = "America/New_York"  # IANA name or fixed offset like "-05:00"

    # --- Whoop ---
    whoop_client_id: str = ""
    whoop_client_secret: str = ""
    whoop_webhook_secret: str = ""  # empty = signature check skipped
    whoop_user_id: str = ""  # empty = accept any vendor user id

    # --- Sync / cron endpoints ---
    cron_secret: str = ""  # empty = sync endpoints are unauthenticated

    # --- Webhook processing ---
    webhook_processing: str = "background"  # background | sync

    # --- Document store ---
    document_store: str = "github"  # github | memory
    github_token: str = ""
    github_repo: str = ""  # "owner/repo"
    github_branch: str = "main"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def whoop_configured(self) -> bool:
        return bool(self.whoop_client_id and self.whoop_client_secret)

    @property
    def webhook_fast_ack(self) -> bool:
        return self.webhook_processing.lower() != "sync"


@lru_cache
def get_settings() -> Settings:
    return Settings()
