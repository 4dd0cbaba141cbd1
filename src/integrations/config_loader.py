"""Load, validate, and reload the integration tuning file.

The config lives in ``integration_config.yaml`` alongside this module.  It is
loaded once on first use and cached.  Call ``reload_integration_config()`` to
re-read it from disk without restarting the process.

Usage::

    from src.integrations.config_loader import get_integration_config

    config = get_integration_config()
    config.retry.max_retries              # 4
    config.metadata("whoop").available    # True
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from src.integrations.errors import ConfigValidationError

logger = logging.getLogger("fitsync.integrations.config")

_CONFIG_PATH = Path(__file__).parent / "integration_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class TokenPolicy:
    expiry_buffer_seconds: int = 300


@dataclass
class RetryPolicy:
    """Backoff settings for vendor API calls."""

    max_retries: int = 4
    initial_backoff_seconds: float = 1.0


@dataclass
class WebhookPolicy:
    recovery_search_days_back: int = 2
    recovery_search_days_forward: int = 1


@dataclass
class StoragePolicy:
    max_write_attempts: int = 3


@dataclass
class IntegrationMetadata:
    """Catalog entry for one integration, shown to operators.

    Attributes:
        slug:        URL-safe identifier.
        name:        Display name.
        description: One-line summary of the data it provides.
        available:   True when the integration is feature-complete.
        docs_url:    Vendor developer documentation.
        scopes:      OAuth scopes requested at authorization time.
    """

    slug: str
    name: str
    description: str = ""
    available: bool = False
    docs_url: str | None = None
    scopes: list[str] = field(default_factory=list)


@dataclass
class IntegrationConfig:
    """Complete, validated integration configuration."""

    version: str
    tokens: TokenPolicy
    retry: RetryPolicy
    webhooks: WebhookPolicy
    storage: StoragePolicy
    integrations: dict[str, IntegrationMetadata]
    _raw: dict = field(default_factory=dict, repr=False)

    def metadata(self, slug: str) -> IntegrationMetadata | None:
        return self.integrations.get(slug)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Integration config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            data = yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigValidationError(f"{path} must contain a mapping at the top level")
    return data


def _validate_and_build(raw: dict) -> IntegrationConfig:
    """Validate the raw YAML dict and construct an IntegrationConfig.

    Missing sections fall back to defaults; present values must be the
    right type and in range.

    Raises:
        ConfigValidationError: If any value is invalid.
    """
    errors: list[str] = []

    def _number(section: dict, key: str, default: Any, cast: type, minimum: float) -> Any:
        value = section.get(key, default)
        try:
            result = cast(value)
        except (TypeError, ValueError):
            errors.append(f"{key} must be a number, got {value!r}")
            return default
        if result < minimum:
            errors.append(f"{key} = {result} must be >= {minimum}")
        return result

    def _section(name: str) -> dict:
        value = raw.get(name) or {}
        if not isinstance(value, dict):
            errors.append(f"'{name}' must be a mapping")
            return {}
        return value

    version = str(raw.get("version", "1.0"))

    tok_raw = _section("tokens")
    tokens = TokenPolicy(
        expiry_buffer_seconds=_number(tok_raw, "expiry_buffer_seconds", 300, int, 0),
    )

    retry_raw = _section("retry")
    retry = RetryPolicy(
        max_retries=_number(retry_raw, "max_retries", 4, int, 0),
        initial_backoff_seconds=_number(retry_raw, "initial_backoff_seconds", 1.0, float, 0),
    )

    wh_raw = _section("webhooks")
    webhooks = WebhookPolicy(
        recovery_search_days_back=_number(wh_raw, "recovery_search_days_back", 2, int, 0),
        recovery_search_days_forward=_number(wh_raw, "recovery_search_days_forward", 1, int, 0),
    )

    st_raw = _section("storage")
    storage = StoragePolicy(
        max_write_attempts=_number(st_raw, "max_write_attempts", 3, int, 1),
    )

    integrations: dict[str, IntegrationMetadata] = {}
    for slug, entry in _section("integrations").items():
        if not isinstance(entry, dict):
            errors.append(f"integrations.{slug} must be a mapping")
            continue
        scopes = entry.get("scopes") or []
        if not isinstance(scopes, list):
            errors.append(f"integrations.{slug}.scopes must be a list")
            scopes = []
        integrations[slug] = IntegrationMetadata(
            slug=slug,
            name=str(entry.get("name", slug.title())),
            description=str(entry.get("description", "")),
            available=bool(entry.get("available", False)),
            docs_url=entry.get("docs_url"),
            scopes=[str(s) for s in scopes],
        )

    if errors:
        raise ConfigValidationError(
            f"integration_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return IntegrationConfig(
        version=version,
        tokens=tokens,
        retry=retry,
        webhooks=webhooks,
        storage=storage,
        integrations=integrations,
        _raw=raw,
    )


def load_integration_config(path: Path | None = None) -> IntegrationConfig:
    """Load and validate the integration config from disk.

    Args:
        path: Override path to YAML. Uses the bundled file by default.
    """
    target = path or _CONFIG_PATH
    config = _validate_and_build(_load_yaml(target))
    logger.info("Loaded integration config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with reload support
# ---------------------------------------------------------------------------

_config: IntegrationConfig | None = None
_config_lock = threading.Lock()


def get_integration_config() -> IntegrationConfig:
    """Return the cached IntegrationConfig, loading it on first call."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_integration_config()
    return _config


def reload_integration_config(path: Path | None = None) -> IntegrationConfig:
    """Reload the config from disk and replace the cached instance.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_integration_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded integration config: %s -> %s", old_version, new_config.version)
    return new_config
