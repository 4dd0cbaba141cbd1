"""Exception hierarchy for device integrations.

Data-quality outcomes (unscored readings, naps, delete events) are not
errors and never raise; they surface as ``None`` from the normalizer.
Optimistic-concurrency conflicts are not errors either; see
``src.services.documents.WriteConflict``.
"""

from __future__ import annotations


class IntegrationError(Exception):
    """Base class for all integration failures."""


class IntegrationNotConfiguredError(IntegrationError):
    """Client credentials are missing.  Reported to the operator, never retried."""


class IntegrationUnavailableError(IntegrationError):
    """No usable access token could be obtained for the integration."""


class TokensNotFoundError(IntegrationUnavailableError):
    """The shared store holds no token document for the integration."""


class WhoopAPIError(IntegrationError):
    """Non-retriable (or finally exhausted) error response from the Whoop API."""

    def __init__(self, status_code: int, body: str = "") -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"Whoop API error: {status_code} - {body}")


class RateLimitedError(WhoopAPIError):
    """Whoop kept answering 429 until the retry ceiling was reached."""

    def __init__(self, body: str = "") -> None:
        super().__init__(429, body or "Rate limited by Whoop API")


class UpstreamUnavailableError(IntegrationError):
    """Network failure talking to the vendor API after all retries."""


class StorageError(IntegrationError):
    """The shared document store could not be read or written."""


class FrontmatterError(ValueError):
    """A document header could not be parsed.  The document is left untouched."""

    def __init__(self, message: str, line: int | None = None) -> None:
        self.line = line
        if line is not None:
            message = f"line {line}: {message}"
        super().__init__(message)


class ConfigValidationError(ValueError):
    """Raised when integration_config.yaml fails validation."""
