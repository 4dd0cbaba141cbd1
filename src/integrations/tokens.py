"""OAuth token custody shared across stateless process instances.

One token document per vendor lives in the shared document store at
``state/<slug>/tokens.json``.  Each process keeps a cache of the last tokens
it saw or wrote; the cache is a latency optimization only and is never
assumed coherent with other processes.

Refresh tokens rotate and are single-use, so two instances refreshing at
the same time will see one of them fail.  The failing side re-reads the
shared document and adopts whatever the winner wrote.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

from src.integrations.base import TokenSet
from src.integrations.config_loader import get_integration_config
from src.integrations.errors import (
    IntegrationError,
    IntegrationUnavailableError,
    StorageError,
    TokensNotFoundError,
)
from src.services.documents import DocumentStore, WriteConflict, WriteOk, WriteResult

logger = logging.getLogger("fitsync.tokens")

DEFAULT_EXPIRY_BUFFER_SECONDS = 300

Refresher = Callable[[str], Awaitable[TokenSet]]
Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def tokens_path(slug: str) -> str:
    return f"state/{slug}/tokens.json"


def is_token_expired(
    tokens: TokenSet,
    now: datetime | None = None,
    buffer_seconds: int = DEFAULT_EXPIRY_BUFFER_SECONDS,
) -> bool:
    """True if the access token is unusable at ``now``.

    A token with no expiry is always expired.  Otherwise it counts as expired
    from ``buffer_seconds`` before its real expiry onwards (inclusive).
    """
    if tokens.expires_at is None:
        return True
    now = now or _utcnow()
    return now >= tokens.expires_at - timedelta(seconds=buffer_seconds)


class TokenCustodian:
    """Single owner of one vendor's OAuth credentials within a process.

    Args:
        store:          Shared document store.
        slug:           Vendor slug, used for the token document path.
        clock:          Returns the current UTC time.  Tests pass a fixed clock.
        buffer_seconds: Expiry safety window.  Defaults to the configured value.
    """

    def __init__(
        self,
        store: DocumentStore,
        slug: str,
        clock: Clock | None = None,
        buffer_seconds: int | None = None,
    ) -> None:
        self.store = store
        self.slug = slug
        self.path = tokens_path(slug)
        self._clock = clock or _utcnow
        self.buffer_seconds = (
            buffer_seconds
            if buffer_seconds is not None
            else get_integration_config().tokens.expiry_buffer_seconds
        )
        self._cache: TokenSet | None = None

    @property
    def cached_tokens(self) -> TokenSet | None:
        return self._cache

    def reset_cache(self) -> None:
        self._cache = None

    def is_token_expired(self, tokens: TokenSet) -> bool:
        return is_token_expired(tokens, self._clock(), self.buffer_seconds)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def read_remote(self) -> tuple[TokenSet, str] | None:
        """Read the token document directly from the store.

        Returns:
            (tokens, revision), or None when the document is missing,
            unusable, or the store could not be read.
        """
        try:
            document = await self.store.read(self.path)
        except StorageError:
            logger.exception("Failed to read %s tokens from store", self.slug)
            return None
        if document is None:
            return None
        tokens = TokenSet.from_document(document.content)
        if tokens is None:
            logger.warning("Token document %s is unusable", self.path)
            return None
        return tokens, document.revision

    async def get_stored_tokens(self) -> TokenSet | None:
        """Return cached tokens while still valid, otherwise the stored ones."""
        if self._cache is not None and not self.is_token_expired(self._cache):
            return self._cache

        remote = await self.read_remote()
        if remote is None:
            return None
        self._cache = remote[0]
        return self._cache

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def persist_tokens(self, tokens: TokenSet) -> WriteResult | None:
        """Cache ``tokens`` and write them conditioned on the current revision.

        The cache is updated first and unconditionally.  Losing the write
        race to another instance is logged and returned as ``WriteConflict``.
        A store failure is logged and returns None.
        """
        self._cache = tokens

        try:
            current = await self.store.read(self.path)
            result = await self.store.write(
                self.path,
                tokens.to_document(),
                current.revision if current else None,
                f"Update {self.slug} tokens",
            )
        except StorageError:
            logger.exception("Failed to persist %s tokens", self.slug)
            return None

        match result:
            case WriteOk():
                logger.info("%s tokens persisted", self.slug)
            case WriteConflict():
                logger.warning(
                    "%s token write lost a race; another instance already wrote newer tokens",
                    self.slug,
                )
        return result

    # ------------------------------------------------------------------
    # Refresh with fallback
    # ------------------------------------------------------------------

    async def refresh_tokens(self, refresher: Refresher, tokens: TokenSet) -> TokenSet:
        """Refresh ``tokens`` and persist the result.

        If the refresh call fails the shared document is re-read.  A still
        valid token found there (written by whichever instance won the
        refresh race) is adopted instead of raising.

        Raises:
            IntegrationUnavailableError: Refresh failed and no valid token exists.
        """
        try:
            fresh = await refresher(tokens.refresh_token)
        except IntegrationError as exc:
            logger.warning("%s token refresh failed (%s); re-reading stored tokens", self.slug, exc)
            remote = await self.read_remote()
            if remote is not None and not self.is_token_expired(remote[0]):
                logger.info("Using %s tokens refreshed by another instance", self.slug)
                self._cache = remote[0]
                return remote[0]
            raise IntegrationUnavailableError(
                f"{self.slug} token refresh failed and no valid stored token exists"
            ) from exc

        await self.persist_tokens(fresh)
        return fresh

    async def get_valid_tokens(self, refresher: Refresher) -> TokenSet:
        """Return a usable access token, refreshing if needed.

        Raises:
            TokensNotFoundError:         Nothing stored; the OAuth flow has not run.
            IntegrationUnavailableError: Refresh failed with no usable fallback.
        """
        tokens = await self.get_stored_tokens()
        if tokens is None:
            raise TokensNotFoundError(
                f"No {self.slug} tokens found. Complete the OAuth flow first."
            )
        if not self.is_token_expired(tokens):
            return tokens

        logger.info("%s access token expired, refreshing", self.slug)
        return await self.refresh_tokens(refresher, tokens)
