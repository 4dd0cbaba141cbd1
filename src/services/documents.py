"""Revisioned document store abstraction.

Every document carries an opaque revision marker.  Writers pass the marker
they last read; the store only accepts the write if the document is still
at that revision.  Losing that race is an ordinary outcome and is returned
as ``WriteConflict`` rather than raised.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

logger = logging.getLogger("fitsync.documents")


@dataclass(frozen=True)
class Document:
    path: str
    content: str
    revision: str


@dataclass(frozen=True)
class WriteOk:
    path: str
    revision: str


@dataclass(frozen=True)
class WriteConflict:
    """The document changed (or appeared) since ``expected_revision`` was read."""

    path: str
    expected_revision: str | None


WriteResult = WriteOk | WriteConflict


class DocumentStore(ABC):
    """Shared remote store for token and data documents."""

    @abstractmethod
    async def read(self, path: str) -> Document | None:
        """Return the document at ``path``, or None if it does not exist.

        Raises:
            StorageError: The store could not be reached.
        """

    @abstractmethod
    async def write(
        self,
        path: str,
        content: str,
        revision: str | None,
        message: str = "",
    ) -> WriteResult:
        """Write ``content`` if the document is still at ``revision``.

        Args:
            path:     Document path.
            content:  Full new content.
            revision: Revision last read, or None to create a new document.
            message:  Commit/audit message where the backend keeps one.

        Raises:
            StorageError: The store failed for a reason other than a conflict.
        """

    async def close(self) -> None:
        return None


class InMemoryDocumentStore(DocumentStore):
    """Process-local store with the same revision semantics as the remote one.

    Used by tests and by ``DOCUMENT_STORE=memory`` for local runs.
    """

    def __init__(self, documents: dict[str, str] | None = None) -> None:
        self._docs: dict[str, Document] = {}
        self._lock = asyncio.Lock()
        self.write_count = 0
        for path, content in (documents or {}).items():
            self._docs[path] = Document(path, content, self._revision_for(path, content, 0))

    @staticmethod
    def _revision_for(path: str, content: str, counter: int) -> str:
        return hashlib.sha1(f"{path}\0{counter}\0{content}".encode()).hexdigest()

    async def read(self, path: str) -> Document | None:
        return self._docs.get(path)

    async def write(
        self,
        path: str,
        content: str,
        revision: str | None,
        message: str = "",
    ) -> WriteResult:
        async with self._lock:
            current = self._docs.get(path)
            current_revision = current.revision if current else None
            if current_revision != revision:
                logger.debug(
                    "Revision mismatch on %s: expected %s, found %s",
                    path,
                    revision,
                    current_revision,
                )
                return WriteConflict(path=path, expected_revision=revision)

            self.write_count += 1
            new_revision = self._revision_for(path, content, self.write_count)
            self._docs[path] = Document(path, content, new_revision)
            return WriteOk(path=path, revision=new_revision)

    def snapshot(self) -> dict[str, str]:
        """Return path -> content for every stored document."""
        return {path: doc.content for path, doc in self._docs.items()}
