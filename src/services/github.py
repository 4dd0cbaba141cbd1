"""GitHub repository as the shared document store.

Documents live in a repository via the contents API.  The blob SHA of each
file is its revision: a PUT carrying a stale SHA is refused by GitHub with
409 (or 422 when a SHA is missing for an existing file), which is mapped to
``WriteConflict``.
"""

from __future__ import annotations

import base64
import logging
from urllib.parse import quote

import httpx

from src.config import Settings, get_settings
from src.integrations.errors import StorageError
from src.services.documents import Document, DocumentStore, WriteConflict, WriteOk, WriteResult

logger = logging.getLogger("fitsync.github")

GITHUB_API_BASE = "https://api.github.com"

_CONFLICT_STATUSES = (409, 422)


class GitHubDocumentStore(DocumentStore):
    """Reads and conditionally writes files on one branch of one repository."""

    def __init__(
        self,
        token: str,
        repo: str,
        branch: str = "main",
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        owner, _, name = repo.partition("/")
        if not owner or not name:
            raise ValueError('Invalid repo format. Expected "owner/repo"')
        self.repo = repo
        self.branch = branch
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(base_url=GITHUB_API_BASE, timeout=30.0)
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
        }

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "GitHubDocumentStore":
        s = settings or get_settings()
        if not s.github_token or not s.github_repo:
            raise ValueError("GITHUB_TOKEN and GITHUB_REPO are required for the GitHub store")
        return cls(token=s.github_token, repo=s.github_repo, branch=s.github_branch)

    def _url(self, path: str) -> str:
        return f"/repos/{self.repo}/contents/{quote(path)}"

    async def read(self, path: str) -> Document | None:
        try:
            response = await self._client.get(
                self._url(path), params={"ref": self.branch}, headers=self._headers
            )
        except httpx.HTTPError as exc:
            raise StorageError(f"GitHub read failed for {path}: {exc}") from exc

        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise StorageError(
                f"GitHub read failed for {path}: {response.status_code} - {response.text}"
            )

        data = response.json()
        raw = data.get("content", "")
        if data.get("encoding") == "base64":
            content = base64.b64decode(raw).decode("utf-8")
        else:
            content = raw
        return Document(path=path, content=content, revision=data["sha"])

    async def write(
        self,
        path: str,
        content: str,
        revision: str | None,
        message: str = "",
    ) -> WriteResult:
        body: dict[str, str] = {
            "message": message or f"Update {path}",
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": self.branch,
        }
        if revision:
            body["sha"] = revision

        try:
            response = await self._client.put(self._url(path), json=body, headers=self._headers)
        except httpx.HTTPError as exc:
            raise StorageError(f"GitHub write failed for {path}: {exc}") from exc

        if response.status_code in _CONFLICT_STATUSES:
            logger.info("GitHub rejected write to %s (status %s)", path, response.status_code)
            return WriteConflict(path=path, expected_revision=revision)
        if response.status_code not in (200, 201):
            raise StorageError(
                f"GitHub write failed for {path}: {response.status_code} - {response.text}"
            )

        new_sha = response.json().get("content", {}).get("sha", "")
        return WriteOk(path=path, revision=new_sha)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
