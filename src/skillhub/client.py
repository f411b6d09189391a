from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from ._version import __version__
from .config import DEFAULT_API_BASE_URL, DEFAULT_BRANCH, DEFAULT_TIMEOUT_S, FALLBACK_BRANCH
from .refs import RepositoryCoordinate

logger = logging.getLogger(__name__)

USER_AGENT = f"skillhub/{__version__}"


class SkillhubError(RuntimeError):
    pass


class InvalidReferenceError(SkillhubError):
    pass


class NoSkillFoundError(SkillhubError):
    pass


class DescriptorMissingError(SkillhubError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Failed to download healthy SKILL.md for {name}")
        self.name = name


class PreconditionFailedError(SkillhubError):
    pass


class ManifestConflictError(SkillhubError):
    pass


@dataclass(frozen=True)
class SkillhubHTTPError(SkillhubError):
    status_code: int
    body: str

    def __str__(self) -> str:
        body = self.body.strip()
        if body:
            return f"HTTP {self.status_code}: {body}"
        return f"HTTP {self.status_code}"


@dataclass(frozen=True)
class TreeEntry:
    path: str
    kind: str  # "file" | "directory"
    remote_ref: str = ""
    size_bytes: int | None = None

    @property
    def is_file(self) -> bool:
        return self.kind == "file"


@dataclass(frozen=True)
class RepoTree:
    branch: str
    entries: tuple[TreeEntry, ...]
    truncated: bool = False


def _parse_tree_entry(raw: Any) -> TreeEntry | None:
    if not isinstance(raw, dict):
        return None
    path = raw.get("path")
    if not isinstance(path, str) or not path:
        return None
    kind = "file" if raw.get("type") == "blob" else "directory"
    size = raw.get("size")
    return TreeEntry(
        path=path,
        kind=kind,
        remote_ref=str(raw.get("sha") or raw.get("url") or ""),
        size_bytes=size if isinstance(size, int) else None,
    )


class GitHubClient:
    """
    Async client for the repository hosting API.

    Only the two calls the install pipeline needs are exposed: a recursive tree
    listing and a raw content download.
    """

    def __init__(
        self,
        *,
        token: str | None = None,
        api_base_url: str = DEFAULT_API_BASE_URL,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        default_branch: str = DEFAULT_BRANCH,
        fallback_branch: str = FALLBACK_BRANCH,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.token = token
        self.api_base_url = api_base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.default_branch = default_branch
        self.fallback_branch = fallback_branch
        self._http = http or httpx.AsyncClient(timeout=timeout_s, follow_redirects=True)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def _headers(self, accept: str) -> dict[str, str]:
        headers = {"User-Agent": USER_AGENT, "Accept": accept}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _get(self, url: str, *, accept: str, params: dict[str, Any] | None = None) -> httpx.Response:
        try:
            return await self._http.get(url, params=params, headers=self._headers(accept))
        except httpx.HTTPError as e:
            raise SkillhubError(f"Request failed: {e}") from e

    def _repo_url(self, owner: str, repo: str) -> str:
        return f"{self.api_base_url}/repos/{quote(owner, safe='')}/{quote(repo, safe='')}"

    async def _fetch_tree_once(self, owner: str, repo: str, branch: str) -> httpx.Response:
        url = f"{self._repo_url(owner, repo)}/git/trees/{quote(branch, safe='')}"
        return await self._get(url, accept="application/vnd.github+json", params={"recursive": "1"})

    async def fetch_tree(self, coord: RepositoryCoordinate) -> RepoTree:
        """
        Fetch the full recursive file listing for ``coord``.

        A 404 on the default branch is retried exactly once against the fallback
        branch. Every other non-success response raises SkillhubHTTPError.
        """
        branch = coord.branch
        resp = await self._fetch_tree_once(coord.owner, coord.repo, branch)
        if resp.status_code == 404 and branch == self.default_branch and self.fallback_branch != branch:
            logger.info(
                "Branch %r not found for %s, retrying with %r", branch, coord.key, self.fallback_branch
            )
            branch = self.fallback_branch
            resp = await self._fetch_tree_once(coord.owner, coord.repo, branch)
        if resp.status_code >= 400:
            raise SkillhubHTTPError(resp.status_code, resp.text)

        try:
            data = resp.json()
        except ValueError as e:
            raise SkillhubError(f"Tree listing for {coord.key}@{branch} is not valid JSON.") from e
        if not isinstance(data, dict) or not isinstance(data.get("tree"), list):
            raise SkillhubError(f"Tree listing for {coord.key}@{branch} has no tree.")

        entries = tuple(e for e in (_parse_tree_entry(x) for x in data["tree"]) if e is not None)
        truncated = bool(data.get("truncated"))
        if truncated:
            logger.warning("Tree listing for %s@%s was truncated by the API", coord.key, branch)
        return RepoTree(branch=branch, entries=entries, truncated=truncated)

    async def fetch_content(self, owner: str, repo: str, path: str, ref: str) -> bytes | None:
        """Download one file's raw bytes. Returns None on any non-success status."""
        url = f"{self._repo_url(owner, repo)}/contents/{quote(path, safe='/')}"
        resp = await self._get(url, accept="application/vnd.github.raw", params={"ref": ref})
        if resp.status_code >= 300:
            logger.warning("Skipping %s/%s:%s (HTTP %s)", owner, repo, path, resp.status_code)
            return None
        return resp.content
