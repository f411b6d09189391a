from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urlsplit

from .config import DEFAULT_BRANCH, DEFAULT_HOST, DESCRIPTOR_FILENAME


@dataclass(frozen=True)
class RepositoryCoordinate:
    owner: str
    repo: str
    branch: str
    subpath: str = ""

    @property
    def key(self) -> str:
        return f"{self.owner}/{self.repo}"


def normalize_repo_url(value: str, *, host: str = DEFAULT_HOST) -> str:
    """Expand ``owner/repo[/path...]`` shorthand into a full URL. Full URLs pass through."""
    raw = value.strip()
    if raw.startswith(("http://", "https://")):
        return raw
    return f"https://{host}/{raw.lstrip('/')}"


def parse_repo_ref(
    value: str,
    *,
    host: str = DEFAULT_HOST,
    default_branch: str = DEFAULT_BRANCH,
) -> RepositoryCoordinate | None:
    """
    Parse a repository reference into a coordinate.

    Accepted forms:
        owner/repo
        owner/repo/path/to/skill
        https://github.com/owner/repo
        https://github.com/owner/repo/tree/<ref>/path/to/skill
        https://github.com/owner/repo/blob/<ref>/path/to/SKILL.md

    Returns None for URLs on another host or without both owner and repo.
    """
    if not value or not value.strip():
        return None
    url = normalize_repo_url(value, host=host)
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if (parts.hostname or "").lower() != host.lower():
        return None

    segments = [s for s in parts.path.split("/") if s]
    if len(segments) < 2:
        return None

    owner, repo, *rest = segments
    if repo.endswith(".git"):
        repo = repo[: -len(".git")]
    if not owner or not repo:
        return None

    branch = default_branch
    subpath = ""
    if rest and rest[0] in ("tree", "blob"):
        if len(rest) > 1:
            branch = rest[1]
        tail = rest[2:]
        # A blob link to the descriptor itself points at its folder.
        if rest[0] == "blob" and tail and tail[-1] == DESCRIPTOR_FILENAME:
            tail = tail[:-1]
        subpath = "/".join(tail)
    elif rest:
        subpath = "/".join(rest)

    return RepositoryCoordinate(owner=owner, repo=repo, branch=branch, subpath=subpath)
