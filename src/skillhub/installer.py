from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass

from .client import DescriptorMissingError, GitHubClient, TreeEntry
from .config import DEFAULT_MAX_CONCURRENCY, DESCRIPTOR_FILENAME
from .refs import RepositoryCoordinate
from .resolver import ResolvedSkill, files_under, relative_to_folder
from .stores import BlobStore

logger = logging.getLogger(__name__)

SKILLS_PREFIX = "skills/"

UndoAction = Callable[[], Awaitable[None]]


def skill_prefix(name: str) -> str:
    return f"{SKILLS_PREFIX}{name}/"


def artifact_key(name: str, relative_path: str) -> str:
    return f"{skill_prefix(name)}{relative_path}"


def descriptor_key(name: str) -> str:
    return artifact_key(name, DESCRIPTOR_FILENAME)


class InstallTransaction:
    """
    Scoped undo log for one install attempt.

    Undo actions run in reverse order when the ``async with`` block exits
    without ``commit()`` having been called, including on exceptions.
    """

    def __init__(self, label: str) -> None:
        self.label = label
        self._undo: list[tuple[str, UndoAction]] = []
        self.committed = False

    def on_rollback(self, description: str, action: UndoAction) -> None:
        self._undo.append((description, action))

    def commit(self) -> None:
        self.committed = True
        self._undo.clear()

    async def rollback(self) -> None:
        if not self._undo:
            return
        logger.warning("Rolling back %s (%d step(s))", self.label, len(self._undo))
        failures: list[str] = []
        while self._undo:
            description, action = self._undo.pop()
            try:
                await action()
            except Exception as e:  # noqa: BLE001 - keep undoing; report below
                failures.append(f"{description}: {e}")
        if failures:
            logger.error("Rollback of %s left residue: %s", self.label, "; ".join(failures))

    async def __aenter__(self) -> "InstallTransaction":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if not self.committed:
            await self.rollback()


@dataclass(frozen=True)
class FetchedSkill:
    written_keys: tuple[str, ...]
    descriptor_text: str
    previous_descriptor: str | None  # descriptor body this install overwrote, if any


async def _write_artifact(store: BlobStore, txn: InstallTransaction, key: str, body: bytes) -> bytes | None:
    """Write one artifact, registering an undo that restores whatever was there before."""
    previous = await store.get(key)
    await store.put(key, body)
    if previous is None:
        txn.on_rollback(f"delete {key}", lambda: store.delete(key))
        return None
    prior_body = previous.body

    async def _restore() -> None:
        await store.put(key, prior_body)

    txn.on_rollback(f"restore {key}", _restore)
    return prior_body


async def fetch_skill_files(
    *,
    github: GitHubClient,
    store: BlobStore,
    txn: InstallTransaction,
    coord: RepositoryCoordinate,
    branch: str,
    skill: ResolvedSkill,
    entries: Sequence[TreeEntry],
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
) -> FetchedSkill:
    """
    Download every file of ``skill`` and persist it under ``skills/<name>/``.

    Fetches run concurrently; the outcome is decided only after all of them
    settle. Files the host refuses are skipped, but a missing descriptor or any
    transport failure fails the whole attempt (``txn`` then undoes the writes).
    """
    files = files_under(entries, skill.folder_path)
    semaphore = asyncio.Semaphore(max(1, max_concurrency))

    async def _one(entry: TreeEntry) -> tuple[str, bytes, bytes | None] | None:
        async with semaphore:
            content = await github.fetch_content(coord.owner, coord.repo, entry.path, branch)
            if content is None:
                return None
            rel = relative_to_folder(entry.path, skill.folder_path)
            key = artifact_key(skill.name, rel)
            prior = await _write_artifact(store, txn, key, content)
            return rel, content, prior

    results = await asyncio.gather(*(_one(e) for e in files), return_exceptions=True)

    errors = [r for r in results if isinstance(r, BaseException)]
    if errors:
        raise errors[0]

    written: list[str] = []
    descriptor_text: str | None = None
    previous_descriptor: str | None = None
    for r in results:
        if r is None:
            continue
        rel, content, prior = r  # type: ignore[misc]
        written.append(artifact_key(skill.name, rel))
        if rel == DESCRIPTOR_FILENAME:
            descriptor_text = content.decode("utf-8", errors="replace")
            if prior is not None:
                previous_descriptor = prior.decode("utf-8", errors="replace")

    if descriptor_text is None:
        raise DescriptorMissingError(skill.name)

    return FetchedSkill(
        written_keys=tuple(written),
        descriptor_text=descriptor_text,
        previous_descriptor=previous_descriptor,
    )
