from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from .client import GitHubClient, InvalidReferenceError, SkillhubError
from .config import Config, DEFAULT_MAX_CONCURRENCY
from .indexer import DESCRIPTOR_TEXT_CHARS, SkillIndexer
from .installer import InstallTransaction, descriptor_key, fetch_skill_files, skill_prefix
from .manifest import MANIFEST_KEY, ManifestStore, SkillMetadata, summarize_descriptor
from .refs import normalize_repo_url, parse_repo_ref
from .resolver import MultipleSkillsFound, resolve_skill
from .stores import BlobStore, FileBlobStore
from .vectors import HttpEmbedder, LocalVectorIndex, VectorMatch

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_QUERY = "skill"
SEARCH_TOP_K = 10


@dataclass(frozen=True)
class SkillInstalled:
    name: str
    folder_path: str
    source_url: str
    files: tuple[str, ...]


@dataclass(frozen=True)
class SkillsToChoose:
    candidates: tuple[str, ...]
    url: str


InstallOutcome = SkillInstalled | SkillsToChoose


def validate_skill_name(name: str) -> str:
    value = (name or "").strip()
    if not value or "/" in value or "\\" in value or value in (".", ".."):
        raise InvalidReferenceError(f"Invalid skill name: {name!r}")
    # The manifest document lives beside the skill folders.
    if skill_prefix(value).rstrip("/") == MANIFEST_KEY:
        raise InvalidReferenceError(f"Invalid skill name: {name!r}")
    return value


class SkillManager:
    """
    Install, uninstall, search and load skills.

    Install and uninstall of the same name are serialized within this process.
    Installs roll back every store they touched unless the manifest write, the
    commit point, succeeds.
    """

    def __init__(
        self,
        *,
        github: GitHubClient,
        store: BlobStore,
        indexer: SkillIndexer,
        manifest: ManifestStore | None = None,
        host: str = "github.com",
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    ) -> None:
        self.github = github
        self.store = store
        self.indexer = indexer
        self.manifest = manifest or ManifestStore(store)
        self.host = host
        self.max_concurrency = max_concurrency
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @classmethod
    def from_config(cls, cfg: Config) -> "SkillManager":
        data_dir = cfg.resolved_data_dir()
        github = GitHubClient(
            token=cfg.github_token,
            api_base_url=cfg.api_base_url,
            timeout_s=cfg.timeout_s,
            default_branch=cfg.default_branch,
            fallback_branch=cfg.fallback_branch,
        )
        embedder = HttpEmbedder(
            base_url=cfg.embedding_url,
            model=cfg.embedding_model,
            api_key=cfg.embedding_api_key,
            timeout_s=cfg.timeout_s,
        )
        indexer = SkillIndexer(embedder, LocalVectorIndex(data_dir / "vectors.json"), timeout_s=cfg.timeout_s)
        return cls(
            github=github,
            store=FileBlobStore(data_dir / "blobs"),
            indexer=indexer,
            host=cfg.host,
            max_concurrency=cfg.max_concurrency,
        )

    async def aclose(self) -> None:
        await self.github.aclose()
        close = getattr(self.indexer.embedder, "aclose", None)
        if close is not None:
            await close()

    @asynccontextmanager
    async def _name_lock(self, name: str) -> AsyncIterator[None]:
        """Hold the per-name lock; the entry is dropped once nobody holds or awaits it."""
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        self._lock_users[name] = self._lock_users.get(name, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[name] -= 1
            if not self._lock_users[name]:
                del self._lock_users[name]
                del self._locks[name]

    async def add_skill(self, url: str) -> InstallOutcome:
        if not url or not url.strip():
            raise InvalidReferenceError("URL argument is required.")
        source_url = normalize_repo_url(url, host=self.host)
        coord = parse_repo_ref(source_url, host=self.host, default_branch=self.github.default_branch)
        if coord is None:
            raise InvalidReferenceError("Invalid GitHub URL.")

        tree = await self.github.fetch_tree(coord)
        resolved = resolve_skill(tree.entries, subpath=coord.subpath, repo=coord.repo)
        if isinstance(resolved, MultipleSkillsFound):
            return SkillsToChoose(candidates=resolved.candidates, url=source_url)

        name = validate_skill_name(resolved.name)
        async with self._name_lock(name):
            previous = (await self.manifest.get_manifest()).get(name)
            async with InstallTransaction(f"install of {name}") as txn:
                fetched = await fetch_skill_files(
                    github=self.github,
                    store=self.store,
                    txn=txn,
                    coord=coord,
                    branch=tree.branch,
                    skill=resolved,
                    entries=tree.entries,
                    max_concurrency=self.max_concurrency,
                )
                text = fetched.descriptor_text[:DESCRIPTOR_TEXT_CHARS]
                record = await self.indexer.prepare_record(
                    name=name, text=text, source_url=source_url, path=resolved.folder_path
                )
                # An upsert that fails may still have been applied by the index.
                txn.on_rollback(f"vector record {name}", self._index_undo(name, previous, fetched.previous_descriptor))
                await self.indexer.put_record(record)

                entry = SkillMetadata(
                    name=name,
                    summary=summarize_descriptor(text, name),
                    source_url=source_url,
                    path=resolved.folder_path,
                )
                await self.manifest.upsert(entry)
                txn.commit()

            await self._prune_stale(name, keep=set(fetched.written_keys))

        logger.info("Installed skill %s from %s (%d file(s))", name, source_url, len(fetched.written_keys))
        return SkillInstalled(
            name=name,
            folder_path=resolved.folder_path,
            source_url=source_url,
            files=fetched.written_keys,
        )

    def _index_undo(self, name: str, previous: SkillMetadata | None, previous_text: str | None):
        async def _undo() -> None:
            if previous is not None and previous_text is not None:
                await self.indexer.index_skill(
                    name=name, text=previous_text, source_url=previous.source_url, path=previous.path
                )
            else:
                await self.indexer.remove_skill(name)

        return _undo

    async def _prune_stale(self, name: str, *, keep: set[str]) -> None:
        """Drop artifacts a previous install left behind that this install did not write."""
        try:
            stale: list[str] = []
            cursor: str | None = None
            while True:
                page = await self.store.list(skill_prefix(name), cursor)
                stale.extend(k for k in page.keys if k not in keep)
                if not page.truncated:
                    break
                cursor = page.cursor
            if stale:
                await self.store.delete(stale)
                logger.info("Pruned %d stale artifact(s) of %s", len(stale), name)
        except (SkillhubError, OSError) as e:
            logger.warning("Could not prune stale artifacts of %s: %s", name, e)

    async def delete_skill(self, name: str) -> int:
        """
        Remove a skill: vector record first, then artifacts, then manifest entry.

        Returns the number of artifacts deleted. Deleting an unknown name is a no-op.
        """
        name = validate_skill_name(name)
        async with self._name_lock(name):
            await self.indexer.remove_skill(name)

            deleted = 0
            cursor: str | None = None
            while True:
                page = await self.store.list(skill_prefix(name), cursor)
                if page.keys:
                    await self.store.delete(list(page.keys))
                    deleted += len(page.keys)
                if not page.truncated:
                    break
                cursor = page.cursor

            await self.manifest.remove(name)
        logger.info("Deleted skill %s (%d artifact(s))", name, deleted)
        return deleted

    async def search_skills(self, query: str | None = None) -> list[VectorMatch]:
        return await self.indexer.search(query or DEFAULT_SEARCH_QUERY, top_k=SEARCH_TOP_K)

    async def load_skill(self, name: str) -> str | None:
        obj = await self.store.get(descriptor_key(validate_skill_name(name)))
        if obj is None:
            return None
        return obj.text()

    async def list_skills(self) -> list[SkillMetadata]:
        return list((await self.manifest.get_manifest()).skills)
