from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .client import ManifestConflictError, PreconditionFailedError
from .stores import BlobStore

logger = logging.getLogger(__name__)

MANIFEST_KEY = "skills/manifest.json"
DEFAULT_CAS_RETRIES = 5


@dataclass(frozen=True)
class SkillMetadata:
    name: str
    summary: str
    source_url: str
    path: str
    installed_at: str = field(default_factory=lambda: utc_now())

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "summary": self.summary,
            "url": self.source_url,
            "path": self.path,
            "installedAt": self.installed_at,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> "SkillMetadata | None":
        if not isinstance(raw, dict):
            return None
        name = raw.get("name")
        if not isinstance(name, str) or not name:
            return None
        return cls(
            name=name,
            summary=str(raw.get("summary") or name),
            source_url=str(raw.get("url") or ""),
            path=str(raw.get("path") or ""),
            installed_at=str(raw.get("installedAt") or ""),
        )


@dataclass(frozen=True)
class Manifest:
    skills: tuple[SkillMetadata, ...] = ()
    etag: str | None = None  # version token of the stored document; None if absent

    def get(self, name: str) -> SkillMetadata | None:
        for s in self.skills:
            if s.name == name:
                return s
        return None

    def with_skill(self, entry: SkillMetadata) -> "Manifest":
        kept = tuple(s for s in self.skills if s.name != entry.name)
        return Manifest(skills=kept + (entry,), etag=self.etag)

    def without_skill(self, name: str) -> "Manifest":
        return Manifest(skills=tuple(s for s in self.skills if s.name != name), etag=self.etag)

    def to_json(self) -> str:
        return json.dumps({"skills": [s.to_dict() for s in self.skills]}, indent=2)


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def summarize_descriptor(text: str, fallback: str) -> str:
    first = text.split("\n", 1)[0].strip()
    stripped = first.lstrip("#").strip()
    return stripped or fallback


class ManifestStore:
    """
    The authoritative list of installed skills, kept as one JSON document.

    Writes are compare-and-swap on the document's etag; ``update`` repeats the
    read-modify-write cycle when another writer got there first.
    """

    def __init__(self, store: BlobStore, *, key: str = MANIFEST_KEY, retries: int = DEFAULT_CAS_RETRIES) -> None:
        self.store = store
        self.key = key
        self.retries = retries

    async def get_manifest(self) -> Manifest:
        obj = await self.store.get(self.key)
        if obj is None:
            return Manifest()
        try:
            raw = json.loads(obj.text())
        except json.JSONDecodeError:
            logger.warning("Manifest %s is not valid JSON; treating it as empty", self.key)
            return Manifest(etag=obj.etag)
        items = raw.get("skills") if isinstance(raw, dict) else None
        if not isinstance(items, list):
            return Manifest(etag=obj.etag)

        skills: list[SkillMetadata] = []
        seen: set[str] = set()
        for item in items:
            entry = SkillMetadata.from_dict(item)
            if entry is None or entry.name in seen:
                continue
            seen.add(entry.name)
            skills.append(entry)
        return Manifest(skills=tuple(skills), etag=obj.etag)

    async def save_manifest(self, manifest: Manifest) -> Manifest:
        """Replace the document if it is still at ``manifest.etag``."""
        if manifest.etag is None:
            etag = await self.store.put(self.key, manifest.to_json(), if_none_match=True)
        else:
            etag = await self.store.put(self.key, manifest.to_json(), if_match=manifest.etag)
        return Manifest(skills=manifest.skills, etag=etag)

    async def update(self, mutate: Callable[[Manifest], Manifest]) -> Manifest:
        for attempt in range(1, self.retries + 1):
            current = await self.get_manifest()
            try:
                return await self.save_manifest(mutate(current))
            except PreconditionFailedError:
                logger.info("Manifest changed concurrently, retrying (attempt %d/%d)", attempt, self.retries)
        raise ManifestConflictError(f"Manifest update lost {self.retries} races in a row; giving up.")

    async def upsert(self, entry: SkillMetadata) -> Manifest:
        return await self.update(lambda m: m.with_skill(entry))

    async def remove(self, name: str) -> Manifest:
        return await self.update(lambda m: m.without_skill(name))
