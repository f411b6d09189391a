from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import Any, TypeVar

from .client import SkillhubError
from .config import DEFAULT_TIMEOUT_S
from .vectors import Embedder, VectorIndex, VectorMatch, VectorRecord

DESCRIPTOR_TEXT_CHARS = 1000
DISPLAY_DESCRIPTION_CHARS = 200
SKILL_RECORD_TYPE = "skill"

T = TypeVar("T")


class SkillIndexer:
    def __init__(self, embedder: Embedder, index: VectorIndex, *, timeout_s: float = DEFAULT_TIMEOUT_S) -> None:
        self.embedder = embedder
        self.index = index
        self.timeout_s = timeout_s

    async def _bounded(self, aw: Awaitable[T], what: str) -> T:
        try:
            return await asyncio.wait_for(aw, timeout=self.timeout_s)
        except asyncio.TimeoutError as e:
            raise SkillhubError(f"{what} timed out after {self.timeout_s:g}s") from e

    async def embed_one(self, text: str) -> list[float]:
        vectors = await self._bounded(self.embedder.embed([text]), "Embedding call")
        if not vectors:
            raise SkillhubError("Embedding service returned no vectors.")
        return vectors[0]

    async def prepare_record(self, *, name: str, text: str, source_url: str, path: str) -> VectorRecord:
        """Embed the descriptor text into the skill's vector record without writing it."""
        text = text[:DESCRIPTOR_TEXT_CHARS]
        vector = await self.embed_one(text)
        metadata: dict[str, Any] = {
            "type": SKILL_RECORD_TYPE,
            "name": name,
            "url": source_url,
            "path": path,
            "description": text[:DISPLAY_DESCRIPTION_CHARS],
        }
        return VectorRecord(id=name, values=tuple(vector), metadata=metadata)

    async def put_record(self, record: VectorRecord) -> None:
        await self._bounded(self.index.upsert([record]), "Vector index upsert")

    async def index_skill(self, *, name: str, text: str, source_url: str, path: str) -> VectorRecord:
        record = await self.prepare_record(name=name, text=text, source_url=source_url, path=path)
        await self.put_record(record)
        return record

    async def remove_skill(self, name: str) -> None:
        await self._bounded(self.index.delete_by_ids([name]), "Vector index delete")

    async def search(self, query: str, *, top_k: int = 10) -> list[VectorMatch]:
        vector = await self.embed_one(query)
        return await self._bounded(
            self.index.query(vector, top_k=top_k, filter={"type": SKILL_RECORD_TYPE}, return_metadata=True),
            "Vector index query",
        )
