from __future__ import annotations

import asyncio
import json
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import httpx

from .client import SkillhubError, SkillhubHTTPError
from .config import DEFAULT_EMBEDDING_MODEL, DEFAULT_EMBEDDING_URL, DEFAULT_TIMEOUT_S


@dataclass(frozen=True)
class VectorRecord:
    id: str
    values: tuple[float, ...]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class VectorMatch:
    id: str
    score: float
    metadata: dict[str, Any] | None = None


class Embedder(Protocol):
    async def embed(self, texts: list[str]) -> list[list[float]]:
        ...


class VectorIndex(Protocol):
    async def upsert(self, records: list[VectorRecord]) -> None:
        ...

    async def delete_by_ids(self, ids: list[str]) -> None:
        ...

    async def query(
        self,
        vector: list[float],
        *,
        top_k: int,
        filter: dict[str, Any] | None = None,
        return_metadata: bool = True,
    ) -> list[VectorMatch]:
        ...


class HttpEmbedder:
    """Embedding client for OpenAI-compatible ``/embeddings`` endpoints."""

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_EMBEDDING_URL,
        model: str = DEFAULT_EMBEDDING_MODEL,
        api_key: str | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self._http = http or httpx.AsyncClient(timeout=timeout_s)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def embed(self, texts: list[str]) -> list[list[float]]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            resp = await self._http.post(
                f"{self.base_url}/embeddings",
                json={"model": self.model, "input": texts},
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise SkillhubError(f"Embedding request failed: {e}") from e
        if resp.status_code >= 400:
            raise SkillhubHTTPError(resp.status_code, resp.text)

        try:
            data = resp.json()
        except ValueError as e:
            raise SkillhubError("Embedding response is not valid JSON.") from e
        items = data.get("data") if isinstance(data, dict) else None
        if not isinstance(items, list) or len(items) != len(texts):
            raise SkillhubError("Embedding response did not contain one vector per input.")
        # Order by the per-item index.
        items = sorted(items, key=lambda x: x.get("index", 0) if isinstance(x, dict) else 0)
        vectors: list[list[float]] = []
        for item in items:
            emb = item.get("embedding") if isinstance(item, dict) else None
            if not isinstance(emb, list):
                raise SkillhubError("Embedding response item has no embedding.")
            vectors.append([float(v) for v in emb])
        return vectors


def _cosine(a: list[float] | tuple[float, ...], b: list[float] | tuple[float, ...]) -> float:
    if len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if na == 0 or nb == 0:
        return 0.0
    return dot / (na * nb)


def _matches_filter(metadata: dict[str, Any], flt: dict[str, Any] | None) -> bool:
    if not flt:
        return True
    return all(metadata.get(k) == v for k, v in flt.items())


class LocalVectorIndex:
    """
    Single-file vector index for local, single-user installs.

    Records are kept in a JSON document and ranked by brute-force cosine
    similarity. A hosted vector database should be used for anything larger.
    """

    def __init__(self, path: Path) -> None:
        self.path = path.expanduser()
        self._lock = asyncio.Lock()

    def _load(self) -> dict[str, dict[str, Any]]:
        """Read every record. An unreadable file raises rather than being overwritten on the next save."""
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise SkillhubError(f"Vector index {self.path} is unreadable: {e}") from e
        records = raw.get("records") if isinstance(raw, dict) else None
        if not isinstance(records, dict):
            raise SkillhubError(f"Vector index {self.path} has no records object.")
        return records

    def _save(self, records: dict[str, dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps({"records": records}, sort_keys=True) + "\n", encoding="utf-8")
        tmp.replace(self.path)

    async def upsert(self, records: list[VectorRecord]) -> None:
        async with self._lock:
            current = await asyncio.to_thread(self._load)
            for rec in records:
                current[rec.id] = {"values": list(rec.values), "metadata": dict(rec.metadata)}
            await asyncio.to_thread(self._save, current)

    async def delete_by_ids(self, ids: list[str]) -> None:
        async with self._lock:
            current = await asyncio.to_thread(self._load)
            if not any(i in current for i in ids):
                return
            for i in ids:
                current.pop(i, None)
            await asyncio.to_thread(self._save, current)

    async def query(
        self,
        vector: list[float],
        *,
        top_k: int,
        filter: dict[str, Any] | None = None,
        return_metadata: bool = True,
    ) -> list[VectorMatch]:
        current = await asyncio.to_thread(self._load)
        scored: list[VectorMatch] = []
        for rid, item in current.items():
            metadata = item.get("metadata") or {}
            if not _matches_filter(metadata, filter):
                continue
            score = _cosine(vector, item.get("values") or [])
            scored.append(VectorMatch(id=rid, score=score, metadata=dict(metadata) if return_metadata else None))
        scored.sort(key=lambda m: (-m.score, m.id))
        return scored[:top_k]
