from __future__ import annotations

import asyncio
import hashlib
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .client import PreconditionFailedError, SkillhubError

DEFAULT_PAGE_SIZE = 1000
STAGING_DIRNAME = ".staging"  # under the store root; never a valid key prefix


@dataclass(frozen=True)
class BlobObject:
    key: str
    body: bytes
    etag: str

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class ListPage:
    keys: tuple[str, ...]
    cursor: str | None = None

    @property
    def truncated(self) -> bool:
        return self.cursor is not None


class BlobStore(Protocol):
    async def put(
        self,
        key: str,
        body: bytes | str,
        *,
        if_match: str | None = None,
        if_none_match: bool = False,
    ) -> str:
        """Store ``body`` and return its new etag. Conditional writes raise PreconditionFailedError."""
        ...

    async def get(self, key: str) -> BlobObject | None:
        ...

    async def delete(self, keys: str | list[str]) -> None:
        ...

    async def list(self, prefix: str, cursor: str | None = None, limit: int = DEFAULT_PAGE_SIZE) -> ListPage:
        ...


def _as_bytes(body: bytes | str) -> bytes:
    return body.encode("utf-8") if isinstance(body, str) else bytes(body)


def _etag(body: bytes) -> str:
    return hashlib.sha256(body).hexdigest()


def _check_precondition(key: str, current: str | None, *, if_match: str | None, if_none_match: bool) -> None:
    if if_none_match and current is not None:
        raise PreconditionFailedError(f"{key} already exists")
    if if_match is not None and current != if_match:
        raise PreconditionFailedError(f"{key} changed since it was read")


def _page(keys: list[str], prefix: str, cursor: str | None, limit: int) -> ListPage:
    # Cursor is the last key of the previous page; keys are sorted.
    matching = sorted(k for k in keys if k.startswith(prefix) and (cursor is None or k > cursor))
    page = matching[:limit]
    next_cursor = page[-1] if len(matching) > limit else None
    return ListPage(keys=tuple(page), cursor=next_cursor)


class MemoryBlobStore:
    """In-process blob store. Useful for tests and ephemeral agents."""

    def __init__(self) -> None:
        self._objects: dict[str, bytes] = {}
        self._lock = asyncio.Lock()

    async def put(
        self,
        key: str,
        body: bytes | str,
        *,
        if_match: str | None = None,
        if_none_match: bool = False,
    ) -> str:
        data = _as_bytes(body)
        async with self._lock:
            existing = self._objects.get(key)
            current = _etag(existing) if existing is not None else None
            _check_precondition(key, current, if_match=if_match, if_none_match=if_none_match)
            self._objects[key] = data
        return _etag(data)

    async def get(self, key: str) -> BlobObject | None:
        data = self._objects.get(key)
        if data is None:
            return None
        return BlobObject(key=key, body=data, etag=_etag(data))

    async def delete(self, keys: str | list[str]) -> None:
        for key in [keys] if isinstance(keys, str) else keys:
            self._objects.pop(key, None)

    async def list(self, prefix: str, cursor: str | None = None, limit: int = DEFAULT_PAGE_SIZE) -> ListPage:
        return _page(list(self._objects), prefix, cursor, limit)


class FileBlobStore:
    """Blob store backed by a directory; keys map to relative file paths."""

    def __init__(self, root: Path) -> None:
        self.root = root.expanduser()
        self._lock = asyncio.Lock()

    def _path(self, key: str) -> Path:
        parts = key.split("/")
        if not key or key.startswith("/") or any(part in ("", ".", "..") for part in parts):
            raise SkillhubError(f"Invalid blob key: {key!r}")
        if parts[0] == STAGING_DIRNAME:
            raise SkillhubError(f"Invalid blob key: {key!r}")
        return self.root.joinpath(*parts)

    def _read(self, key: str) -> bytes | None:
        path = self._path(key)
        if not path.is_file():
            return None
        return path.read_bytes()

    def _write(self, key: str, data: bytes) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        staging = self.root / STAGING_DIRNAME
        staging.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=staging, prefix="blob-", delete=False) as fh:
            fh.write(data)
        try:
            os.replace(fh.name, path)
        except OSError:
            os.unlink(fh.name)
            raise

    def _remove(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        # Prune empty parent directories up to the root.
        parent = path.parent
        while parent != self.root and parent.is_dir():
            try:
                parent.rmdir()
            except OSError:
                break
            parent = parent.parent

    def _all_keys(self) -> list[str]:
        if not self.root.is_dir():
            return []
        keys: list[str] = []
        for dirpath, dirnames, filenames in os.walk(self.root):
            if Path(dirpath) == self.root:
                dirnames[:] = [d for d in dirnames if d != STAGING_DIRNAME]
            for filename in filenames:
                rel = Path(dirpath, filename).relative_to(self.root)
                keys.append("/".join(rel.parts))
        return keys

    async def put(
        self,
        key: str,
        body: bytes | str,
        *,
        if_match: str | None = None,
        if_none_match: bool = False,
    ) -> str:
        data = _as_bytes(body)
        async with self._lock:
            existing = await asyncio.to_thread(self._read, key)
            current = _etag(existing) if existing is not None else None
            _check_precondition(key, current, if_match=if_match, if_none_match=if_none_match)
            await asyncio.to_thread(self._write, key, data)
        return _etag(data)

    async def get(self, key: str) -> BlobObject | None:
        data = await asyncio.to_thread(self._read, key)
        if data is None:
            return None
        return BlobObject(key=key, body=data, etag=_etag(data))

    async def delete(self, keys: str | list[str]) -> None:
        async with self._lock:
            for key in [keys] if isinstance(keys, str) else keys:
                await asyncio.to_thread(self._remove, key)

    async def list(self, prefix: str, cursor: str | None = None, limit: int = DEFAULT_PAGE_SIZE) -> ListPage:
        keys = await asyncio.to_thread(self._all_keys)
        return _page(keys, prefix, cursor, limit)
