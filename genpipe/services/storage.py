"""Blob and record store contracts plus local implementations.

The pipeline only talks to storage through two narrow protocols:
- ``BlobStore.put(data, content_type) -> url`` / ``BlobStore.get(url) -> bytes``
- ``RecordStore.upsert(table, key, fields)`` / ``RecordStore.query(table, **filters)``

``LocalBlobStore`` keeps blobs on the filesystem with path traversal
protection; the in-memory stores back tests and the CLI.
"""

import asyncio
import mimetypes
import uuid
from pathlib import Path
from typing import Any, Hashable, Optional, Protocol, runtime_checkable

_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
    "video/mp4": ".mp4",
}


def extension_for(content_type: str) -> str:
    return _EXTENSIONS.get(content_type) or mimetypes.guess_extension(content_type) or ".bin"


@runtime_checkable
class BlobStore(Protocol):
    async def put(self, data: bytes, content_type: str, *, key: Optional[str] = None) -> str: ...

    async def get(self, url: str) -> bytes: ...


@runtime_checkable
class RecordStore(Protocol):
    async def upsert(self, table: str, key: Hashable, fields: dict[str, Any]) -> None: ...

    async def query(self, table: str, **filters: Any) -> list[dict[str, Any]]: ...


class InMemoryBlobStore:
    """Dict-backed blob store; URLs look like ``mem://<key>``."""

    def __init__(self) -> None:
        self.blobs: dict[str, tuple[bytes, str]] = {}

    async def put(self, data: bytes, content_type: str, *, key: Optional[str] = None) -> str:
        key = key or f"{uuid.uuid4().hex}{extension_for(content_type)}"
        url = f"mem://{key}"
        self.blobs[url] = (data, content_type)
        return url

    async def get(self, url: str) -> bytes:
        try:
            return self.blobs[url][0]
        except KeyError:
            raise FileNotFoundError(url) from None


class InMemoryRecordStore:
    """Tables of ``key -> fields`` rows; ``upsert`` merges fields."""

    def __init__(self) -> None:
        self.tables: dict[str, dict[Hashable, dict[str, Any]]] = {}

    async def upsert(self, table: str, key: Hashable, fields: dict[str, Any]) -> None:
        rows = self.tables.setdefault(table, {})
        rows.setdefault(key, {}).update(fields)

    async def query(self, table: str, **filters: Any) -> list[dict[str, Any]]:
        rows = self.tables.get(table, {})
        return [
            dict(row) for row in rows.values()
            if all(row.get(name) == value for name, value in filters.items())
        ]


class LocalBlobStore:
    """
    Filesystem blob store.

    Blobs land under ``{base_dir}/{key}``; the returned URL is the resolved
    file path. Keys and URLs that resolve outside ``base_dir`` are rejected.
    """

    def __init__(self, base_dir: str | Path):
        """
        Args:
            base_dir: Root directory for all stored artifacts (created if missing).
        """
        self.base_dir = Path(base_dir).resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _resolve(self, relative: str | Path) -> Path:
        path = (self.base_dir / relative).resolve()

        # Path traversal protection
        if not path.is_relative_to(self.base_dir):
            raise ValueError(f"Invalid blob path: {relative}")
        return path

    async def put(self, data: bytes, content_type: str, *, key: Optional[str] = None) -> str:
        """
        Write ``data`` and return its URL.

        Args:
            data: Blob content
            content_type: MIME type, used for the default file extension
            key: Optional relative path such as ``grids/panel_0.png``

        Returns:
            Absolute file path of the stored blob
        """
        key = key or f"{uuid.uuid4().hex}{extension_for(content_type)}"
        path = self._resolve(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(path.write_bytes, data)
        return str(path)

    async def get(self, url: str) -> bytes:
        path = self._resolve(url)
        return await asyncio.to_thread(path.read_bytes)
