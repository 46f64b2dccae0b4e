"""Object storage for snapshot content (gzipped JSON blobs)."""
from __future__ import annotations

import asyncio
import gzip
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import httpx

from snapshotter.config import settings
from snapshotter.extraction.types import SnapshotContent

logger = logging.getLogger(__name__)

SNAPSHOT_CONTENT_TYPE = "application/gzip"


@dataclass(frozen=True)
class StorageResult:
    ok: bool
    path: str
    error: str | None = None


class ObjectStorage(Protocol):
    async def put(
        self, path: str, data: bytes, *, content_type: str, overwrite: bool = True
    ) -> StorageResult: ...

    async def get(self, path: str) -> bytes | None: ...


def snapshot_storage_path(space_id: object, save_id: object, prefix: str | None = None) -> str:
    """Deterministic location of a save's latest snapshot."""
    root = (prefix if prefix is not None else settings.SNAPSHOT_STORAGE_PREFIX).strip("/")
    return f"{root}/{space_id}/{save_id}/latest.json.gz"


def serialize_snapshot(content: SnapshotContent) -> bytes:
    return gzip.compress(json.dumps(content.to_dict(), ensure_ascii=False).encode("utf-8"))


def deserialize_snapshot(data: bytes) -> SnapshotContent:
    return SnapshotContent.from_dict(json.loads(gzip.decompress(data).decode("utf-8")))


class LocalObjectStorage:
    """Filesystem-backed storage rooted at ``STORAGE_LOCAL_ROOT``."""

    def __init__(self, root: str | Path | None = None) -> None:
        self.root = Path(root if root is not None else settings.STORAGE_LOCAL_ROOT)

    def _resolve(self, path: str) -> Path:
        target = (self.root / path.lstrip("/")).resolve()
        if not target.is_relative_to(self.root.resolve()):
            raise ValueError(f"storage path escapes root: {path}")
        return target

    def _write(self, path: str, data: bytes, overwrite: bool) -> None:
        target = self._resolve(path)
        if target.exists() and not overwrite:
            raise FileExistsError(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".tmp")
        tmp.write_bytes(data)
        tmp.replace(target)

    def _read(self, path: str) -> bytes | None:
        target = self._resolve(path)
        if not target.exists():
            return None
        return target.read_bytes()

    async def put(
        self, path: str, data: bytes, *, content_type: str, overwrite: bool = True
    ) -> StorageResult:
        try:
            await asyncio.to_thread(self._write, path, data, overwrite)
        except (OSError, ValueError) as exc:
            logger.error("Local storage write failed for %s: %s", path, exc)
            return StorageResult(ok=False, path=path, error=str(exc))
        return StorageResult(ok=True, path=path)

    async def get(self, path: str) -> bytes | None:
        return await asyncio.to_thread(self._read, path)


class SupabaseObjectStorage:
    """Supabase Storage REST API with the service-role key."""

    def __init__(
        self,
        base_url: str,
        service_key: str,
        bucket: str,
        *,
        timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key
        self.bucket = bucket
        self.timeout = timeout
        self._transport = transport

    def _object_url(self, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/{self.bucket}/{path.lstrip('/')}"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.service_key}",
            "apikey": self.service_key,
        }

    async def put(
        self, path: str, data: bytes, *, content_type: str, overwrite: bool = True
    ) -> StorageResult:
        headers = self._headers()
        headers["Content-Type"] = content_type
        headers["x-upsert"] = "true" if overwrite else "false"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(self._object_url(path), content=data, headers=headers)
                resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            message = f"HTTP {exc.response.status_code}: {exc.response.text[:200]}"
            logger.error("Storage upload failed for %s: %s", path, message)
            return StorageResult(ok=False, path=path, error=message)
        except httpx.HTTPError as exc:
            logger.error("Storage upload failed for %s: %s", path, exc)
            return StorageResult(ok=False, path=path, error=str(exc) or type(exc).__name__)
        return StorageResult(ok=True, path=path)

    async def get(self, path: str) -> bytes | None:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            resp = await client.get(self._object_url(path), headers=self._headers())
        if resp.status_code in (400, 404):
            return None
        resp.raise_for_status()
        return resp.content


def build_default_storage() -> ObjectStorage:
    if settings.STORAGE_BACKEND == "supabase":
        if not settings.SUPABASE_URL or not settings.SUPABASE_SERVICE_ROLE_KEY:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required for supabase storage")
        return SupabaseObjectStorage(
            settings.SUPABASE_URL,
            settings.SUPABASE_SERVICE_ROLE_KEY,
            settings.SNAPSHOT_STORAGE_BUCKET,
        )
    return LocalObjectStorage()
