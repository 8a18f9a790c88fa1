from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .cache_metadata import TileCacheMetadata

logger = logging.getLogger(__name__)

MANIFEST_NAME = "cache-manifest.json"
MANIFEST_VERSION = 1
TILE_SUFFIX = ".glb"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def cache_key(url: str) -> str:
    return hashlib.sha1(url.encode("utf-8")).hexdigest()


def _atomic_write_bytes(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


class CacheEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: str
    size_bytes: int = Field(ge=0)
    stored_at: str
    metadata: Optional[TileCacheMetadata] = None


class CacheManifest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    version: int = MANIFEST_VERSION
    entries: dict[str, CacheEntry] = Field(default_factory=dict)


@dataclass(frozen=True)
class CachedTile:
    path: Path
    size_bytes: int
    metadata: Optional[TileCacheMetadata]


class TileCache:
    """Content-addressed tile files plus a JSON manifest of freshness metadata.

    Files are named ``sha1(url).glb``; the manifest entry uses the same hash.
    Both are written with rename-after-write so concurrent readers never see
    partial files.
    """

    def __init__(self, cache_dir: Union[str, Path]) -> None:
        self._dir = Path(cache_dir).expanduser()
        self._dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._manifest = self._load_manifest()

    @property
    def directory(self) -> Path:
        return self._dir

    @property
    def manifest_path(self) -> Path:
        return self._dir / MANIFEST_NAME

    def path_for(self, url: str) -> Path:
        return self._dir / f"{cache_key(url)}{TILE_SUFFIX}"

    def _load_manifest(self) -> CacheManifest:
        path = self.manifest_path
        if not path.is_file():
            return CacheManifest()
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            manifest = CacheManifest.model_validate(raw)
        except (OSError, ValueError, ValidationError) as exc:
            logger.warning(
                "tile_cache_manifest_unreadable",
                extra={"manifest_path": str(path), "error": str(exc)},
            )
            return CacheManifest()
        if manifest.version != MANIFEST_VERSION:
            logger.warning(
                "tile_cache_manifest_version_mismatch",
                extra={"manifest_path": str(path), "version": manifest.version},
            )
            return CacheManifest()
        return manifest

    def _save_manifest(self) -> None:
        payload = self._manifest.model_dump_json(indent=2)
        _atomic_write_bytes(self.manifest_path, payload.encode("utf-8"))

    def lookup(self, url: str) -> Optional[CachedTile]:
        path = self.path_for(url)
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            return None
        with self._lock:
            entry = self._manifest.entries.get(cache_key(url))
        return CachedTile(path=path, size_bytes=size, metadata=entry.metadata if entry else None)

    def store(
        self, url: str, data: bytes, metadata: Optional[TileCacheMetadata]
    ) -> CachedTile:
        path = self.path_for(url)
        _atomic_write_bytes(path, data)
        with self._lock:
            self._manifest.entries[cache_key(url)] = CacheEntry(
                url=url, size_bytes=len(data), stored_at=_utc_now_iso(), metadata=metadata
            )
            self._save_manifest()
        return CachedTile(path=path, size_bytes=len(data), metadata=metadata)

    def update_metadata(self, url: str, metadata: Optional[TileCacheMetadata]) -> None:
        key = cache_key(url)
        with self._lock:
            entry = self._manifest.entries.get(key)
            if entry is None:
                size = self.path_for(url).stat().st_size
                entry = CacheEntry(url=url, size_bytes=size, stored_at=_utc_now_iso())
            self._manifest.entries[key] = entry.model_copy(update={"metadata": metadata})
            self._save_manifest()

    def clear(self) -> int:
        removed = 0
        with self._lock:
            for path in self._dir.glob(f"*{TILE_SUFFIX}"):
                path.unlink(missing_ok=True)
                removed += 1
            self.manifest_path.unlink(missing_ok=True)
            self._manifest = CacheManifest()
        logger.info(
            "tile_cache_cleared", extra={"cache_dir": str(self._dir), "removed": removed}
        )
        return removed
