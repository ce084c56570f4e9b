"""
Persistence of the in-memory index, keyed by the requested package set.

Each cache key owns one record directory:

    <base_dir>/<cacheKey>/index.json   snapshot of the index
    <base_dir>/<cacheKey>/node/        acquisition destination for that key

A snapshot is reused only when its recorded key equals the key computed for
the current package set; there is no timestamp or staleness check.
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import uuid
from pathlib import Path
from typing import Iterable, Optional, Sequence

import aiofiles
from pydantic import ValidationError

from canonical_manager.data.index import CanonicalIndex
from canonical_manager.domain.models import CacheSnapshot, LocalPackageConfig
from canonical_manager.domain.package_spec import is_path_spec

logger = logging.getLogger(__name__)

CACHE_INDEX_FILENAME = "index.json"
INSTALL_DIRNAME = "node"

# Never part of a local package's content hash
TRANSIENT_DIRS = frozenset({"node_modules", ".git", ".fcm", "dist", "build", "__pycache__"})


def compute_cache_key(package_specs: Sequence[str]) -> str:
    """
    Hex SHA-256 of the sorted spec list serialized as compact JSON.

    Order-independent: ["a", "b"] and ["b", "a"] yield the same key.
    """
    content = json.dumps(sorted(package_specs), separators=(",", ":"))
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def compute_directory_hash(root: Path, exclude: Iterable[str] = TRANSIENT_DIRS) -> str:
    """
    Recursive content hash of a directory.

    Relative paths and file bytes are hashed in sorted walk order, so the
    result only changes when a file is added, removed, renamed or edited.
    """
    excluded = set(exclude)
    h = hashlib.sha256()
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in excluded)
        for filename in sorted(filenames):
            file_path = Path(dirpath) / filename
            relative = file_path.relative_to(root).as_posix()
            h.update(relative.encode("utf-8"))
            h.update(b"\0")
            with file_path.open("rb") as f:
                for chunk in iter(lambda: f.read(8192), b""):
                    h.update(chunk)
            h.update(b"\0")
    return h.hexdigest()


def compute_file_hash(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()


def path_spec_token(spec: str) -> Optional[str]:
    """
    Content token for a package spec naming a local folder or archive.

    Returns None when the path does not exist; installation reports that.
    """
    path = Path(spec)
    if path.is_dir():
        return f"path:{spec}:{compute_directory_hash(path)}"
    if path.is_file():
        return f"path:{spec}:{compute_file_hash(path)}"
    return None


def local_package_token(config: LocalPackageConfig) -> str:
    """Spec-list token standing for a local package, including its content hash."""
    content_hash = compute_directory_hash(config.path)
    return f"local:{config.name}@{config.version}:{content_hash}"


def compute_manager_cache_key(
    package_specs: Sequence[str],
    local_packages: Sequence[LocalPackageConfig] = (),
) -> str:
    """
    Cache key for a manager's package set.

    Local packages and path specs (folders or `.tgz` archives) contribute a
    token that embeds their content hash, so editing local resource files
    invalidates the cache even though the spec string is unchanged.
    """
    specs = list(package_specs)
    for spec in package_specs:
        if is_path_spec(spec):
            token = path_spec_token(spec)
            if token is not None:
                specs.append(token)
    specs.extend(local_package_token(config) for config in local_packages)
    return compute_cache_key(specs)


class CacheStore:
    """Reads and writes index snapshots under a cache base directory."""

    def __init__(self, base_dir: Path):
        self.base_dir = base_dir

    def record_dir(self, cache_key: str) -> Path:
        return self.base_dir / cache_key

    def snapshot_path(self, cache_key: str) -> Path:
        return self.record_dir(cache_key) / CACHE_INDEX_FILENAME

    def install_dir(self, cache_key: str) -> Path:
        return self.record_dir(cache_key) / INSTALL_DIRNAME

    async def save(self, index: CanonicalIndex, cache_key: str) -> Path:
        """
        Persist the full index under `cache_key`, replacing any prior snapshot.

        The snapshot is written to a temp file first and moved into place, so
        readers never observe a partially written file.
        """
        record_dir = self.record_dir(cache_key)
        record_dir.mkdir(parents=True, exist_ok=True)

        snapshot = index.to_snapshot(cache_key)
        payload = snapshot.model_dump_json(by_alias=True, exclude_none=True, indent=2)

        target = self.snapshot_path(cache_key)
        tmp_path = record_dir / f"{CACHE_INDEX_FILENAME}.{uuid.uuid4().hex}.tmp"
        try:
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(payload)
            tmp_path.replace(target)
        finally:
            if tmp_path.exists():
                tmp_path.unlink(missing_ok=True)

        logger.info(
            f"Saved index snapshot {cache_key[:12]} "
            f"({index.entry_count()} entries, {len(index.packages)} packages)"
        )
        return target

    async def load(self, cache_key: str) -> Optional[CacheSnapshot]:
        """
        Load the snapshot for `cache_key`.

        Returns None when it is missing, unparsable, or was recorded under a
        different key. Never raises.
        """
        path = self.snapshot_path(cache_key)
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                content = await f.read()
        except (OSError, ValueError):
            # missing, or not decodable as UTF-8
            return None

        try:
            snapshot = CacheSnapshot.model_validate_json(content)
        except ValidationError as e:
            logger.debug(f"Ignoring unusable snapshot {path}: {e.error_count()} error(s)")
            return None

        if snapshot.cache_key != cache_key:
            logger.debug(
                f"Ignoring snapshot {path}: recorded key {snapshot.cache_key} does not match"
            )
            return None
        return snapshot

    async def flush(self) -> None:
        """Remove every persisted snapshot and install directory."""
        if self.base_dir.exists():
            shutil.rmtree(self.base_dir)
            logger.info(f"Flushed cache directory {self.base_dir}")
