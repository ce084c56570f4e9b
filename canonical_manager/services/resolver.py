"""
Resolve canonical URLs to index entries and read the resources behind them.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import List, Optional, Type, TypeVar

import aiofiles

from canonical_manager.data.index import CanonicalIndex
from canonical_manager.domain.errors import (
    InvalidReferenceError,
    ReadFailureError,
    ResolutionFilteredError,
    ResolutionNotFoundError,
)
from canonical_manager.domain.models import (
    IndexEntry,
    PackageId,
    Reference,
    Resource,
    SourceContext,
)

logger = logging.getLogger(__name__)

ResourceT = TypeVar("ResourceT", bound=Resource)


class ResolutionEngine:
    """
    Read-only queries over a `CanonicalIndex`.

    The index is never mutated here, so any number of queries may run
    concurrently against the same engine.
    """

    def __init__(self, index: CanonicalIndex):
        self.index = index

    def resolve_entry(
        self,
        url: str,
        package: Optional[str] = None,
        version: Optional[str] = None,
        source_context: Optional[SourceContext] = None,
    ) -> IndexEntry:
        """
        Return exactly one index entry for a canonical URL.

        Resolution order:
        1. If `source_context.package` is given, an entry published by that
           exact package (name and version) wins when one exists.
        2. Otherwise candidates for the URL are narrowed by `package` (name)
           and then `version` (resource version).
        3. The first remaining candidate in scan-insertion order is returned.

        Raises:
            ResolutionNotFoundError: the URL is not indexed at all.
            ResolutionFilteredError: the options eliminated every candidate.
        """
        if source_context is not None and source_context.package is not None:
            scoped = self._resolve_in_package(url, source_context.package)
            if scoped is not None:
                return scoped

        candidates = self.index.entries_for_url(url)
        if not candidates:
            raise ResolutionNotFoundError(url)

        if package:
            candidates = [e for e in candidates if e.package is not None and e.package.name == package]
        if version:
            candidates = [e for e in candidates if e.version == version]

        if not candidates:
            raise ResolutionFilteredError(url, package=package, version=version)
        return candidates[0]

    def _resolve_in_package(self, url: str, package: PackageId) -> Optional[IndexEntry]:
        for entry in self.index.entries_for_url(url):
            if entry.package == package:
                return entry
        logger.debug(f"{url} not found in context package {package.name}@{package.version}")
        return None

    async def read(self, reference: Reference, model: Type[ResourceT] = Resource) -> ResourceT:
        """
        Read the resource file behind a reference.

        The returned resource carries the reference's id and resource type in
        place of the ones stored in the file.

        Raises:
            InvalidReferenceError: the reference id is unknown.
            ReadFailureError: the file cannot be read or parsed.
        """
        metadata = self.index.references.get(reference.id)
        if metadata is None:
            raise InvalidReferenceError(reference.id)

        try:
            async with aiofiles.open(metadata.file_path, "r", encoding="utf-8-sig") as f:
                content = await f.read()
            data = json.loads(content)
            if not isinstance(data, dict):
                raise ValueError("resource document is not a JSON object")
            data["id"] = reference.id
            data["resourceType"] = reference.resource_type
            return model.model_validate(data)
        except (OSError, ValueError) as e:
            raise ReadFailureError(reference.id, metadata.file_path, e) from e

    async def resolve(
        self,
        url: str,
        package: Optional[str] = None,
        version: Optional[str] = None,
        source_context: Optional[SourceContext] = None,
    ) -> Resource:
        entry = self.resolve_entry(url, package=package, version=version, source_context=source_context)
        return await self.read(entry)

    def search_entries(
        self,
        kind: Optional[str] = None,
        url: Optional[str] = None,
        type: Optional[str] = None,
        version: Optional[str] = None,
        package: Optional[PackageId] = None,
    ) -> List[IndexEntry]:
        """
        AND-filter over the index. A `url` narrows the search to that URL's
        entries instead of scanning the whole index.
        """
        if url:
            results = self.index.entries_for_url(url)
        else:
            results = list(self.index.iter_entries())

        if kind is not None:
            results = [e for e in results if e.kind == kind]
        if type is not None:
            results = [e for e in results if e.type == type]
        if version is not None:
            results = [e for e in results if e.version == version]
        if package is not None:
            results = [e for e in results if e.package == package]
        return results

    async def read_all(self, entries: List[IndexEntry], model: Type[ResourceT] = Resource) -> List[ResourceT]:
        """Read entries concurrently; results keep the order of `entries`."""
        return list(await asyncio.gather(*(self.read(entry, model) for entry in entries)))

    async def search(
        self,
        kind: Optional[str] = None,
        url: Optional[str] = None,
        type: Optional[str] = None,
        version: Optional[str] = None,
        package: Optional[PackageId] = None,
    ) -> List[Resource]:
        entries = self.search_entries(kind=kind, url=url, type=type, version=version, package=package)
        return await self.read_all(entries)
