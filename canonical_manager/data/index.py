"""
In-memory index of installed packages and the resources they publish.
"""
from __future__ import annotations

from typing import Dict, Iterator, List, Optional

from canonical_manager.domain.models import CacheSnapshot, IndexEntry, PackageInfo
from canonical_manager.storage.memory_reference_store import InMemoryReferenceStore
from canonical_manager.storage.reference_store import ReferenceStore


class CanonicalIndex:
    """
    Entries grouped by canonical URL, installed packages by name, and the
    reference store locating every indexed file.

    Several packages (or versions of one package) may publish the same
    canonical URL, so each URL maps to a list kept in scan-insertion order.
    """

    def __init__(self, references: Optional[ReferenceStore] = None):
        self.entries: Dict[str, List[IndexEntry]] = {}
        self.packages: Dict[str, PackageInfo] = {}
        self.references: ReferenceStore = references or InMemoryReferenceStore()

    def add_entry(self, entry: IndexEntry) -> None:
        if not entry.url:
            return
        self.entries.setdefault(entry.url, []).append(entry)

    def add_package(self, info: PackageInfo) -> None:
        # last write wins for a package name scanned twice
        self.packages[info.id.name] = info

    def entries_for_url(self, url: str) -> List[IndexEntry]:
        return list(self.entries.get(url, []))

    def iter_entries(self) -> Iterator[IndexEntry]:
        for bucket in self.entries.values():
            yield from bucket

    def entry_count(self) -> int:
        return sum(len(bucket) for bucket in self.entries.values())

    def clear(self) -> None:
        self.entries = {}
        self.packages = {}
        self.references.clear()

    def to_snapshot(self, cache_key: Optional[str] = None) -> CacheSnapshot:
        return CacheSnapshot(
            entries={url: list(bucket) for url, bucket in self.entries.items()},
            packages=dict(self.packages),
            references=self.references.all_references(),
            cache_key=cache_key,
        )

    @classmethod
    def from_snapshot(cls, snapshot: CacheSnapshot) -> CanonicalIndex:
        index = cls()
        index.entries = {url: list(bucket) for url, bucket in snapshot.entries.items()}
        index.packages = dict(snapshot.packages)
        for reference_id, metadata in snapshot.references.items():
            index.references.set(reference_id, metadata)
        return index
