from typing import Dict, List, Optional

from canonical_manager.domain.models import ReferenceMetadata
from canonical_manager.storage.reference_store import ReferenceStore


class InMemoryReferenceStore(ReferenceStore):
    def __init__(self) -> None:
        self._references: Dict[str, ReferenceMetadata] = {}
        # dict keys double as an insertion-ordered set
        self._url_to_ids: Dict[str, Dict[str, None]] = {}

    def get(self, reference_id: str) -> Optional[ReferenceMetadata]:
        return self._references.get(reference_id)

    def set(self, reference_id: str, metadata: ReferenceMetadata) -> None:
        self._references[reference_id] = metadata
        if metadata.url:
            self._url_to_ids.setdefault(metadata.url, {})[reference_id] = None

    def has(self, reference_id: str) -> bool:
        return reference_id in self._references

    def size(self) -> int:
        return len(self._references)

    def clear(self) -> None:
        self._references.clear()
        self._url_to_ids.clear()

    def get_ids_by_url(self, url: str) -> List[str]:
        return list(self._url_to_ids.get(url, {}))

    def all_references(self) -> Dict[str, ReferenceMetadata]:
        return dict(self._references)
