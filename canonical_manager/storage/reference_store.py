import base64
import hashlib
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from canonical_manager.domain.models import Reference, ReferenceMetadata


def generate_reference_id(package_name: str, package_version: str, file_path: str) -> str:
    """
    Derive the content-addressed id of a resource file.

    The id is the unpadded URL-safe base64 SHA-256 of
    '<package_name>@<package_version>:<file_path>', so it is stable across
    re-scans and independent of scan order.
    """
    key = f"{package_name}@{package_version}:{file_path}"
    digest = hashlib.sha256(key.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class ReferenceStore(ABC):
    """
    Abstract base class for the registry mapping reference ids to
    resource locations, with a reverse index from canonical URL to ids.
    """

    @staticmethod
    def generate_id(package_name: str, package_version: str, file_path: str) -> str:
        return generate_reference_id(package_name, package_version, file_path)

    @abstractmethod
    def get(self, reference_id: str) -> Optional[ReferenceMetadata]:
        """Get the metadata stored for a reference id."""
        pass

    @abstractmethod
    def set(self, reference_id: str, metadata: ReferenceMetadata) -> None:
        """
        Upsert metadata for a reference id.
        If the metadata carries a url, the id is added to that url's id set once.
        """
        pass

    @abstractmethod
    def has(self, reference_id: str) -> bool:
        pass

    @abstractmethod
    def size(self) -> int:
        pass

    @abstractmethod
    def clear(self) -> None:
        """Reset the store to empty."""
        pass

    @abstractmethod
    def get_ids_by_url(self, url: str) -> List[str]:
        """Ids registered for a canonical url, in first-registration order."""
        pass

    @abstractmethod
    def all_references(self) -> Dict[str, ReferenceMetadata]:
        """All stored metadata keyed by reference id."""
        pass

    def create_reference(self, reference_id: str, metadata: ReferenceMetadata) -> Reference:
        return Reference(id=reference_id, resource_type=metadata.resource_type)
