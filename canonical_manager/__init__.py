"""
FHIR canonical manager.

Installs FHIR NPM packages, indexes the conformance resources they publish
by canonical URL, persists the index as a snapshot keyed by the package set,
and answers resolution and search queries against it.
"""
from canonical_manager.domain.errors import (
    AcquisitionError,
    CanonicalManagerError,
    InvalidReferenceError,
    NotInitializedError,
    PackageNotFoundError,
    ReadFailureError,
    ResolutionFilteredError,
    ResolutionNotFoundError,
)
from canonical_manager.domain.models import (
    IndexEntry,
    LocalPackageConfig,
    ManagerConfig,
    PackageId,
    PackageInfo,
    Reference,
    Resource,
    SearchParameter,
    SourceContext,
    TgzPackageConfig,
)
from canonical_manager.services.manager import CanonicalManager, ManagerState

__all__ = [
    "AcquisitionError",
    "CanonicalManager",
    "CanonicalManagerError",
    "IndexEntry",
    "InvalidReferenceError",
    "LocalPackageConfig",
    "ManagerConfig",
    "ManagerState",
    "NotInitializedError",
    "PackageId",
    "PackageInfo",
    "PackageNotFoundError",
    "ReadFailureError",
    "Reference",
    "Resource",
    "ResolutionFilteredError",
    "ResolutionNotFoundError",
    "SearchParameter",
    "SourceContext",
    "TgzPackageConfig",
]
