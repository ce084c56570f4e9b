"""
Pydantic models for the canonical manager.

This module defines all data models used throughout the library, including:
- Package identity and installed-package metadata
- Reference metadata and index entries for the in-memory index
- Resources read from disk (known fields plus an open field set)
- The pre-built `.index.json` and `package.json` file formats
- The persisted cache snapshot and manager configuration

Python field names are snake_case; on disk the FHIR NPM package spelling is
kept through aliases (`resourceType`, `indexVersion`, `index-version`, ...).
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr


NonEmptyStr = Annotated[StrictStr, Field(min_length=1)]


# ---------------------------------------------------------------------------
# Package Models
# ---------------------------------------------------------------------------


class PackageId(BaseModel):
    """Identifies one installed content package."""

    name: str = Field(
        description="Package name, e.g. 'hl7.fhir.r4.core'.",
    )
    version: str = Field(
        description="Package version, e.g. '4.0.1'.",
    )


class PackageInfo(BaseModel):
    """
    One entry per installed package discovered by the scanner.

    Registered as soon as the manifest is read, even when the package turns
    out to hold no resources.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: PackageId = Field(
        description="Name and version of the package.",
    )
    path: str = Field(
        description="Filesystem path of the installed package directory.",
    )
    canonical: Optional[str] = Field(
        default=None,
        description="Canonical base URL declared in the manifest.",
    )
    fhir_versions: Optional[List[str]] = Field(
        default=None,
        alias="fhirVersions",
        description="FHIR versions the package declares support for.",
    )
    package_json: Optional[Dict[str, Any]] = Field(
        default=None,
        alias="packageJson",
        description="Raw manifest content as read from disk.",
    )


class PackageManifest(BaseModel):
    """
    A package's `package.json` manifest.

    Only `name` and `version` are required; unknown keys are preserved.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: NonEmptyStr
    version: NonEmptyStr
    fhir_versions: Optional[List[str]] = Field(default=None, alias="fhirVersions")
    type: Optional[str] = None
    canonical: Optional[str] = None
    dependencies: Optional[Dict[str, str]] = None


# ---------------------------------------------------------------------------
# Reference and Index Models
# ---------------------------------------------------------------------------


class ReferenceMetadata(BaseModel):
    """
    Location metadata for one physical resource file.

    The owning reference id is derived from (package_name, package_version,
    file_path), see `storage.reference_store.generate_reference_id`.
    """

    model_config = ConfigDict(populate_by_name=True)

    package_name: str = Field(alias="packageName")
    package_version: str = Field(alias="packageVersion")
    file_path: str = Field(alias="filePath")
    resource_type: str = Field(alias="resourceType")
    url: Optional[str] = None
    version: Optional[str] = None


class Reference(BaseModel):
    """Content-addressed handle usable to fetch a full resource later."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    resource_type: str = Field(alias="resourceType")


class IndexEntry(Reference):
    """
    Lightweight record standing in for a full resource in the index.

    `index_version` records provenance: 0 when the entry was derived by a
    fallback scan of raw files, otherwise the source `.index.json` version.
    """

    index_version: int = Field(alias="indexVersion")
    kind: Optional[str] = None
    url: Optional[str] = None
    type: Optional[str] = None
    version: Optional[str] = None
    package: Optional[PackageId] = None


class SourceContext(BaseModel):
    """Where a canonical reference was encountered, used to scope resolution."""

    id: Optional[str] = None
    package: Optional[PackageId] = None
    url: Optional[str] = None
    path: Optional[str] = None


# ---------------------------------------------------------------------------
# Resource Models
# ---------------------------------------------------------------------------


class Resource(BaseModel):
    """
    A resource read from disk.

    Only the fields the engine inspects are declared; every other key of the
    source document is carried through untouched (`extra="allow"`) and can be
    read as an attribute or through `to_dict()`.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    resource_type: str = Field(alias="resourceType")
    url: Optional[str] = None
    version: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Return the resource in its native JSON shape."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class SearchParameter(Resource):
    """A SearchParameter resource: one queryable `code` for the `base` types."""

    code: Optional[str] = None
    base: List[str] = Field(default_factory=list)
    name: Optional[str] = None
    type: Optional[str] = None
    expression: Optional[str] = None
    target: Optional[List[str]] = None


# ---------------------------------------------------------------------------
# Pre-built Index File Models
# ---------------------------------------------------------------------------


class IndexFileEntry(BaseModel):
    """One `files[]` element of a package's `.index.json`."""

    model_config = ConfigDict(populate_by_name=True)

    filename: NonEmptyStr
    resource_type: NonEmptyStr = Field(alias="resourceType")
    id: NonEmptyStr
    url: Optional[StrictStr] = None
    version: Optional[StrictStr] = None
    kind: Optional[StrictStr] = None
    type: Optional[StrictStr] = None


class IndexFile(BaseModel):
    """A package's pre-built `.index.json` resource index."""

    model_config = ConfigDict(populate_by_name=True)

    index_version: StrictInt = Field(alias="index-version")
    files: List[IndexFileEntry]


# ---------------------------------------------------------------------------
# Cache Snapshot
# ---------------------------------------------------------------------------


class CacheSnapshot(BaseModel):
    """
    Serialized form of the whole in-memory index.

    Persisted at: <WORKING_DIR>/.fcm/cache/<cacheKey>/index.json
    """

    model_config = ConfigDict(populate_by_name=True)

    entries: Dict[str, List[IndexEntry]] = Field(
        default_factory=dict,
        description="Index entries grouped by canonical URL, in scan-insertion order.",
    )
    packages: Dict[str, PackageInfo] = Field(
        default_factory=dict,
        description="Installed packages keyed by package name.",
    )
    references: Dict[str, ReferenceMetadata] = Field(
        default_factory=dict,
        description="Reference metadata keyed by reference id.",
    )
    cache_key: Optional[str] = Field(
        default=None,
        alias="cacheKey",
        description="Key the snapshot was written under, checked again on load.",
    )


# ---------------------------------------------------------------------------
# Configuration Models
# ---------------------------------------------------------------------------


class ManagerConfig(BaseModel):
    """Configuration for one `CanonicalManager` instance."""

    packages: List[str] = Field(
        default_factory=list,
        description="Package specifications to install and index (e.g. 'hl7.fhir.r4.core@4.0.1').",
    )
    working_dir: Path = Field(
        description="Directory holding the cache snapshots and installed packages.",
    )
    registry: Optional[str] = Field(
        default=None,
        description="Package registry base URL. Defaults to the public FHIR package registry.",
    )
    drop_cache: bool = Field(
        default=False,
        description="If True, persisted snapshots are flushed on the first init().",
    )
    collect_warnings: bool = Field(
        default=False,
        description="If True, advisory per-package scan warnings are collected and logged.",
    )


class LocalPackageConfig(BaseModel):
    """A package sourced from a local folder instead of a registry."""

    name: str = Field(
        description="Package name the folder is installed under.",
    )
    version: str = Field(
        description="Package version recorded for the folder.",
    )
    path: Path = Field(
        description="Path to the local package folder.",
    )
    dependencies: List[str] = Field(
        default_factory=list,
        description="Registry package specs the local package depends on.",
    )


class TgzPackageConfig(BaseModel):
    """A package sourced from a local `.tgz` archive."""

    archive_path: Path = Field(
        description="Path to the .tgz archive file.",
    )
