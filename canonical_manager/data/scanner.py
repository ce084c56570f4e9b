"""
Walk an installed package tree and populate the in-memory index.

Scanning is best-effort: an unreadable directory, a malformed manifest or an
unparsable resource file is skipped for that package or file only.
"""
from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles
from pydantic import ValidationError

from canonical_manager.data.index import CanonicalIndex
from canonical_manager.data.index_file import INDEX_FILENAME, parse_index
from canonical_manager.domain.models import (
    IndexEntry,
    PackageId,
    PackageInfo,
    PackageManifest,
    ReferenceMetadata,
)

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "package.json"
EXAMPLES_DIRNAME = "examples"

CORE_PACKAGE_PATTERN = re.compile(r"^hl7\.fhir\.r\d+\.core$")


def is_core_package(name: str) -> bool:
    return CORE_PACKAGE_PATTERN.match(name) is not None


def has_core_dependency(dependencies: Optional[Dict[str, str]]) -> bool:
    if not dependencies:
        return False
    return any(is_core_package(name) for name in dependencies)


def is_content_package(path: Path) -> bool:
    return (path / MANIFEST_FILENAME).is_file()


def _optional_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


async def _read_json(path: Path) -> Any:
    # utf-8-sig: some published packages ship files with a BOM
    async with aiofiles.open(path, "r", encoding="utf-8-sig") as f:
        content = await f.read()
    return json.loads(content)


class PackageScanner:
    """
    Populates a `CanonicalIndex` from a directory of installed packages.

    Usage:
        scanner = PackageScanner(index)
        warnings = await scanner.scan_directory(node_modules)
    """

    def __init__(self, index: CanonicalIndex):
        self.index = index

    async def scan_directory(self, root: Path) -> List[str]:
        """
        Scan every package directly under `root`.

        Directories whose name starts with '@' are scopes and are descended
        one level. Returns advisory warnings for packages that hold resources
        but lack an index, FHIR version metadata, or a core dependency.
        """
        warnings: List[str] = []
        try:
            candidates = sorted(p for p in root.iterdir() if p.is_dir())
        except OSError as e:
            logger.debug(f"Cannot list package root {root}: {e}")
            return warnings

        for candidate in candidates:
            if candidate.name.startswith("@"):
                try:
                    scoped = sorted(p for p in candidate.iterdir() if p.is_dir())
                except OSError as e:
                    logger.debug(f"Cannot list scope directory {candidate}: {e}")
                    continue
                package_dirs = scoped
            else:
                package_dirs = [candidate]

            for package_dir in package_dirs:
                if not is_content_package(package_dir):
                    continue
                warning = await self.scan_package(package_dir)
                if warning:
                    warnings.append(warning)

        return warnings

    async def scan_package(self, package_dir: Path) -> Optional[str]:
        """
        Register one package and index its resources.

        Returns an advisory warning string, or None when there is nothing to
        report (including when the manifest is missing or malformed).
        """
        manifest_path = package_dir / MANIFEST_FILENAME
        try:
            raw = await _read_json(manifest_path)
            manifest = PackageManifest.model_validate(raw)
        except (OSError, ValueError) as e:
            # ValidationError is a ValueError
            logger.debug(f"Skipping package at {package_dir}: unusable manifest ({e})")
            return None

        self.index.add_package(
            PackageInfo(
                id=PackageId(name=manifest.name, version=manifest.version),
                path=str(package_dir),
                canonical=manifest.canonical,
                fhir_versions=manifest.fhir_versions,
                package_json=raw,
            )
        )

        has_index = (package_dir / INDEX_FILENAME).is_file()
        if has_index:
            await self.process_index(package_dir, manifest)
            resource_count = 1
        else:
            resource_count = await self.scan_resource_files(package_dir, manifest)
            if resource_count > 0:
                logger.warning(
                    f"Index generated for {manifest.name} ({resource_count} resources)"
                )

        examples_dir = package_dir / EXAMPLES_DIRNAME
        if (examples_dir / INDEX_FILENAME).is_file():
            await self.process_index(examples_dir, manifest)

        # a package without resources is not a content package worth a warning
        if resource_count == 0:
            return None

        issues: List[str] = []
        if not has_index:
            issues.append("no .index.json")
        if not manifest.fhir_versions:
            issues.append("no fhirVersions")
        if not (is_core_package(manifest.name) or has_core_dependency(manifest.dependencies)):
            issues.append("no core dependency")

        if not issues:
            return None
        return f"{manifest.name}: {', '.join(issues)}"

    async def process_index(self, base_dir: Path, manifest: PackageManifest) -> int:
        """
        Index every file listed in `base_dir/.index.json` that has a url.

        An invalid index file is treated as absent for this directory; no
        fallback scan is attempted.
        """
        index_path = base_dir / INDEX_FILENAME
        try:
            async with aiofiles.open(index_path, "r", encoding="utf-8-sig") as f:
                content = await f.read()
        except (OSError, ValueError) as e:
            logger.debug(f"Cannot read {index_path}: {e}")
            return 0

        index_file = parse_index(content, str(index_path))
        if index_file is None:
            return 0

        count = 0
        for file in index_file.files:
            if not file.url:
                continue
            self._register(
                file_path=base_dir / file.filename,
                manifest=manifest,
                resource_type=file.resource_type,
                index_version=index_file.index_version,
                url=file.url,
                version=file.version,
                kind=file.kind,
                type_=file.type,
            )
            count += 1
        return count

    async def scan_resource_files(self, package_dir: Path, manifest: PackageManifest) -> int:
        """
        Fallback for packages without `.index.json`: index every top-level
        JSON file carrying both `resourceType` and `url`.
        """
        try:
            files = sorted(
                p for p in package_dir.iterdir()
                if p.is_file()
                and p.name.endswith(".json")
                and p.name not in (MANIFEST_FILENAME, INDEX_FILENAME)
            )
        except OSError as e:
            logger.debug(f"Cannot list package directory {package_dir}: {e}")
            return 0

        count = 0
        for path in files:
            try:
                resource = await _read_json(path)
            except (OSError, ValueError) as e:
                logger.debug(f"Skipping unparsable file {path}: {e}")
                continue

            if not isinstance(resource, dict):
                continue
            resource_type = _optional_str(resource.get("resourceType"))
            url = _optional_str(resource.get("url"))
            if not resource_type or not url:
                continue

            try:
                self._register(
                    file_path=path,
                    manifest=manifest,
                    resource_type=resource_type,
                    index_version=0,
                    url=url,
                    version=_optional_str(resource.get("version")),
                    kind=_optional_str(resource.get("kind")),
                    type_=_optional_str(resource.get("type")),
                )
            except ValidationError as e:
                logger.debug(f"Skipping {path}: {e}")
                continue
            count += 1
        return count

    def _register(
        self,
        *,
        file_path: Path,
        manifest: PackageManifest,
        resource_type: str,
        index_version: int,
        url: str,
        version: Optional[str],
        kind: Optional[str],
        type_: Optional[str],
    ) -> None:
        references = self.index.references
        file_path_str = str(file_path)
        reference_id = references.generate_id(manifest.name, manifest.version, file_path_str)
        references.set(
            reference_id,
            ReferenceMetadata(
                package_name=manifest.name,
                package_version=manifest.version,
                file_path=file_path_str,
                resource_type=resource_type,
                url=url,
                version=version,
            ),
        )
        self.index.add_entry(
            IndexEntry(
                id=reference_id,
                resource_type=resource_type,
                index_version=index_version,
                url=url,
                version=version,
                kind=kind,
                type=type_,
                package=PackageId(name=manifest.name, version=manifest.version),
            )
        )
