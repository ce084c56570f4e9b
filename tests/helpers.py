"""Builders for on-disk FHIR packages used across the test suite."""

from __future__ import annotations

import asyncio
import io
import json
import tarfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from canonical_manager.data.index import CanonicalIndex
from canonical_manager.data.scanner import PackageScanner
from canonical_manager.domain.errors import AcquisitionError
from canonical_manager.domain.models import PackageId
from canonical_manager.domain.package_spec import package_install_path
from canonical_manager.services.importer.package_installer import PackageAcquisitionService

PATIENT_URL = "http://example.org/fhir/StructureDefinition/Patient"
CODES_URL = "http://example.org/fhir/ValueSet/codes"

_INDEXED_FIELDS = ("url", "version", "kind", "type")


def write_json(path: Path, data: Any) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


def index_entries(resources: Dict[str, Dict[str, Any]]) -> List[Dict[str, Any]]:
    files = []
    for filename, resource in resources.items():
        entry = {"filename": filename, "resourceType": resource["resourceType"], "id": resource["id"]}
        for field in _INDEXED_FIELDS:
            if field in resource:
                entry[field] = resource[field]
        files.append(entry)
    return files


def make_package(
    node_modules: Path,
    name: str,
    version: str,
    resources: Dict[str, Dict[str, Any]],
    with_index: bool = True,
    fhir_versions: Optional[List[str]] = None,
    dependencies: Optional[Dict[str, str]] = None,
) -> Path:
    """Write an installed package: manifest, resource files and optionally `.index.json`."""
    package_dir = package_install_path(node_modules, name)
    manifest: Dict[str, Any] = {"name": name, "version": version}
    if fhir_versions is not None:
        manifest["fhirVersions"] = fhir_versions
    if dependencies is not None:
        manifest["dependencies"] = dependencies
    write_json(package_dir / "package.json", manifest)

    for filename, resource in resources.items():
        write_json(package_dir / filename, resource)
    if with_index:
        write_json(package_dir / ".index.json", {"index-version": 1, "files": index_entries(resources)})
    return package_dir


def patient_profile(version: str, name: str) -> Dict[str, Any]:
    return {
        "resourceType": "StructureDefinition",
        "id": "Patient",
        "url": PATIENT_URL,
        "version": version,
        "kind": "resource",
        "type": "Patient",
        "name": name,
    }


def make_two_package_tree(node_modules: Path) -> None:
    """pkg-a@1.0.0 and pkg-b@2.0.0 both publish the Patient profile."""
    make_package(
        node_modules,
        "pkg-a",
        "1.0.0",
        {
            "StructureDefinition-Patient.json": patient_profile("1.0.0", "PatientA"),
            "ValueSet-codes.json": {
                "resourceType": "ValueSet",
                "id": "codes",
                "url": CODES_URL,
                "version": "1.0.0",
            },
        },
        fhir_versions=["4.0.1"],
        dependencies={"hl7.fhir.r4.core": "4.0.1"},
    )
    make_package(
        node_modules,
        "pkg-b",
        "2.0.0",
        {"StructureDefinition-Patient.json": patient_profile("2.0.0", "PatientB")},
        fhir_versions=["4.0.1"],
        dependencies={"hl7.fhir.r4.core": "4.0.1"},
    )


def build_index(node_modules: Path) -> CanonicalIndex:
    index = CanonicalIndex()
    asyncio.run(PackageScanner(index).scan_directory(node_modules))
    return index


def build_tarball(
    manifest: Dict[str, Any],
    resources: Optional[Dict[str, Dict[str, Any]]] = None,
    extra_members: Sequence[Tuple[str, bytes]] = (),
) -> bytes:
    """An npm-style `.tgz` with everything under `package/`."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:

        def add(name: str, data: bytes) -> None:
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))

        add("package/package.json", json.dumps(manifest).encode("utf-8"))
        for filename, resource in (resources or {}).items():
            add(f"package/{filename}", json.dumps(resource).encode("utf-8"))
        if resources:
            index = {"index-version": 1, "files": index_entries(resources)}
            add("package/.index.json", json.dumps(index).encode("utf-8"))
        for name, data in extra_members:
            add(name, data)
    return buffer.getvalue()


class FakeInstaller(PackageAcquisitionService):
    """Writes packages from a fixed catalog instead of talking to a registry."""

    def __init__(self, catalog: Dict[str, Tuple[str, str, Dict[str, Dict[str, Any]]]]):
        self.catalog = catalog
        self.calls: List[List[str]] = []

    async def ensure_installed(self, package_specs, destination_dir, registry=None):
        self.calls.append(list(package_specs))
        node_modules = destination_dir / "node_modules"
        installed = []
        for spec in package_specs:
            if spec not in self.catalog:
                raise AcquisitionError(spec, "unknown package")
            name, version, resources = self.catalog[spec]
            make_package(node_modules, name, version, resources, fhir_versions=["4.0.1"])
            installed.append(PackageId(name=name, version=version))
        return installed
