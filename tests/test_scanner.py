"""Tests for the package scanner."""

from __future__ import annotations

import asyncio
from pathlib import Path

from canonical_manager.data.index import CanonicalIndex
from canonical_manager.data.scanner import PackageScanner, has_core_dependency, is_core_package
from canonical_manager.domain.models import PackageId
from helpers import CODES_URL, PATIENT_URL, build_index, make_package, write_json


def _scan(node_modules: Path):
    index = CanonicalIndex()
    warnings = asyncio.run(PackageScanner(index).scan_directory(node_modules))
    return index, warnings


class TestCorePackages:
    def test_core_names(self) -> None:
        assert is_core_package("hl7.fhir.r4.core")
        assert is_core_package("hl7.fhir.r5.core")
        assert not is_core_package("hl7.fhir.us.core")

    def test_core_dependency(self) -> None:
        assert has_core_dependency({"hl7.fhir.r4.core": "4.0.1"})
        assert not has_core_dependency({"hl7.fhir.us.core": "6.1.0"})
        assert not has_core_dependency(None)


class TestScanWithIndexFile:
    def test_indexes_listed_resources(self, two_package_index: CanonicalIndex) -> None:
        assert set(two_package_index.packages) == {"pkg-a", "pkg-b"}
        patients = two_package_index.entries_for_url(PATIENT_URL)
        assert [e.package for e in patients] == [
            PackageId(name="pkg-a", version="1.0.0"),
            PackageId(name="pkg-b", version="2.0.0"),
        ]
        assert patients[0].index_version == 1
        assert patients[0].kind == "resource"
        assert patients[0].type == "Patient"
        assert two_package_index.references.size() == 3

    def test_reference_metadata_points_at_file(self, two_package_index: CanonicalIndex, node_modules: Path) -> None:
        entry = two_package_index.entries_for_url(CODES_URL)[0]
        metadata = two_package_index.references.get(entry.id)
        assert metadata is not None
        assert metadata.file_path == str(node_modules / "pkg-a" / "ValueSet-codes.json")
        assert metadata.package_name == "pkg-a"
        assert metadata.resource_type == "ValueSet"

    def test_entries_without_url_are_skipped(self, node_modules: Path) -> None:
        make_package(
            node_modules,
            "pkg-a",
            "1.0.0",
            {
                "Patient-example.json": {"resourceType": "Patient", "id": "example"},
                "ValueSet-codes.json": {"resourceType": "ValueSet", "id": "codes", "url": CODES_URL},
            },
        )
        index, _ = _scan(node_modules)
        assert index.entry_count() == 1
        assert index.references.size() == 1

    def test_invalid_index_indexes_nothing(self, node_modules: Path) -> None:
        package_dir = make_package(
            node_modules,
            "pkg-a",
            "1.0.0",
            {"ValueSet-codes.json": {"resourceType": "ValueSet", "id": "codes", "url": CODES_URL}},
        )
        write_json(package_dir / ".index.json", {"index-version": "1", "files": []})
        index, _ = _scan(node_modules)
        assert "pkg-a" in index.packages
        assert index.entry_count() == 0

    def test_examples_index_processed(self, node_modules: Path) -> None:
        package_dir = make_package(node_modules, "pkg-a", "1.0.0", {})
        example = {"resourceType": "Patient", "id": "ex", "url": "http://example.org/fhir/Patient/ex"}
        write_json(package_dir / "examples" / "Patient-ex.json", example)
        write_json(
            package_dir / "examples" / ".index.json",
            {
                "index-version": 1,
                "files": [{"filename": "Patient-ex.json", "resourceType": "Patient", "id": "ex", "url": example["url"]}],
            },
        )
        index, _ = _scan(node_modules)
        entry = index.entries_for_url(example["url"])[0]
        assert index.references.get(entry.id).file_path == str(package_dir / "examples" / "Patient-ex.json")

    def test_undecodable_index_does_not_abort_scan(self, node_modules: Path) -> None:
        bad_dir = make_package(node_modules, "a-bad", "1.0.0", {})
        (bad_dir / ".index.json").write_bytes(b'{"index-version": 1, "files": [\xff\xfe]}')
        make_package(
            node_modules,
            "b-good",
            "1.0.0",
            {"ValueSet-codes.json": {"resourceType": "ValueSet", "id": "codes", "url": CODES_URL}},
        )

        index, _ = _scan(node_modules)

        assert set(index.packages) == {"a-bad", "b-good"}
        assert index.entries_for_url(CODES_URL)[0].package.name == "b-good"


class TestFallbackScan:
    def test_scans_top_level_resources(self, node_modules: Path) -> None:
        package_dir = make_package(
            node_modules,
            "pkg-a",
            "1.0.0",
            {
                "ValueSet-codes.json": {"resourceType": "ValueSet", "id": "codes", "url": CODES_URL},
                "Patient-example.json": {"resourceType": "Patient", "id": "example"},
            },
            with_index=False,
        )
        write_json(package_dir / "list.json", [1, 2, 3])
        (package_dir / "broken.json").write_text("{not json", encoding="utf-8")

        index, _ = _scan(node_modules)
        entries = list(index.iter_entries())
        assert len(entries) == 1
        assert entries[0].url == CODES_URL
        assert entries[0].index_version == 0


class TestScanDirectory:
    def test_scoped_packages(self, node_modules: Path) -> None:
        make_package(
            node_modules,
            "@acme/ig",
            "0.1.0",
            {"ValueSet-codes.json": {"resourceType": "ValueSet", "id": "codes", "url": CODES_URL}},
        )
        index, _ = _scan(node_modules)
        assert index.packages["@acme/ig"].id == PackageId(name="@acme/ig", version="0.1.0")
        assert index.entries_for_url(CODES_URL)[0].package.name == "@acme/ig"

    def test_skips_directories_without_manifest(self, node_modules: Path) -> None:
        (node_modules / "not-a-package").mkdir()
        write_json(node_modules / "not-a-package" / "vs.json", {"resourceType": "ValueSet", "url": CODES_URL})
        index, _ = _scan(node_modules)
        assert index.packages == {}
        assert index.entry_count() == 0

    def test_skips_malformed_manifest(self, node_modules: Path) -> None:
        write_json(node_modules / "pkg-a" / "package.json", {"name": "pkg-a"})
        index, _ = _scan(node_modules)
        assert index.packages == {}

    def test_missing_root(self, tmp_path: Path) -> None:
        index, warnings = _scan(tmp_path / "missing")
        assert warnings == []
        assert index.entry_count() == 0

    def test_keeps_raw_manifest(self, two_package_index: CanonicalIndex) -> None:
        info = two_package_index.packages["pkg-a"]
        assert info.package_json["dependencies"] == {"hl7.fhir.r4.core": "4.0.1"}
        assert info.fhir_versions == ["4.0.1"]


class TestScanWarnings:
    def test_complete_package_has_no_warning(self, node_modules: Path) -> None:
        make_package(
            node_modules,
            "pkg-a",
            "1.0.0",
            {"ValueSet-codes.json": {"resourceType": "ValueSet", "id": "codes", "url": CODES_URL}},
            fhir_versions=["4.0.1"],
            dependencies={"hl7.fhir.r4.core": "4.0.1"},
        )
        _, warnings = _scan(node_modules)
        assert warnings == []

    def test_core_package_needs_no_core_dependency(self, node_modules: Path) -> None:
        make_package(
            node_modules,
            "hl7.fhir.r4.core",
            "4.0.1",
            {"ValueSet-codes.json": {"resourceType": "ValueSet", "id": "codes", "url": CODES_URL}},
            fhir_versions=["4.0.1"],
        )
        _, warnings = _scan(node_modules)
        assert warnings == []

    def test_incomplete_package(self, node_modules: Path) -> None:
        make_package(
            node_modules,
            "pkg-a",
            "1.0.0",
            {"ValueSet-codes.json": {"resourceType": "ValueSet", "id": "codes", "url": CODES_URL}},
            with_index=False,
        )
        _, warnings = _scan(node_modules)
        assert warnings == ["pkg-a: no .index.json, no fhirVersions, no core dependency"]

    def test_empty_package_has_no_warning(self, node_modules: Path) -> None:
        make_package(node_modules, "pkg-a", "1.0.0", {}, with_index=False)
        _, warnings = _scan(node_modules)
        assert warnings == []


def test_build_index_helper_is_deterministic(node_modules: Path) -> None:
    make_package(node_modules, "pkg-b", "1.0.0", {"a.json": {"resourceType": "ValueSet", "id": "a", "url": CODES_URL}})
    make_package(node_modules, "pkg-a", "1.0.0", {"a.json": {"resourceType": "ValueSet", "id": "a", "url": CODES_URL}})
    names = [e.package.name for e in build_index(node_modules).entries_for_url(CODES_URL)]
    assert names == ["pkg-a", "pkg-b"]
