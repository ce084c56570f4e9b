"""Tests for package spec helpers."""

from __future__ import annotations

from pathlib import Path

import pytest

from canonical_manager.domain.models import PackageId
from canonical_manager.domain.package_spec import (
    DEFAULT_REGISTRY,
    is_path_spec,
    is_url_spec,
    is_valid_package_ref,
    normalize_package_spec,
    normalize_registry_url,
    package_install_path,
    parse_package_ref,
)


class TestParsePackageRef:
    def test_name_and_version(self) -> None:
        assert parse_package_ref("hl7.fhir.r4.core@4.0.1") == PackageId(name="hl7.fhir.r4.core", version="4.0.1")

    def test_missing_version_is_latest(self) -> None:
        assert parse_package_ref("hl7.fhir.r4.core") == PackageId(name="hl7.fhir.r4.core", version="latest")

    def test_scoped_name(self) -> None:
        assert parse_package_ref("@acme/ig@1.2.3") == PackageId(name="@acme/ig", version="1.2.3")

    def test_scoped_name_without_version(self) -> None:
        assert parse_package_ref("@acme/ig") == PackageId(name="@acme/ig", version="latest")

    def test_empty_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            parse_package_ref("  ")


class TestSpecKinds:
    def test_url_spec(self) -> None:
        assert is_url_spec("https://example.org/pkg.tgz")
        assert not is_url_spec("pkg@1.0.0")

    def test_path_spec(self) -> None:
        assert is_path_spec("./local")
        assert is_path_spec("../local")
        assert is_path_spec("/abs/pkg.tgz")
        assert not is_path_spec("pkg@1.0.0")

    def test_normalize_makes_paths_absolute(self) -> None:
        assert normalize_package_spec("./local") == str(Path("./local").resolve())
        assert normalize_package_spec("pkg@1.0.0") == "pkg@1.0.0"

    def test_valid_refs(self) -> None:
        assert is_valid_package_ref("hl7.fhir.r4.core@4.0.1")
        assert is_valid_package_ref("@acme/ig@^1.0.0")
        assert is_valid_package_ref("https://example.org/pkg.tgz")
        assert is_valid_package_ref("/tmp/packages/ig.tgz")

    def test_invalid_refs(self) -> None:
        assert not is_valid_package_ref("not a package!")
        assert not is_valid_package_ref("pkg@1.0.0; rm -rf")


class TestRegistryUrl:
    def test_default(self) -> None:
        assert normalize_registry_url(None) == DEFAULT_REGISTRY

    def test_trailing_slash_added(self) -> None:
        assert normalize_registry_url("https://packages.example.org") == "https://packages.example.org/"

    def test_trailing_slash_kept(self) -> None:
        assert normalize_registry_url("https://packages.example.org/") == "https://packages.example.org/"


class TestInstallPath:
    def test_plain_name(self, tmp_path: Path) -> None:
        assert package_install_path(tmp_path, "pkg-a") == tmp_path / "pkg-a"

    def test_scoped_name(self, tmp_path: Path) -> None:
        assert package_install_path(tmp_path, "@acme/ig") == tmp_path / "@acme" / "ig"
