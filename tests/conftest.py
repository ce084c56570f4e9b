from __future__ import annotations

from pathlib import Path

import pytest

from canonical_manager.data.index import CanonicalIndex
from helpers import (
    CODES_URL,
    FakeInstaller,
    build_index,
    make_two_package_tree,
    patient_profile,
)


@pytest.fixture
def node_modules(tmp_path: Path) -> Path:
    path = tmp_path / "node_modules"
    path.mkdir()
    return path


@pytest.fixture
def two_package_index(node_modules: Path) -> CanonicalIndex:
    make_two_package_tree(node_modules)
    return build_index(node_modules)


@pytest.fixture
def fake_installer() -> FakeInstaller:
    return FakeInstaller(
        {
            "pkg-a@1.0.0": (
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
            ),
            "pkg-b@2.0.0": (
                "pkg-b",
                "2.0.0",
                {"StructureDefinition-Patient.json": patient_profile("2.0.0", "PatientB")},
            ),
        }
    )
