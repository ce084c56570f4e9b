"""
Install packages that live on local disk rather than in a registry.
"""
from __future__ import annotations

import asyncio
import json
import logging
import shutil
from pathlib import Path
from typing import Any, Dict, List

import aiofiles

from canonical_manager.data.index_file import INDEX_FILENAME
from canonical_manager.domain.models import LocalPackageConfig, PackageId
from canonical_manager.domain.package_spec import (
    is_path_spec,
    is_url_spec,
    package_install_path,
    parse_package_ref,
)
from canonical_manager.services.importer.package_installer import (
    NODE_MODULES,
    read_workspace_manifest,
)

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "package.json"


def _is_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value)


async def generate_index_file(target_dir: Path) -> Path:
    """
    Write `.index.json` for the top-level JSON resources in `target_dir`.

    Every file with `resourceType` and `id` is listed; `kind` and `type`
    are recorded for StructureDefinitions only.

    Raises:
        ValueError: if the folder holds no resources.
    """
    files: List[Dict[str, Any]] = []
    for path in sorted(target_dir.iterdir()):
        if not path.is_file() or not path.name.endswith(".json"):
            continue
        if path.name in (MANIFEST_FILENAME, INDEX_FILENAME):
            continue

        try:
            async with aiofiles.open(path, "r", encoding="utf-8-sig") as f:
                resource = json.loads(await f.read())
        except (OSError, ValueError):
            continue

        if not isinstance(resource, dict):
            continue
        if not _is_text(resource.get("resourceType")) or not _is_text(resource.get("id")):
            continue

        entry: Dict[str, Any] = {
            "filename": path.name,
            "resourceType": resource["resourceType"],
            "id": resource["id"],
        }
        for field in ("url", "version"):
            if _is_text(resource.get(field)):
                entry[field] = resource[field]
        if resource["resourceType"] == "StructureDefinition":
            for field in ("kind", "type"):
                if _is_text(resource.get(field)):
                    entry[field] = resource[field]
        files.append(entry)

    if not files:
        raise ValueError(f"No valid FHIR resources found in folder: {target_dir}")

    index_path = target_dir / INDEX_FILENAME
    async with aiofiles.open(index_path, "w", encoding="utf-8") as f:
        await f.write(json.dumps({"index-version": 1, "files": files}, indent=2))
    logger.info(f"Generated {INDEX_FILENAME} for {target_dir} ({len(files)} resources)")
    return index_path


def registry_dependencies(specs: List[str]) -> Dict[str, str]:
    """Registry specs as a package.json dependency map; path and URL specs are skipped."""
    dependencies: Dict[str, str] = {}
    for spec in specs:
        if is_path_spec(spec) or is_url_spec(spec):
            continue
        ref = parse_package_ref(spec)
        dependencies[ref.name] = ref.version
    return dependencies


async def install_local_folder(config: LocalPackageConfig, destination_dir: Path) -> PackageId:
    """
    Copy a local package folder to `destination_dir/node_modules/<name>`.

    A `package.json` is written when the folder has none, declared registry
    dependencies are merged into it, and `.index.json` is generated when
    absent.
    """
    source = Path(config.path)
    if not source.is_dir():
        raise FileNotFoundError(f"Local package folder not found: {source}")

    target = package_install_path(destination_dir / NODE_MODULES, config.name)
    if target.exists():
        shutil.rmtree(target)
    target.parent.mkdir(parents=True, exist_ok=True)
    await asyncio.to_thread(
        shutil.copytree, source, target, ignore=shutil.ignore_patterns(NODE_MODULES, ".git", ".fcm")
    )

    manifest_path = target / MANIFEST_FILENAME
    if manifest_path.exists():
        manifest = json.loads(manifest_path.read_text(encoding="utf-8-sig"))
    else:
        manifest = {"name": config.name, "version": config.version, "private": True}

    dependencies = registry_dependencies(config.dependencies)
    if dependencies:
        merged = dict(manifest.get("dependencies") or {})
        merged.update(dependencies)
        manifest["dependencies"] = merged
    manifest_path.write_text(json.dumps(manifest, indent=2), encoding="utf-8")

    if not (target / INDEX_FILENAME).exists():
        await generate_index_file(target)

    logger.info(f"Installed local package {config.name}@{config.version} from {source}")
    return PackageId(name=config.name, version=config.version)


def find_installed_archive(destination_dir: Path, archive_path: str) -> PackageId:
    """
    Identify the package installed from a local archive, using the
    dependency map the installer records in the workspace package.json.
    """
    node_modules = destination_dir / NODE_MODULES
    dependencies = read_workspace_manifest(destination_dir).get("dependencies") or {}
    for name, requested in dependencies.items():
        if requested != archive_path and archive_path not in str(requested):
            continue
        manifest_path = package_install_path(node_modules, name) / MANIFEST_FILENAME
        if manifest_path.exists():
            manifest = json.loads(manifest_path.read_text(encoding="utf-8-sig"))
            return PackageId(name=manifest["name"], version=manifest["version"])

    raise FileNotFoundError(f"Failed to identify installed package from tgz: {archive_path}")
