"""
Install FHIR NPM packages onto local disk.

The manager only depends on the `PackageAcquisitionService` interface; the
default implementation talks to an npm-compatible FHIR package registry.
"""
from __future__ import annotations

import asyncio
import json
import logging
import shutil
import tarfile
import tempfile
from abc import ABC, abstractmethod
from collections import deque
from pathlib import Path, PurePosixPath
from typing import Any, Deque, Dict, List, Optional, Sequence

import aiofiles
import httpx

from canonical_manager.domain.errors import AcquisitionError
from canonical_manager.domain.models import PackageId, PackageManifest
from canonical_manager.domain.package_spec import (
    is_path_spec,
    is_url_spec,
    is_valid_package_ref,
    normalize_registry_url,
    package_install_path,
    parse_package_ref,
)

logger = logging.getLogger(__name__)

NODE_MODULES = "node_modules"
WORKSPACE_MANIFEST = "package.json"
DOWNLOAD_ATTEMPTS = 3

_RANGE_PREFIXES = "^~=v"


class PackageAcquisitionService(ABC):
    """
    Abstract boundary for getting packages onto disk.

    On success `destination_dir/node_modules` holds one directory per package
    (scoped names nested one level), each with a `package.json` manifest.
    """

    @abstractmethod
    async def ensure_installed(
        self,
        package_specs: Sequence[str],
        destination_dir: Path,
        registry: Optional[str] = None,
    ) -> List[PackageId]:
        """
        Install the given specs and their dependencies.

        Returns the ids of the directly requested packages. Raises
        AcquisitionError when any package cannot be installed.
        """
        pass


def read_workspace_manifest(destination_dir: Path) -> Dict[str, Any]:
    path = destination_dir / WORKSPACE_MANIFEST
    if path.exists():
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except ValueError:
            pass
    return {
        "name": "fhir-canonical-manager-workspace",
        "version": "1.0.0",
        "private": True,
        "dependencies": {},
    }


def record_workspace_dependency(destination_dir: Path, name: str, requested: str) -> None:
    """Record `name -> requested spec` in the workspace package.json."""
    destination_dir.mkdir(parents=True, exist_ok=True)
    data = read_workspace_manifest(destination_dir)
    data.setdefault("dependencies", {})[name] = requested
    (destination_dir / WORKSPACE_MANIFEST).write_text(json.dumps(data, indent=2), encoding="utf-8")


def _safe_member_path(member_name: str) -> Optional[PurePosixPath]:
    """
    Path of a tarball member relative to the package root.

    npm tarballs wrap content in a single top-level folder (usually
    'package/'), which is stripped. Members that would escape the target
    directory are rejected.
    """
    parts = PurePosixPath(member_name).parts
    if len(parts) < 2:
        return None
    relative = PurePosixPath(*parts[1:])
    if relative.is_absolute() or ".." in relative.parts:
        return None
    return relative


def extract_package_archive(archive_path: Path, target_dir: Path) -> PackageManifest:
    """
    Extract an npm package tarball into `target_dir` and return its manifest.

    The archive is unpacked into a temporary sibling directory first and
    moved into place, so a failed extraction never leaves a half-written
    package behind.
    """
    target_dir.parent.mkdir(parents=True, exist_ok=True)
    staging_dir = Path(tempfile.mkdtemp(prefix=".extract-", dir=target_dir.parent))
    try:
        with tarfile.open(archive_path, "r:*") as tar:
            for member in tar.getmembers():
                relative = _safe_member_path(member.name)
                if relative is None:
                    continue
                out_path = staging_dir / relative
                if member.isdir():
                    out_path.mkdir(parents=True, exist_ok=True)
                    continue
                if not member.isfile():
                    continue
                out_path.parent.mkdir(parents=True, exist_ok=True)
                src = tar.extractfile(member)
                if src is None:
                    continue
                with src, open(out_path, "wb") as dst:
                    shutil.copyfileobj(src, dst)

        manifest_path = staging_dir / "package.json"
        manifest = PackageManifest.model_validate_json(manifest_path.read_text(encoding="utf-8-sig"))

        if target_dir.exists():
            shutil.rmtree(target_dir)
        staging_dir.replace(target_dir)
        return manifest
    finally:
        if staging_dir.exists():
            shutil.rmtree(staging_dir, ignore_errors=True)


class RegistryPackageInstaller(PackageAcquisitionService):
    """
    Installs packages from an npm-compatible FHIR package registry.

    Accepts registry refs ('name@version'), http(s) tarball URLs, local
    `.tgz` archives and local package folders. Registry dependencies declared
    in installed manifests are installed breadth-first; a package name that
    is already installed is kept as is.
    """

    def __init__(
        self,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_delay: float = 1.0,
    ):
        self.timeout = timeout
        self.transport = transport
        self.retry_delay = retry_delay

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            follow_redirects=True,
            timeout=self.timeout,
            transport=self.transport,
        )

    async def ensure_installed(
        self,
        package_specs: Sequence[str],
        destination_dir: Path,
        registry: Optional[str] = None,
    ) -> List[PackageId]:
        registry_url = normalize_registry_url(registry)
        node_modules = destination_dir / NODE_MODULES
        node_modules.mkdir(parents=True, exist_ok=True)

        installed: List[PackageId] = []
        pending: Deque[str] = deque()

        for spec in package_specs:
            if not is_valid_package_ref(spec):
                raise AcquisitionError(spec, "invalid package reference")
            manifest = await self._install_spec(spec, node_modules, registry_url)
            record_workspace_dependency(destination_dir, manifest.name, spec)
            installed.append(PackageId(name=manifest.name, version=manifest.version))
            pending.extend(
                f"{name}@{version}" for name, version in (manifest.dependencies or {}).items()
            )

        while pending:
            dependency = pending.popleft()
            ref = parse_package_ref(dependency)
            existing = package_install_path(node_modules, ref.name) / "package.json"
            if existing.exists():
                continue
            manifest = await self._install_spec(dependency, node_modules, registry_url)
            pending.extend(
                f"{name}@{version}" for name, version in (manifest.dependencies or {}).items()
            )

        logger.info(f"Installed {len(installed)} requested package(s) into {node_modules}")
        return installed

    async def _install_spec(self, spec: str, node_modules: Path, registry_url: str) -> PackageManifest:
        try:
            if is_url_spec(spec):
                return await self._install_from_url(spec, node_modules)
            if is_path_spec(spec):
                return await asyncio.to_thread(self._install_from_path, Path(spec), node_modules)
            return await self._install_from_registry(spec, node_modules, registry_url)
        except AcquisitionError:
            raise
        except (httpx.HTTPError, tarfile.TarError, OSError, ValueError) as e:
            logger.error(f"Failed to install package {spec}: {e}")
            raise AcquisitionError(spec, str(e)) from e

    async def _install_from_registry(
        self, spec: str, node_modules: Path, registry_url: str
    ) -> PackageManifest:
        ref = parse_package_ref(spec)
        async with self._client() as client:
            response = await client.get(f"{registry_url}{ref.name}")
            response.raise_for_status()
            metadata = response.json()

        if not isinstance(metadata, dict):
            raise AcquisitionError(spec, "unexpected registry response")
        version = self.resolve_version(metadata, ref.version)
        if version is None:
            raise AcquisitionError(spec, f"version {ref.version} not found in registry")

        try:
            tarball_url = metadata["versions"][version]["dist"]["tarball"]
        except (KeyError, TypeError):
            raise AcquisitionError(spec, f"no tarball listed for version {version}")

        logger.info(f"Downloading {ref.name}@{version}...")
        return await self._install_from_url(tarball_url, node_modules)

    @staticmethod
    def resolve_version(metadata: Dict[str, Any], requested: str) -> Optional[str]:
        """
        Pick the registry version for a requested version string: an exact
        version, then a dist-tag, then the version with a leading range
        operator stripped.
        """
        versions = metadata.get("versions") or {}
        dist_tags = metadata.get("dist-tags") or {}

        if requested in versions:
            return requested
        if requested in dist_tags:
            return dist_tags[requested]
        if requested in ("", "*"):
            return dist_tags.get("latest")

        stripped = requested.lstrip(_RANGE_PREFIXES)
        if stripped in versions:
            return stripped
        return None

    async def _install_from_url(self, url: str, node_modules: Path) -> PackageManifest:
        with tempfile.TemporaryDirectory(prefix="fcm-download-") as tmp:
            archive_path = Path(tmp) / "package.tgz"
            await self._download(url, archive_path)
            return await asyncio.to_thread(self._install_archive, archive_path, node_modules)

    def _install_from_path(self, path: Path, node_modules: Path) -> PackageManifest:
        if not path.exists():
            raise AcquisitionError(str(path), "path does not exist")
        if path.is_dir():
            manifest = PackageManifest.model_validate_json(
                (path / "package.json").read_text(encoding="utf-8-sig")
            )
            target = package_install_path(node_modules, manifest.name)
            if target.exists():
                shutil.rmtree(target)
            shutil.copytree(path, target)
            return manifest
        return self._install_archive(path, node_modules)

    def _install_archive(self, archive_path: Path, node_modules: Path) -> PackageManifest:
        # The package name is only known once the manifest has been read
        staging_root = Path(tempfile.mkdtemp(prefix=".unpack-", dir=node_modules))
        try:
            manifest = extract_package_archive(archive_path, staging_root / "package")
            target = package_install_path(node_modules, manifest.name)
            target.parent.mkdir(parents=True, exist_ok=True)
            if target.exists():
                shutil.rmtree(target)
            (staging_root / "package").replace(target)
            logger.debug(f"Installed {manifest.name}@{manifest.version} at {target}")
            return manifest
        finally:
            shutil.rmtree(staging_root, ignore_errors=True)

    async def _download(self, url: str, target: Path) -> None:
        tmp_path = target.with_suffix(target.suffix + ".tmp")

        # Basic retry loop for flaky connections
        for attempt in range(1, DOWNLOAD_ATTEMPTS + 1):
            try:
                async with self._client() as client:
                    async with client.stream("GET", url) as response:
                        response.raise_for_status()
                        async with aiofiles.open(tmp_path, "wb") as f:
                            async for chunk in response.aiter_bytes():
                                await f.write(chunk)
                break
            except httpx.HTTPError as e:
                tmp_path.unlink(missing_ok=True)
                # client errors will not improve on retry
                if isinstance(e, httpx.HTTPStatusError) and e.response.status_code < 500:
                    raise
                if attempt < DOWNLOAD_ATTEMPTS:
                    logger.warning(f"Download failed (attempt {attempt}/{DOWNLOAD_ATTEMPTS}): {e}. Retrying...")
                    await asyncio.sleep(self.retry_delay * attempt)
                else:
                    raise

        tmp_path.replace(target)
