"""
Canonical manager: lifecycle and orchestration of the index, cache,
acquisition, resolution and search components.

Control flow of init():
    cache store (try load) -> [miss] -> acquisition service -> scanner
    -> cache store (save) -> ready for queries
"""
from __future__ import annotations

import asyncio
import enum
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles

from canonical_manager.data.index import CanonicalIndex
from canonical_manager.data.scanner import MANIFEST_FILENAME, PackageScanner
from canonical_manager.domain.errors import (
    AcquisitionError,
    NotInitializedError,
    PackageNotFoundError,
)
from canonical_manager.domain.models import (
    IndexEntry,
    LocalPackageConfig,
    ManagerConfig,
    PackageId,
    Reference,
    Resource,
    SearchParameter,
    SourceContext,
    TgzPackageConfig,
)
from canonical_manager.domain.package_spec import normalize_package_spec, normalize_registry_url
from canonical_manager.services.importer.local_package import (
    find_installed_archive,
    install_local_folder,
)
from canonical_manager.services.importer.package_installer import (
    NODE_MODULES,
    PackageAcquisitionService,
    RegistryPackageInstaller,
)
from canonical_manager.services.resolver import ResolutionEngine
from canonical_manager.services.search import SearchParameterIndex, smart_search
from canonical_manager.storage.cache_store import CacheStore, compute_manager_cache_key

logger = logging.getLogger(__name__)

STATE_DIRNAME = ".fcm"
CACHE_DIRNAME = "cache"


class ManagerState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    DESTROYED = "destroyed"


class CanonicalManager:
    """
    Fast lookup of FHIR resources by canonical URL across installed packages.

    Usage:
        manager = CanonicalManager(ManagerConfig(packages=["hl7.fhir.r4.core@4.0.1"], working_dir=path))
        await manager.init()
        entry = await manager.resolve_entry("http://hl7.org/fhir/StructureDefinition/Patient")
        patient = await manager.read(entry)
        await manager.destroy()

    Queries fail with NotInitializedError unless the manager is ready. The
    index is only mutated by init(), add_*() and destroy(); queries never
    mutate it and may run concurrently with each other.
    """

    def __init__(
        self,
        config: ManagerConfig,
        installer: Optional[PackageAcquisitionService] = None,
    ):
        self.working_dir = Path(config.working_dir).expanduser().resolve()
        self.registry = normalize_registry_url(config.registry)
        self.drop_cache = config.drop_cache
        self.collect_warnings = config.collect_warnings
        self.installer = installer or RegistryPackageInstaller()
        self.cache_store = CacheStore(self.working_dir / STATE_DIRNAME / CACHE_DIRNAME)

        self._packages: List[str] = []
        for spec in config.packages:
            normalized = normalize_package_spec(spec)
            if normalized not in self._packages:
                self._packages.append(normalized)
        self._local_packages: Dict[str, LocalPackageConfig] = {}

        self._state = ManagerState.UNINITIALIZED
        self._cache_key: Optional[str] = None
        self._warnings: List[str] = []
        self._index = CanonicalIndex()
        self._engine = ResolutionEngine(self._index)
        self._search_parameters = SearchParameterIndex(self._engine)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    @property
    def state(self) -> ManagerState:
        return self._state

    @property
    def cache_key(self) -> Optional[str]:
        return self._cache_key

    @property
    def package_specs(self) -> List[str]:
        return list(self._packages)

    def _ensure_ready(self) -> None:
        if self._state is not ManagerState.READY:
            raise NotInitializedError()

    def _package_mapping(self) -> Dict[str, PackageId]:
        return {name: info.id for name, info in self._index.packages.items()}

    def _compute_cache_key(self) -> str:
        # blocking: hashes local package content
        return compute_manager_cache_key(self._packages, list(self._local_packages.values()))

    async def init(self) -> Dict[str, PackageId]:
        """
        Load the index from the cache, or install and scan the packages when
        no snapshot exists for the current package set.

        Idempotent: calling it again while ready returns the current
        package-name -> PackageId mapping without doing any work.
        """
        if self._state is ManagerState.READY:
            return self._package_mapping()

        self._state = ManagerState.INITIALIZING
        try:
            self.working_dir.mkdir(parents=True, exist_ok=True)
            if self.drop_cache:
                await self.cache_store.flush()
                self.drop_cache = False
            self.cache_store.base_dir.mkdir(parents=True, exist_ok=True)

            cache_key = await asyncio.to_thread(self._compute_cache_key)
            snapshot = await self.cache_store.load(cache_key)
            if snapshot is not None:
                logger.info(f"Loaded index from cache {cache_key[:12]}")
                self._set_index(CanonicalIndex.from_snapshot(snapshot))
            else:
                logger.info(f"No cached index for {cache_key[:12]}, rebuilding...")
                await self._rebuild(cache_key)
            self._cache_key = cache_key
        except BaseException:
            self._state = ManagerState.UNINITIALIZED
            raise

        self._state = ManagerState.READY
        return self._package_mapping()

    async def destroy(self) -> None:
        """Drop all in-memory state; persisted snapshots are kept."""
        self._index.clear()
        self._search_parameters.clear()
        self._warnings = []
        self._cache_key = None
        self._state = ManagerState.DESTROYED

    async def flush_cache(self) -> None:
        """Remove every persisted snapshot, forcing the next init() to rebuild."""
        await self.cache_store.flush()

    def _set_index(self, index: CanonicalIndex) -> None:
        self._index = index
        self._engine = ResolutionEngine(index)
        self._search_parameters = SearchParameterIndex(self._engine)

    async def _rebuild(self, cache_key: str) -> None:
        """Install every configured package, scan them into a fresh index and persist it."""
        install_dir = self.cache_store.install_dir(cache_key)
        install_dir.mkdir(parents=True, exist_ok=True)

        if self._packages:
            await self.installer.ensure_installed(self._packages, install_dir, self.registry)

        for local in self._local_packages.values():
            try:
                await install_local_folder(local, install_dir)
            except (OSError, ValueError) as e:
                raise AcquisitionError(str(local.path), str(e)) from e
            if local.dependencies:
                await self.installer.ensure_installed(local.dependencies, install_dir, self.registry)

        index = CanonicalIndex()
        warnings = await PackageScanner(index).scan_directory(install_dir / NODE_MODULES)
        if self.collect_warnings:
            for warning in warnings:
                logger.warning(f"Package warning: {warning}")
            self._warnings = warnings

        await self.cache_store.save(index, cache_key)
        self._set_index(index)

    async def _refresh(self) -> None:
        """Full rebuild for a changed package set; used once the manager is ready."""
        cache_key = await asyncio.to_thread(self._compute_cache_key)
        self._state = ManagerState.INITIALIZING
        try:
            await self._rebuild(cache_key)
            self._cache_key = cache_key
        except BaseException:
            # the previous index is still intact and consistent
            self._state = ManagerState.READY
            raise
        self._state = ManagerState.READY

    # ========================================================================
    # Package set
    # ========================================================================

    async def packages(self) -> List[PackageId]:
        self._ensure_ready()
        return [info.id for info in self._index.packages.values()]

    def warnings(self) -> List[str]:
        """Advisory scan warnings from the last rebuild (collect_warnings mode)."""
        return list(self._warnings)

    async def add_packages(self, *package_specs: str) -> Dict[str, PackageId]:
        """
        Add package specs to the configured set.

        Before init() this simply initializes with the extended set. Once
        ready, any new spec triggers a full rebuild under the re-derived
        cache key; specs already present are ignored.
        """
        added = []
        for spec in package_specs:
            normalized = normalize_package_spec(spec)
            if normalized not in self._packages and normalized not in added:
                added.append(normalized)
        self._packages.extend(added)

        if self._state is not ManagerState.READY:
            return await self.init()
        if not added:
            return self._package_mapping()

        logger.info(f"Adding packages {', '.join(added)}, rebuilding index...")
        await self._refresh()
        return self._package_mapping()

    async def add_local_package(self, config: LocalPackageConfig) -> PackageId:
        """
        Add (or replace) a package sourced from a local folder.

        The folder's content hash is part of the cache key, so later edits
        to its files invalidate the cache at the next init().
        """
        path = Path(config.path).expanduser().resolve()
        if not path.is_dir():
            raise AcquisitionError(str(path), "local package folder not found")
        local = config.model_copy(update={"path": path})
        self._local_packages[local.name] = local

        if self._state is ManagerState.READY:
            await self._refresh()
        else:
            await self.init()
        return PackageId(name=local.name, version=local.version)

    async def add_tgz_package(self, config: TgzPackageConfig) -> PackageId:
        """Install a local `.tgz` archive and return the id of the package it holds."""
        archive_path = Path(config.archive_path).expanduser().resolve()
        if not archive_path.is_file():
            raise AcquisitionError(str(archive_path), "TGZ archive not found")

        await self.add_packages(str(archive_path))
        install_dir = self.cache_store.install_dir(self._cache_key)
        try:
            return find_installed_archive(install_dir, str(archive_path))
        except (OSError, ValueError, KeyError) as e:
            raise AcquisitionError(str(archive_path), str(e)) from e

    async def package_json(self, name: str) -> Dict[str, Any]:
        """Raw manifest of an indexed package."""
        self._ensure_ready()
        info = self._index.packages.get(name)
        if info is None:
            raise PackageNotFoundError(name)
        if info.package_json is not None:
            return info.package_json

        async with aiofiles.open(Path(info.path) / MANIFEST_FILENAME, "r", encoding="utf-8-sig") as f:
            return json.loads(await f.read())

    # ========================================================================
    # Resolution
    # ========================================================================

    async def resolve_entry(
        self,
        url: str,
        package: Optional[str] = None,
        version: Optional[str] = None,
        source_context: Optional[SourceContext] = None,
    ) -> IndexEntry:
        self._ensure_ready()
        return self._engine.resolve_entry(url, package=package, version=version, source_context=source_context)

    async def resolve(
        self,
        url: str,
        package: Optional[str] = None,
        version: Optional[str] = None,
        source_context: Optional[SourceContext] = None,
    ) -> Resource:
        entry = await self.resolve_entry(url, package=package, version=version, source_context=source_context)
        return await self.read(entry)

    async def read(self, reference: Reference) -> Resource:
        self._ensure_ready()
        return await self._engine.read(reference)

    # ========================================================================
    # Search
    # ========================================================================

    async def search_entries(
        self,
        kind: Optional[str] = None,
        url: Optional[str] = None,
        type: Optional[str] = None,
        version: Optional[str] = None,
        package: Optional[PackageId] = None,
    ) -> List[IndexEntry]:
        self._ensure_ready()
        return self._engine.search_entries(kind=kind, url=url, type=type, version=version, package=package)

    async def search(
        self,
        kind: Optional[str] = None,
        url: Optional[str] = None,
        type: Optional[str] = None,
        version: Optional[str] = None,
        package: Optional[PackageId] = None,
    ) -> List[Resource]:
        self._ensure_ready()
        return await self._engine.search(kind=kind, url=url, type=type, version=version, package=package)

    async def smart_search(
        self,
        terms: List[str],
        resource_type: Optional[str] = None,
        type: Optional[str] = None,
        kind: Optional[str] = None,
        package: Optional[PackageId] = None,
    ) -> List[IndexEntry]:
        self._ensure_ready()
        return smart_search(
            self._engine,
            terms,
            resource_type=resource_type,
            type=type,
            kind=kind,
            package=package,
        )

    async def get_search_parameters_for_resource(self, resource_type: str) -> List[SearchParameter]:
        self._ensure_ready()
        return await self._search_parameters.for_resource(resource_type)
