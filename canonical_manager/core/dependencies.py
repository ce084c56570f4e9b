from pathlib import Path
from typing import List, Optional
import os

from canonical_manager.domain.models import ManagerConfig
from canonical_manager.domain.package_spec import DEFAULT_REGISTRY
from canonical_manager.services.manager import CanonicalManager

WORKING_DIR_ENV_VAR = "CANONICAL_MANAGER_WORKING_DIR"
PACKAGES_ENV_VAR = "CANONICAL_MANAGER_PACKAGES"
REGISTRY_ENV_VAR = "CANONICAL_MANAGER_REGISTRY"
DROP_CACHE_ENV_VAR = "CANONICAL_MANAGER_DROP_CACHE"

_DEFAULT_WORKING_DIRNAME = ".canonical"
_TRUTHY = {"1", "true", "yes"}

_canonical_manager: Optional[CanonicalManager] = None


def get_working_dir() -> Path:
    env_path = os.environ.get(WORKING_DIR_ENV_VAR)
    if env_path:
        d = Path(env_path).expanduser()
    else:
        d = Path.cwd() / _DEFAULT_WORKING_DIRNAME
    d.mkdir(parents=True, exist_ok=True)
    return d


def get_package_specs() -> List[str]:
    raw = os.environ.get(PACKAGES_ENV_VAR, "")
    return [spec.strip() for spec in raw.split(",") if spec.strip()]


def get_registry() -> str:
    return os.environ.get(REGISTRY_ENV_VAR) or DEFAULT_REGISTRY


def get_drop_cache() -> bool:
    return os.environ.get(DROP_CACHE_ENV_VAR, "").strip().lower() in _TRUTHY


def load_manager_config() -> ManagerConfig:
    return ManagerConfig(
        packages=get_package_specs(),
        working_dir=get_working_dir(),
        registry=get_registry(),
        drop_cache=get_drop_cache(),
    )


def get_canonical_manager() -> CanonicalManager:
    """Process-wide manager built from the environment. Callers still have to `await init()`."""
    global _canonical_manager
    if _canonical_manager is None:
        _canonical_manager = CanonicalManager(load_manager_config())
    return _canonical_manager


def reset_canonical_manager() -> None:
    global _canonical_manager
    _canonical_manager = None
