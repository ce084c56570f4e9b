import asyncio
import logging
import sys

from canonical_manager.core.dependencies import get_canonical_manager
from canonical_manager.domain.errors import CanonicalManagerError

logger = logging.getLogger(__name__)


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


async def warm_cache() -> int:
    """
    Install and index the packages named in the environment so later
    processes sharing the working directory start from the cached snapshot.
    """
    manager = get_canonical_manager()
    try:
        packages = await manager.init()
    except CanonicalManagerError as e:
        logger.error(f"Failed to initialize canonical manager: {e}")
        return 1

    entries = await manager.search_entries()
    logger.info(f"Indexed {len(entries)} resources from {len(packages)} packages (cache {manager.cache_key[:12]})")
    for name, package_id in sorted(packages.items()):
        logger.info(f"  {name}@{package_id.version}")

    await manager.destroy()
    return 0


if __name__ == "__main__":
    """
    `python -m canonical_manager.main` warms the snapshot cache for the
    packages listed in CANONICAL_MANAGER_PACKAGES.
    """
    configure_logging()
    sys.exit(asyncio.run(warm_cache()))
