"""
Parsing and validation of a package's pre-built `.index.json`.
"""
from __future__ import annotations

import json
import logging
from typing import Optional

from pydantic import ValidationError

from canonical_manager.domain.models import IndexFile

logger = logging.getLogger(__name__)

INDEX_FILENAME = ".index.json"


def parse_index(content: str, source: str = INDEX_FILENAME) -> Optional[IndexFile]:
    """
    Parse `.index.json` content.

    Returns None when the content is not JSON or any part of it violates the
    index format; a single bad file entry invalidates the whole index.
    """
    try:
        data = json.loads(content)
    except ValueError as e:
        logger.debug(f"Unparsable index file {source}: {e}")
        return None

    try:
        return IndexFile.model_validate(data)
    except ValidationError as e:
        logger.debug(f"Invalid index file {source}: {e.error_count()} validation error(s)")
        return None
