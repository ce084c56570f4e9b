"""
Approximate search over index entries and derived aggregate queries.
"""
from __future__ import annotations

import logging
import re
from typing import Dict, List, Optional, Sequence, Tuple

from canonical_manager.domain.models import IndexEntry, PackageId, SearchParameter
from canonical_manager.services.resolver import ResolutionEngine

logger = logging.getLogger(__name__)

SEARCH_PARAMETER_TYPE = "SearchParameter"

# Abbreviation -> expansions; a pure lookup, not fuzzy matching
EXPANDED_TERMS: Dict[str, List[str]] = {
    "str": ["structure"],
    "struct": ["structure"],
    "def": ["definition"],
    "pati": ["patient"],
    "obs": ["observation"],
    "org": ["organization"],
    "pract": ["practitioner"],
    "med": ["medication", "medicinal"],
    "req": ["request"],
    "resp": ["response"],
    "ref": ["reference"],
    "val": ["value"],
    "code": ["codesystem", "code"],
    "cs": ["codesystem"],
    "vs": ["valueset"],
    "sd": ["structuredefinition"],
}

_SEPARATORS = re.compile(r"[/\-_.\s]+")


def search_surface(entry: IndexEntry) -> str:
    """Lowercased url, type and resource type joined by spaces."""
    return " ".join(
        [
            (entry.url or "").lower(),
            (entry.type or "").lower(),
            (entry.resource_type or "").lower(),
        ]
    )


def term_matches(term: str, surface: str, tokens: Sequence[str]) -> bool:
    """
    A term matches when a token starts with it, when one of its
    abbreviation expansions is a token prefix, or, as a last resort, when it
    is a substring of the whole surface.
    """
    if any(token.startswith(term) for token in tokens):
        return True
    for expansion in EXPANDED_TERMS.get(term, []):
        if any(token.startswith(expansion) for token in tokens):
            return True
    return term in surface


def filter_by_smart_search(entries: Sequence[IndexEntry], terms: Sequence[str]) -> List[IndexEntry]:
    """Keep entries matching every term. No terms keeps everything."""
    if not terms:
        return list(entries)

    lowered = [t.lower() for t in terms]
    results: List[IndexEntry] = []
    for entry in entries:
        if not entry.url:
            continue
        surface = search_surface(entry)
        tokens = [t for t in _SEPARATORS.split(surface) if t]
        if all(term_matches(term, surface, tokens) for term in lowered):
            results.append(entry)
    return results


def smart_search(
    engine: ResolutionEngine,
    terms: Sequence[str],
    resource_type: Optional[str] = None,
    type: Optional[str] = None,
    kind: Optional[str] = None,
    package: Optional[PackageId] = None,
) -> List[IndexEntry]:
    results = engine.search_entries(kind=kind, package=package)
    if resource_type:
        results = [e for e in results if e.resource_type == resource_type]
    if type:
        results = [e for e in results if e.type == type]
    return filter_by_smart_search(results, terms)


def _char_class(char: str) -> int:
    if char.isdigit():
        return 1
    if char.isalpha():
        return 2
    return 0


def _collation_key(code: str) -> Tuple[Tuple[Tuple[int, str], ...], str]:
    """
    Locale-style ordering: punctuation before digits before letters,
    letters case-insensitive, then lowercase before uppercase.
    """
    primary = tuple((_char_class(char), char.casefold()) for char in code)
    return primary, code.swapcase()


class SearchParameterIndex:
    """
    SearchParameter definitions applicable to a resource type, memoized per
    type until `clear()`.
    """

    def __init__(self, engine: ResolutionEngine):
        self.engine = engine
        self._cache: Dict[str, List[SearchParameter]] = {}

    def clear(self) -> None:
        self._cache.clear()

    def is_cached(self, resource_type: str) -> bool:
        return resource_type in self._cache

    async def for_resource(self, resource_type: str) -> List[SearchParameter]:
        """
        All SearchParameters whose `base` includes `resource_type`, sorted
        by `code`.

        Entries are selected by resource type rather than `type`: for a
        SearchParameter, `type` is the parameter type (token, string, ...).
        """
        cached = self._cache.get(resource_type)
        if cached is not None:
            return cached

        entries = [
            e for e in self.engine.search_entries()
            if e.resource_type == SEARCH_PARAMETER_TYPE
        ]
        parameters = await self.engine.read_all(entries, SearchParameter)

        results = [p for p in parameters if resource_type in p.base]
        results.sort(key=lambda p: _collation_key(p.code or ""))

        logger.debug(f"Collected {len(results)} search parameters for {resource_type}")
        self._cache[resource_type] = results
        return results
