"""
Invalidation groups.

Tracks which cache keys were written while serving a scope (the
tenant+agent namespace string) so that re-indexing or deletion can purge
exactly that scope. Lives in process memory only.
"""

import logging
from typing import Dict, List, Set, Tuple

from kbsearch.cache.policies import CacheNamespace

logger = logging.getLogger(__name__)

TrackedKey = Tuple[CacheNamespace, str]


class InvalidationTracker:
    """scope -> set of (namespace, key) written under that scope."""

    def __init__(self):
        self._groups: Dict[str, Set[TrackedKey]] = {}

    def register(self, scope: str, namespace: CacheNamespace, key: str) -> None:
        self._groups.setdefault(scope, set()).add((namespace, key))

    def pop(self, scope: str) -> Set[TrackedKey]:
        """Remove and return a whole group (empty set if unknown)."""
        return self._groups.pop(scope, set())

    def pop_prefix(self, prefix: str) -> Set[TrackedKey]:
        """Remove and return every group whose scope starts with `prefix`."""
        tracked: Set[TrackedKey] = set()
        for scope in [s for s in self._groups if s.startswith(prefix)]:
            tracked |= self._groups.pop(scope)
        return tracked

    def scopes(self) -> List[str]:
        return list(self._groups.keys())

    def tracked_count(self) -> int:
        return sum(len(keys) for keys in self._groups.values())

    def clear(self) -> None:
        self._groups.clear()
