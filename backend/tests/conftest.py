"""
Shared test fixtures: a controllable clock, an in-memory persistent
cache store with native expiry, and hit builders.
"""

import fnmatch
from collections import Counter
from typing import Dict, List, Optional, Tuple

import pytest

from kbsearch.cache import CacheEngine
from kbsearch.exceptions import CacheFault
from kbsearch.models import SearchHit


class FakeClock:
    """Monotonic clock in seconds, advanced by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCacheStore:
    """In-memory PersistentCacheStore that expires keys on the fake clock and counts calls."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.data: Dict[str, Tuple[str, float]] = {}
        self.calls = Counter()
        self.fail = False

    def _check(self):
        if self.fail:
            raise CacheFault("store unavailable")

    async def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None:
        self.calls["set"] += 1
        self._check()
        self.data[key] = (value, self.clock() + ttl_seconds)

    async def get(self, key: str) -> Optional[str]:
        self.calls["get"] += 1
        self._check()
        item = self.data.get(key)
        if item is None:
            return None
        if self.clock() >= item[1]:
            del self.data[key]
            return None
        return item[0]

    async def delete(self, *keys: str) -> int:
        self.calls["delete"] += 1
        self._check()
        return sum(1 for key in keys if self.data.pop(key, None) is not None)

    async def keys(self, pattern: str) -> List[str]:
        self.calls["keys"] += 1
        self._check()
        return [key for key in self.data if fnmatch.fnmatchcase(key, pattern)]


def make_hit(hit_id: str, score: float, text: str = None) -> SearchHit:
    """SearchHit with a default text derived from the id."""
    return SearchHit(id=hit_id, score=score, text=f"passage {hit_id}" if text is None else text)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return FakeCacheStore(clock)


@pytest.fixture
def engine(store, clock):
    """Two-tier engine on the fake store and clock."""
    return CacheEngine(store=store, l1_enabled=True, l2_enabled=True, l2_timeout=0.5, clock=clock)


@pytest.fixture
def l1_engine(clock):
    """In-process-only engine."""
    return CacheEngine(store=None, l1_enabled=True, l2_enabled=False, clock=clock)
