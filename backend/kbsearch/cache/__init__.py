"""
Cache Module

Two-tier (in-process + Redis) cache engine with per-namespace policy
and scope-based invalidation groups.
"""

from kbsearch.cache.engine import CacheEngine, CacheEntry
from kbsearch.cache.invalidation import InvalidationTracker
from kbsearch.cache.policies import CacheNamespace, NamespacePolicy, PolicyRegistry, DEFAULT_POLICIES
from kbsearch.cache.store import PersistentCacheStore, RedisCacheStore

__all__ = [
    "CacheEngine",
    "CacheEntry",
    "CacheNamespace",
    "NamespacePolicy",
    "PolicyRegistry",
    "DEFAULT_POLICIES",
    "InvalidationTracker",
    "PersistentCacheStore",
    "RedisCacheStore"
]
