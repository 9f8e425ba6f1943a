"""
Multi-Tier Cache Engine

Generic key -> value cache with two tiers, governed per namespace by the
policy registry:
- L1: in-process dict per namespace, TTL checked lazily on read,
  bounded by the namespace capacity (oldest-insertion eviction)
- L2: shared persistent store with native expiry (Redis in production)

The cache is best-effort: every tier fault is logged and treated as a
miss, and nothing here ever raises to the caller except a
ConfigurationError for an unregistered namespace.

Usage:
    engine = CacheEngine(store=RedisCacheStore())
    key = CacheEngine.hash_key(query, tenant_id, agent_id)
    cached = await engine.get(CacheNamespace.CONTEXT, key)
    if cached is None:
        await engine.set(CacheNamespace.CONTEXT, key, payload, scope=namespace)
"""

import asyncio
import hashlib
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from kbsearch.cache.invalidation import InvalidationTracker
from kbsearch.cache.policies import CacheNamespace, NamespacePolicy, PolicyRegistry
from kbsearch.cache.store import PersistentCacheStore
from kbsearch.config import settings

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """A single L1 entry. Times are milliseconds on the engine clock."""
    value: Any
    created_at_ms: float
    ttl_ms: int

    def is_expired(self, now_ms: float) -> bool:
        return now_ms - self.created_at_ms >= self.ttl_ms


class CacheEngine:
    """
    Two-tier cache shared by all retrieval components.

    Only L1 structural mutation (insert, evict, delete) runs under the
    lock; L2 calls are awaited outside it, each under a deadline and
    never retried.
    """

    def __init__(
        self,
        store: Optional[PersistentCacheStore] = None,
        registry: Optional[PolicyRegistry] = None,
        l1_enabled: bool = None,
        l2_enabled: bool = None,
        l2_timeout: float = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize the engine.

        Args:
            store: Persistent tier (None = L1 only)
            registry: Namespace policies (default table if not provided)
            l1_enabled: Use the in-process tier
            l2_enabled: Use the persistent tier
            l2_timeout: Deadline per L2 call in seconds
            clock: Monotonic clock in seconds (injectable for tests)
        """
        self.registry = registry or PolicyRegistry()
        self._store = store
        self.l1_enabled = settings.CACHE_L1_ENABLED if l1_enabled is None else l1_enabled
        self.l2_enabled = (settings.CACHE_L2_ENABLED if l2_enabled is None else l2_enabled) and store is not None
        self.l2_timeout = l2_timeout if l2_timeout is not None else settings.CACHE_L2_TIMEOUT
        self._clock = clock

        self._l1: Dict[CacheNamespace, Dict[str, CacheEntry]] = {
            namespace: {} for namespace in self.registry.namespaces()
        }
        self._lock = asyncio.Lock()
        self.invalidation = InvalidationTracker()

        self._stats: Dict[CacheNamespace, Dict[str, int]] = {
            namespace: {"l1_hits": 0, "l2_hits": 0, "misses": 0, "evictions": 0, "l2_errors": 0}
            for namespace in self.registry.namespaces()
        }

        logger.info(
            f"Initialized CacheEngine: l1={self.l1_enabled}, l2={self.l2_enabled}, "
            f"namespaces={len(self._l1)}"
        )

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    @staticmethod
    def hash_key(*parts: Any) -> str:
        """
        Fixed-length key for composite inputs (query text, tenant, agent...).

        Raw user text never reaches storage keys.
        """
        combined = ":".join("" if part is None else str(part) for part in parts)
        return hashlib.md5(combined.encode("utf-8")).hexdigest()

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def get(self, namespace: CacheNamespace, key: str) -> Optional[Any]:
        """
        Look up a value (L1 -> L2 -> None).

        An L2 hit is promoted into L1 with the namespace default TTL.

        Args:
            namespace: Policy domain
            key: Key within the namespace (prefix is added here)

        Returns:
            The cached value, or None on miss or tier fault
        """
        policy = self.registry.get(namespace)
        namespace = CacheNamespace(namespace)
        full_key = policy.key_prefix + key

        if self.l1_enabled:
            async with self._lock:
                l1 = self._l1[namespace]
                entry = l1.get(full_key)
                if entry is not None:
                    if not entry.is_expired(self._now_ms()):
                        self._stats[namespace]["l1_hits"] += 1
                        logger.debug(f"L1 Cache HIT: {full_key}")
                        return entry.value
                    del l1[full_key]
                    logger.debug(f"L1 Cache EXPIRED: {full_key}")

        if self.l2_enabled:
            raw = await self._l2_call("GET", full_key, self._store.get(full_key))
            if raw is not None:
                try:
                    value = json.loads(raw)
                except (TypeError, ValueError) as e:
                    self._stats[namespace]["l2_errors"] += 1
                    logger.warning(f"L2 Cache undecodable value for {full_key}: {e}")
                    value = None

                if value is not None:
                    self._stats[namespace]["l2_hits"] += 1
                    logger.debug(f"L2 Cache HIT: {full_key}")
                    if self.l1_enabled:
                        async with self._lock:
                            self._insert_l1(namespace, policy, full_key, value, policy.default_ttl_ms)
                    return value

        self._stats[namespace]["misses"] += 1
        logger.debug(f"Cache MISS: {full_key}")
        return None

    async def set(
        self,
        namespace: CacheNamespace,
        key: str,
        value: Any,
        ttl_ms: Optional[int] = None,
        scope: Optional[str] = None
    ) -> None:
        """
        Write a value to both tiers.

        The L1 write does not depend on the L2 write succeeding.

        Args:
            namespace: Policy domain
            key: Key within the namespace
            value: JSON-serializable value (None is not cacheable)
            ttl_ms: TTL in milliseconds (namespace default if not provided)
            scope: Invalidation group to register the key under
        """
        if value is None:
            return

        policy = self.registry.get(namespace)
        namespace = CacheNamespace(namespace)
        full_key = policy.key_prefix + key
        if ttl_ms is None:
            ttl_ms = policy.default_ttl_ms

        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as e:
            logger.error(f"Cache SET serialization error for {full_key}: {e}")
            payload = None

        if self.l1_enabled:
            # L1 keeps a decoded copy so both tiers hand back the same shapes
            l1_value = json.loads(payload) if payload is not None else value
            async with self._lock:
                self._insert_l1(namespace, policy, full_key, l1_value, ttl_ms)

        if scope:
            self.invalidation.register(scope, namespace, key)

        if self.l2_enabled and payload is not None:
            # Whole seconds, rounded down: the L2 copy must never outlive the L1 entry
            ttl_seconds = int(ttl_ms // 1000)
            if ttl_seconds < 1:
                logger.debug(f"Cache SET: {full_key} L1 only (TTL {ttl_ms}ms is under one second)")
            else:
                await self._l2_call(
                    "SETEX", full_key,
                    self._store.set_with_expiry(full_key, payload, ttl_seconds)
                )
                logger.debug(f"Cache SET: {full_key} (TTL: {ttl_seconds}s)")

    async def delete(self, namespace: CacheNamespace, key: str) -> None:
        """Remove one key from both tiers."""
        policy = self.registry.get(namespace)
        namespace = CacheNamespace(namespace)
        full_key = policy.key_prefix + key

        async with self._lock:
            self._l1[namespace].pop(full_key, None)

        if self.l2_enabled:
            await self._l2_call("DEL", full_key, self._store.delete(full_key))
        logger.debug(f"Cache DELETE: {full_key}")

    async def delete_pattern(self, namespace: CacheNamespace, pattern: str) -> int:
        """
        Remove every key of the namespace matching `pattern` (`*` wildcard).

        Returns:
            Number of L1 entries removed (L2 removals are not counted)
        """
        policy = self.registry.get(namespace)
        namespace = CacheNamespace(namespace)
        full_pattern = policy.key_prefix + pattern
        regex = self._compile_pattern(full_pattern)

        async with self._lock:
            l1 = self._l1[namespace]
            doomed = [key for key in l1 if regex.match(key)]
            for key in doomed:
                del l1[key]

        if self.l2_enabled:
            glob = self._to_store_glob(full_pattern)
            keys = await self._l2_call("KEYS", glob, self._store.keys(glob))
            if keys:
                await self._l2_call("DEL", glob, self._store.delete(*keys))

        logger.debug(f"Cache DELETE PATTERN: {full_pattern} ({len(doomed)} L1 entries)")
        return len(doomed)

    async def clear(self, namespace: CacheNamespace) -> None:
        """Drop every entry of a namespace from both tiers."""
        policy = self.registry.get(namespace)
        namespace = CacheNamespace(namespace)

        async with self._lock:
            self._l1[namespace].clear()

        if self.l2_enabled:
            glob = self._to_store_glob(policy.key_prefix) + "*"
            keys = await self._l2_call("KEYS", glob, self._store.keys(glob))
            if keys:
                await self._l2_call("DEL", glob, self._store.delete(*keys))

        logger.info(f"Cache CLEARED: {namespace.value}")

    async def get_or_set(
        self,
        namespace: CacheNamespace,
        key: str,
        factory: Callable[[], Awaitable[Any]],
        ttl_ms: Optional[int] = None,
        scope: Optional[str] = None
    ) -> Any:
        """
        Return the cached value, or compute, cache, and return it.

        Exceptions raised by `factory` propagate; nothing is cached then.
        """
        cached = await self.get(namespace, key)
        if cached is not None:
            return cached

        value = await factory()
        await self.set(namespace, key, value, ttl_ms=ttl_ms, scope=scope)
        return value

    # ------------------------------------------------------------------
    # Invalidation groups
    # ------------------------------------------------------------------

    async def invalidate_scope(self, scope: str) -> int:
        """
        Purge every key written under `scope` from both tiers.

        Returns:
            Number of tracked keys purged
        """
        return await self._purge(self.invalidation.pop(scope), scope)

    async def invalidate_scopes_with_prefix(self, prefix: str) -> int:
        """Purge every scope whose name starts with `prefix` (e.g. a whole tenant)."""
        return await self._purge(self.invalidation.pop_prefix(prefix), f"{prefix}*")

    async def _purge(self, tracked, label: str) -> int:
        if not tracked:
            logger.info(f"Invalidation: nothing tracked for {label}")
            return 0

        full_keys: List[str] = []
        async with self._lock:
            for namespace, key in tracked:
                full_key = self.registry.get(namespace).key_prefix + key
                self._l1[namespace].pop(full_key, None)
                full_keys.append(full_key)

        if self.l2_enabled:
            await self._l2_call("DEL", label, self._store.delete(*full_keys))

        logger.info(f"Invalidation: purged {len(full_keys)} cache keys for {label}")
        return len(full_keys)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _insert_l1(
        self,
        namespace: CacheNamespace,
        policy: NamespacePolicy,
        full_key: str,
        value: Any,
        ttl_ms: int
    ) -> None:
        """Insert under the lock. Evicts before inserting a new key at capacity."""
        l1 = self._l1[namespace]
        if full_key in l1:
            # Overwrite counts as a fresh insertion
            del l1[full_key]
        elif policy.l1_capacity > 0 and len(l1) >= policy.l1_capacity:
            self._evict_oldest(namespace)

        l1[full_key] = CacheEntry(value=value, created_at_ms=self._now_ms(), ttl_ms=ttl_ms)

    def _evict_oldest(self, namespace: CacheNamespace) -> None:
        """
        Evict the entry with the smallest created_at.

        Insertion order, not access order; ties go to the earliest inserted.
        """
        l1 = self._l1[namespace]
        if not l1:
            return
        oldest_key = min(l1, key=lambda k: l1[k].created_at_ms)
        del l1[oldest_key]
        self._stats[namespace]["evictions"] += 1
        logger.debug(f"L1 Cache EVICT: {oldest_key}")

    async def _l2_call(self, op: str, key: str, awaitable: Awaitable[Any]) -> Optional[Any]:
        """Run one L2 call under the deadline; any fault becomes None."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.l2_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"L2 Cache {op} timed out after {self.l2_timeout}s: {key}")
        except Exception as e:
            logger.error(f"L2 Cache {op} error for {key}: {e}")

        namespace = self._namespace_of(key)
        if namespace is not None:
            self._stats[namespace]["l2_errors"] += 1
        return None

    def _namespace_of(self, full_key: str) -> Optional[CacheNamespace]:
        for namespace in self._l1:
            if full_key.startswith(self.registry.get(namespace).key_prefix):
                return namespace
        return None

    @staticmethod
    def _compile_pattern(pattern: str) -> "re.Pattern":
        return re.compile("^" + ".*".join(re.escape(part) for part in pattern.split("*")) + "$")

    @staticmethod
    def _to_store_glob(pattern: str) -> str:
        """Escape store-glob metacharacters other than `*`."""
        return re.sub(r"([?\[\]\\])", r"\\\1", pattern)

    def l1_size(self, namespace: CacheNamespace) -> int:
        return len(self._l1[CacheNamespace(namespace)])

    def get_stats(self) -> Dict[str, Any]:
        """
        Get cache statistics.

        Returns:
            Per-namespace sizes, limits, and counters plus invalidation totals
        """
        namespaces = {}
        for namespace, counters in self._stats.items():
            policy = self.registry.get(namespace)
            namespaces[namespace.value] = {
                "l1_size": len(self._l1[namespace]),
                "l1_capacity": policy.l1_capacity,
                "default_ttl_ms": policy.default_ttl_ms,
                **counters
            }

        return {
            "l1_enabled": self.l1_enabled,
            "l2_enabled": self.l2_enabled,
            "namespaces": namespaces,
            "tracked_scopes": len(self.invalidation.scopes()),
            "tracked_keys": self.invalidation.tracked_count()
        }
