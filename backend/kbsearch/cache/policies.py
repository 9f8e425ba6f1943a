"""
Namespace Policy Registry

One static table mapping every cache namespace to its policy.
All durations are milliseconds; the cache engine converts to seconds
exactly once, when it writes to the persistent tier.
"""

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Dict, Mapping, Optional

from kbsearch.exceptions import ConfigurationError


class CacheNamespace(str, Enum):
    """Policy domains of the cache engine."""
    AGENT = "agent"                              # agent records, cached for CRUD consumers
    CONTEXT = "context"                          # final orchestrated search results
    VECTOR_AVAILABILITY = "vector_availability"  # per-namespace vector counts
    EMBEDDING = "embedding"                      # text -> dense vector
    HYBRID_RESULTS = "hybrid_results"            # fused dense+sparse results
    RERANKED_RESULTS = "reranked_results"        # reranker output


@dataclass(frozen=True)
class NamespacePolicy:
    """
    Cache policy for one namespace.

    Attributes:
        default_ttl_ms: TTL applied when a write gives none, and to L2 promotions
        l1_capacity: Max in-process entries (0 = unbounded)
        key_prefix: Prepended to every key of the namespace in both tiers
    """
    default_ttl_ms: int
    l1_capacity: int
    key_prefix: str


MINUTE_MS = 60 * 1000

DEFAULT_POLICIES: Dict[CacheNamespace, NamespacePolicy] = {
    CacheNamespace.AGENT: NamespacePolicy(5 * MINUTE_MS, 100, "agent:"),
    CacheNamespace.CONTEXT: NamespacePolicy(2 * MINUTE_MS, 50, "context:"),
    CacheNamespace.VECTOR_AVAILABILITY: NamespacePolicy(2 * MINUTE_MS, 50, "vector_avail:"),
    # Embeddings are immutable; bounded by TTL only
    CacheNamespace.EMBEDDING: NamespacePolicy(30 * MINUTE_MS, 0, "embedding:"),
    CacheNamespace.HYBRID_RESULTS: NamespacePolicy(5 * MINUTE_MS, 30, "hybrid:"),
    CacheNamespace.RERANKED_RESULTS: NamespacePolicy(5 * MINUTE_MS, 50, "reranked:"),
}


class PolicyRegistry:
    """
    Read-only namespace -> policy table, validated at construction.

    Raises ConfigurationError at startup when a namespace has no policy,
    a policy carries negative values, or two namespaces share a prefix.
    """

    def __init__(self, policies: Optional[Mapping[CacheNamespace, NamespacePolicy]] = None):
        self._policies: Mapping[CacheNamespace, NamespacePolicy] = MappingProxyType(
            dict(DEFAULT_POLICIES if policies is None else policies)
        )
        self.validate()

    def validate(self) -> None:
        """Fail fast on an incomplete or inconsistent table."""
        missing = [ns.value for ns in CacheNamespace if ns not in self._policies]
        if missing:
            raise ConfigurationError(f"No cache policy registered for namespace(s): {', '.join(missing)}")

        seen_prefixes: Dict[str, CacheNamespace] = {}
        for namespace, policy in self._policies.items():
            if policy.default_ttl_ms <= 0:
                raise ConfigurationError(f"{namespace.value}: default_ttl_ms must be positive")
            if policy.l1_capacity < 0:
                raise ConfigurationError(f"{namespace.value}: l1_capacity must be >= 0")
            if not policy.key_prefix:
                raise ConfigurationError(f"{namespace.value}: key_prefix must not be empty")
            if policy.key_prefix in seen_prefixes:
                raise ConfigurationError(
                    f"{namespace.value}: key_prefix {policy.key_prefix!r} already used by "
                    f"{seen_prefixes[policy.key_prefix].value}"
                )
            seen_prefixes[policy.key_prefix] = namespace

    def get(self, namespace: CacheNamespace) -> NamespacePolicy:
        """Policy for `namespace`; ConfigurationError if unregistered."""
        try:
            return self._policies[CacheNamespace(namespace)]
        except (KeyError, ValueError):
            raise ConfigurationError(f"No cache policy registered for namespace: {namespace!r}") from None

    def namespaces(self):
        return list(self._policies.keys())
