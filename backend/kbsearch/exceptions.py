"""
Error taxonomy for the retrieval core.

Only ConfigurationError and a total dense-search failure
(UpstreamUnavailable with stage="dense_search") reach request callers.
Everything else is caught by the component that owns the fallback.
"""

from typing import Optional


class KBSearchError(Exception):
    """Base class for all retrieval-core errors."""


class ConfigurationError(KBSearchError):
    """Invalid or missing static configuration. Fatal at startup."""


class UpstreamUnavailable(KBSearchError):
    """
    An external dependency (embedding provider, vector index, reranker)
    failed, timed out, or rejected the request.

    Attributes:
        stage: Pipeline stage that failed ("embedding", "dense_search", ...)
    """

    def __init__(self, stage: str, message: Optional[str] = None):
        self.stage = stage
        super().__init__(message or f"{stage} unavailable")


class SparseQueryUnsupported(UpstreamUnavailable):
    """The index does not support sparse/lexical queries."""

    def __init__(self, message: Optional[str] = None):
        super().__init__("sparse_search", message or "index does not support sparse queries")


class CacheFault(KBSearchError):
    """A cache tier failed. Always swallowed by the cache engine."""
