"""
Hybrid Search Module

Fuses dense (vector) results with sparse (lexical) results by weighted
score combination, joined on passage id.

Why hybrid search?
- Dense: Semantic understanding, handles paraphrasing
- Sparse: Exact matching, rare terms, specific entities
- Combined: Best of both worlds

Degraded paths:
- Sparse query unsupported or failing -> keyword query on a few extracted
  terms, scores penalized
- No sparse hits -> weights forced to dense-only so dense scores pass
  through unchanged
- Nothing left after merging although dense hits existed -> penalized
  dense hits instead of an empty result

Usage:
    searcher = HybridSearcher(vector_store, cache=engine)
    dense = await vector_store.dense_query(namespace, query_vector, top_k=15)
    results = await searcher.fuse("refund policy for EU orders", dense, namespace, top_k=10)
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from kbsearch.cache import CacheEngine, CacheNamespace
from kbsearch.config import settings
from kbsearch.exceptions import SparseQueryUnsupported, UpstreamUnavailable
from kbsearch.models import HybridInfo, HybridWeights, SearchHit
from kbsearch.retrieval.tokenizer import extract_keywords
from kbsearch.retrieval.vector_store import VectorStore

logger = logging.getLogger(__name__)

_INTERROGATIVE_RE = re.compile(r"\b(what|how|why|when|where|who|which)\b|\?", re.IGNORECASE)
_NUMERAL_RE = re.compile(r"\d")
_PROPER_NOUN_RE = re.compile(r"[A-Z][a-z]+(?:\s+[A-Z][a-z]+)+")


class _Fused:
    """Mutable accumulator for one passage during the merge."""

    __slots__ = ("hit", "score", "dense_score", "sparse_score", "sources", "text")

    def __init__(self, hit: SearchHit):
        self.hit = hit
        self.score = 0.0
        self.dense_score = 0.0
        self.sparse_score = 0.0
        self.sources: List[str] = []
        self.text = hit.text


class HybridSearcher:
    """
    Weighted fusion of dense and sparse retrieval.

    Receives dense hits already computed by the caller, so fusion stays
    independent of the embedding step.
    """

    def __init__(
        self,
        vector_store: VectorStore,
        cache: Optional[CacheEngine] = None,
        default_weights: HybridWeights = None,
        keyword_weights: HybridWeights = None
    ):
        """
        Initialize hybrid searcher.

        Args:
            vector_store: Index client used for the sparse/keyword side
            cache: Cache engine for the hybrid_results stage (None disables it)
            default_weights: Weights for ordinary (semantic) queries
            keyword_weights: Weights for keyword-heavy queries
        """
        self.vector_store = vector_store
        self.cache = cache
        self.default_weights = default_weights or HybridWeights(
            dense=settings.HYBRID_DENSE_WEIGHT, sparse=settings.HYBRID_SPARSE_WEIGHT
        )
        self.keyword_weights = keyword_weights or HybridWeights(
            dense=settings.HYBRID_KEYWORD_DENSE_WEIGHT, sparse=settings.HYBRID_KEYWORD_SPARSE_WEIGHT
        )
        self.top_k_multiplier = settings.HYBRID_TOP_K_MULTIPLIER
        self.keyword_penalty = settings.HYBRID_KEYWORD_SCORE_PENALTY
        self.fallback_penalty = settings.HYBRID_SPARSE_FALLBACK_PENALTY
        self.max_keywords = settings.HYBRID_MAX_KEYWORDS

    def select_weights(self, query: str) -> HybridWeights:
        """
        Pick fusion weights from the shape of the query.

        Questions, numbers, and capitalized multi-word names are
        keyword-heavy and lean toward the sparse signal.
        """
        if (
            _INTERROGATIVE_RE.search(query)
            or _NUMERAL_RE.search(query)
            or _PROPER_NOUN_RE.search(query)
        ):
            return self.keyword_weights
        return self.default_weights

    async def fuse(
        self,
        query: str,
        dense_hits: List[SearchHit],
        namespace: str,
        weights: Optional[HybridWeights] = None,
        top_k: int = None,
        filters: Optional[Dict[str, Any]] = None,
        min_similarity: Optional[float] = None,
        use_cache: bool = True
    ) -> List[SearchHit]:
        """
        Run the sparse side and fuse it with `dense_hits`.

        Args:
            query: Search query
            dense_hits: Dense results for the same namespace
            namespace: Index namespace
            weights: Fusion weights (select_weights(query) if not provided)
            top_k: Number of results to return
            filters: Metadata filters for the sparse side
            min_similarity: Drop fused hits scoring below this
            use_cache: Read/write the hybrid_results stage cache

        Returns:
            Fused hits sorted by score, each tagged with its sources
        """
        top_k = top_k or settings.RETRIEVAL_TOP_K
        weights = weights or self.select_weights(query)

        cache_key = None
        if use_cache and self.cache is not None:
            cache_key = self._get_cache_key(query, namespace, dense_hits, weights, top_k, filters, min_similarity)
            cached = await self.cache.get(CacheNamespace.HYBRID_RESULTS, cache_key)
            if cached is not None:
                logger.debug(f"Hybrid cache hit for {namespace}")
                return [SearchHit.model_validate(item) for item in cached]

        candidates = max(top_k, round(top_k * self.top_k_multiplier))
        sparse_hits, keyword_fallback, sparse_failed = await self._sparse_search(
            query, namespace, candidates, filters
        )

        logger.debug(
            f"Fusing dense={len(dense_hits)} sparse={len(sparse_hits)} "
            f"(keyword_fallback={keyword_fallback}, weights={weights.dense}/{weights.sparse})"
        )

        fused = self.merge(
            dense_hits,
            sparse_hits,
            weights,
            top_k=top_k,
            min_similarity=min_similarity,
            keyword_fallback=keyword_fallback
        )

        if sparse_failed:
            fused = [
                hit.model_copy(update={"hybrid": hit.hybrid.model_copy(update={"sparse_failed": True})})
                for hit in fused
            ]

        # A transient sparse failure must not pin a dense-only result in the cache
        if cache_key is not None and fused and not sparse_failed:
            await self.cache.set(
                CacheNamespace.HYBRID_RESULTS,
                cache_key,
                [hit.model_dump(mode="json") for hit in fused],
                scope=namespace
            )

        return fused

    async def _sparse_search(
        self,
        query: str,
        namespace: str,
        limit: int,
        filters: Optional[Dict[str, Any]]
    ) -> Tuple[List[SearchHit], bool, bool]:
        """
        Sparse query with keyword fallback.

        Returns:
            (hits, keyword_fallback, failed) where failed means both the
            sparse and the keyword query errored
        """
        try:
            return await self.vector_store.sparse_query(namespace, query, limit, filters), False, False
        except SparseQueryUnsupported as e:
            logger.info(f"Sparse search unsupported, using keyword fallback: {e}")
        except UpstreamUnavailable as e:
            logger.warning(f"Sparse search failed, using keyword fallback: {e}")

        keywords = extract_keywords(query, limit=self.max_keywords)
        if not keywords:
            return [], True, False

        try:
            hits = await self.vector_store.keyword_query(namespace, keywords, limit, filters)
        except UpstreamUnavailable as e:
            logger.error(f"Keyword fallback failed: {e}")
            return [], True, True

        penalized = [hit.model_copy(update={"score": hit.score * self.keyword_penalty}) for hit in hits]
        return penalized, True, False

    def merge(
        self,
        dense_hits: List[SearchHit],
        sparse_hits: List[SearchHit],
        weights: HybridWeights,
        top_k: int = None,
        min_similarity: Optional[float] = None,
        keyword_fallback: bool = False
    ) -> List[SearchHit]:
        """
        Weighted merge of dense and sparse hits by id.

        Deterministic: ties keep first-seen order (dense before sparse).

        Args:
            dense_hits: Dense stage hits
            sparse_hits: Sparse (or keyword) stage hits
            weights: Fusion weights; forced to 1.0/0.0 when sparse_hits is empty
            top_k: Truncate to this many hits
            min_similarity: Drop fused hits scoring below this
            keyword_fallback: Sparse hits came from the keyword query

        Returns:
            Fused hits sorted descending by score, no duplicate ids
        """
        if not sparse_hits:
            weights = HybridWeights(dense=1.0, sparse=0.0)

        merged: Dict[str, _Fused] = {}

        for hit in dense_hits:
            if hit.id in merged:
                continue
            entry = _Fused(hit)
            entry.dense_score = hit.score
            entry.score = hit.score * weights.dense
            entry.sources.append("dense")
            merged[hit.id] = entry

        for hit in sparse_hits:
            entry = merged.get(hit.id)
            if entry is None:
                entry = _Fused(hit)
                merged[hit.id] = entry
            elif "sparse" in entry.sources:
                continue
            elif not entry.text:
                entry.text = hit.text

            entry.sparse_score = hit.score
            entry.score += hit.score * weights.sparse
            entry.sources.append("sparse")

        fused = [
            self._build_hit(entry, weights, keyword_fallback=keyword_fallback and "sparse" in entry.sources)
            for entry in merged.values()
        ]

        if min_similarity is not None:
            fused = [hit for hit in fused if hit.score >= min_similarity]

        if not fused and dense_hits:
            logger.warning(
                f"Fusion produced no results; returning {len(dense_hits)} dense hits "
                f"with penalty {self.fallback_penalty}"
            )
            fused = self._dense_fallback(dense_hits)

        fused.sort(key=lambda h: h.score, reverse=True)
        return fused[:top_k] if top_k else fused

    def _dense_fallback(self, dense_hits: List[SearchHit]) -> List[SearchHit]:
        seen = set()
        fallback = []
        for hit in dense_hits:
            if hit.id in seen:
                continue
            seen.add(hit.id)
            fallback.append(hit.model_copy(update={
                "score": hit.score * self.fallback_penalty,
                "hybrid": HybridInfo(
                    dense_score=hit.score,
                    dense_weight=self.fallback_penalty,
                    sources=["dense"],
                    fallback_mode=True
                )
            }))
        return fallback

    @staticmethod
    def _build_hit(entry: _Fused, weights: HybridWeights, keyword_fallback: bool) -> SearchHit:
        return entry.hit.model_copy(update={
            "score": entry.score,
            "text": entry.text,
            "hybrid": HybridInfo(
                dense_score=entry.dense_score,
                sparse_score=entry.sparse_score,
                dense_weight=weights.dense,
                sparse_weight=weights.sparse,
                sources=list(entry.sources),
                keyword_fallback=keyword_fallback
            )
        })

    @staticmethod
    def _get_cache_key(
        query: str,
        namespace: str,
        dense_hits: List[SearchHit],
        weights: HybridWeights,
        top_k: int,
        filters: Optional[Dict[str, Any]],
        min_similarity: Optional[float]
    ) -> str:
        dense_fingerprint = ",".join(f"{hit.id}={hit.score:.6f}" for hit in dense_hits)
        return CacheEngine.hash_key(
            query,
            namespace,
            top_k,
            f"{weights.dense}/{weights.sparse}",
            json.dumps(filters or {}, sort_keys=True),
            min_similarity,
            dense_fingerprint
        )

    async def clear_cache(self) -> None:
        """Drop every cached fusion result."""
        if self.cache is not None:
            await self.cache.clear(CacheNamespace.HYBRID_RESULTS)
