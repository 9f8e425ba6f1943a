"""
Retrieval Orchestrator

Composes one search request for a (tenant, agent) pair:

1. Preprocess: normalize the query, check the namespace has vectors,
   expand the query into a few variants
2. Cache lookup (context namespace); a hit ends the request
3. Per variant, in parallel: embed -> dense search -> fusion
4. Merge variants by passage id, keeping the best score
5. Rerank (optional)
6. Cache store, registered under the namespace's invalidation group

Dense search failing for every variant is the only stage failure that
reaches the caller (UpstreamUnavailable). Fusion, rerank, and partial
fan-out failures degrade to the best prior-stage result and are
reported in SearchResponse.degradations.

Usage:
    orchestrator = build_orchestrator()
    response = await orchestrator.search("How do refunds work?", "acme", "support-bot")
    for hit in response.hits:
        print(hit.score, hit.text[:80])
"""

import asyncio
import json
import logging
import time
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote

from kbsearch.cache import CacheEngine, CacheNamespace
from kbsearch.config import settings
from kbsearch.exceptions import UpstreamUnavailable
from kbsearch.models import (
    Degradation,
    HybridInfo,
    HybridWeights,
    RerankOptions,
    SearchHit,
    SearchOptions,
    SearchResponse,
    TRANSIENT_DEGRADATIONS,
)
from kbsearch.retrieval.embeddings import EmbeddingService
from kbsearch.retrieval.hybrid_search import HybridSearcher
from kbsearch.retrieval.query_expansion import expand_query
from kbsearch.retrieval.reranker import Reranker
from kbsearch.retrieval.vector_store import VectorStore

logger = logging.getLogger(__name__)

VariantResult = Tuple[List[SearchHit], List[Degradation]]


class RetrievalOrchestrator:
    """
    Request/response cycle of the retrieval core.

    All collaborators are injected; see kbsearch.container for wiring.
    """

    def __init__(
        self,
        embedding_service: EmbeddingService,
        vector_store: VectorStore,
        hybrid_searcher: HybridSearcher,
        reranker: Reranker,
        cache: CacheEngine,
        fanout_timeout: float = None,
        max_query_variants: int = None
    ):
        self.embedding_service = embedding_service
        self.vector_store = vector_store
        self.hybrid_searcher = hybrid_searcher
        self.reranker = reranker
        self.cache = cache
        self.fanout_timeout = fanout_timeout if fanout_timeout is not None else settings.FANOUT_TIMEOUT
        self.max_query_variants = max_query_variants or settings.MAX_QUERY_VARIANTS

    async def search(
        self,
        query: str,
        tenant_id: str,
        agent_id: str,
        options: Optional[SearchOptions] = None
    ) -> SearchResponse:
        """
        Search the knowledge base of one agent.

        Args:
            query: Natural-language query
            tenant_id: Tenant identifier
            agent_id: Agent identifier
            options: Per-call overrides

        Returns:
            Ranked hits, possibly degraded (see SearchResponse.degradations)

        Raises:
            UpstreamUnavailable: dense search failed for every query variant
        """
        started = time.perf_counter()
        options = options or SearchOptions()

        # PREPROCESS
        text = " ".join((query or "").split())
        normalized = text.lower()
        namespace = VectorStore.namespace_for(tenant_id, agent_id)
        response = SearchResponse(query=text, namespace=namespace)

        if not text:
            logger.debug("Empty query, nothing to search")
            return response

        if not await self._vectors_available(namespace):
            logger.info(f"No vectors indexed for {namespace}, skipping search")
            return response

        top_k = options.top_k or settings.RETRIEVAL_TOP_K
        weights = options.weights or self.hybrid_searcher.select_weights(text)
        rerank_enabled = settings.RERANK_ENABLED if options.enable_reranking is None else options.enable_reranking
        min_similarity = options.min_similarity if options.min_similarity is not None else settings.MIN_SIMILARITY

        # CACHE_LOOKUP
        cache_key = self._get_cache_key(normalized, namespace, weights, top_k, options, rerank_enabled)
        if options.enable_cache:
            cached = await self.cache.get(CacheNamespace.CONTEXT, cache_key)
            if cached is not None:
                logger.info(f"Context cache hit for {namespace}")
                return SearchResponse(
                    query=text,
                    namespace=namespace,
                    hits=[SearchHit.model_validate(item) for item in cached["hits"]],
                    cache_hit=True,
                    degradations=[Degradation(d) for d in cached.get("degradations", [])],
                    query_variants=cached.get("query_variants", [text]),
                    timings_ms={"total": self._elapsed_ms(started)}
                )

        # DENSE_SEARCH + FUSION per variant
        variants = expand_query(text, self.max_query_variants) if options.expand_query else [text]
        pool_size = max(top_k, settings.RERANK_MAX_CANDIDATES) if rerank_enabled else top_k

        fanout_started = time.perf_counter()
        hits, degradations = await self._fan_out(
            variants, namespace, weights, pool_size, options.filters, min_similarity, options.enable_cache
        )
        response.timings_ms["fanout"] = self._elapsed_ms(fanout_started)

        # RERANK
        if rerank_enabled and len(hits) >= 2:
            rerank_started = time.perf_counter()
            rerank_options = RerankOptions(
                top_n=options.rerank_top_n or settings.RERANK_TOP_N,
                score_threshold=(
                    options.rerank_threshold if options.rerank_threshold is not None
                    else settings.RERANK_SCORE_THRESHOLD
                ),
                model=options.rerank_model or self.reranker.select_model(text, options.prioritize_speed)
            )
            try:
                hits = await self.reranker.rerank(text, hits, rerank_options, scope=namespace)
                if any(hit.rerank is not None and hit.rerank.heuristic for hit in hits):
                    degradations.append(Degradation.RERANK_HEURISTIC)
            except Exception as e:
                logger.error(f"Reranking failed, keeping fused results: {e}")
                degradations.append(Degradation.RERANK_FAILED)
            response.timings_ms["rerank"] = self._elapsed_ms(rerank_started)

        response.hits = hits[:top_k]
        response.degradations = degradations
        response.query_variants = variants

        # CACHE_STORE
        if options.enable_cache and response.hits:
            if TRANSIENT_DEGRADATIONS.intersection(degradations):
                logger.info(f"Not caching degraded result for {namespace}: {[d.value for d in degradations]}")
            else:
                await self.cache.set(
                    CacheNamespace.CONTEXT,
                    cache_key,
                    response.to_cache_payload(),
                    scope=namespace
                )

        response.timings_ms["total"] = self._elapsed_ms(started)
        logger.info(
            f"Search in {namespace}: {len(response.hits)} hits from {len(variants)} variants "
            f"in {response.timings_ms['total']:.0f}ms (degraded={response.degraded})"
        )
        return response

    async def _fan_out(
        self,
        variants: List[str],
        namespace: str,
        weights: HybridWeights,
        top_k: int,
        filters: Optional[Dict],
        min_similarity: Optional[float],
        use_cache: bool
    ) -> VariantResult:
        """
        Search every variant in parallel under the fan-out deadline.

        Raises:
            UpstreamUnavailable: no variant's dense search succeeded
        """
        tasks = [
            asyncio.ensure_future(
                self._search_variant(variant, namespace, weights, top_k, filters, min_similarity, use_cache)
            )
            for variant in variants
        ]
        try:
            done, pending = await asyncio.wait(tasks, timeout=self.fanout_timeout)
        finally:
            # Also runs when search() itself is cancelled
            for task in tasks:
                if not task.done():
                    task.cancel()

        results: List[VariantResult] = []
        failures: List[BaseException] = []
        for variant, task in zip(variants, tasks):
            if task in pending:
                logger.warning(f"Variant {variant[:50]!r} timed out after {self.fanout_timeout}s")
                failures.append(asyncio.TimeoutError(f"variant timed out: {variant}"))
                continue
            error = task.exception()
            if error is not None:
                logger.warning(f"Variant {variant[:50]!r} failed: {error}")
                failures.append(error)
                continue
            results.append(task.result())

        if not results:
            cause = failures[0] if failures else None
            raise UpstreamUnavailable(
                "dense_search", f"dense search failed for all {len(variants)} query variants"
            ) from cause

        degradations: List[Degradation] = []
        if failures:
            degradations.append(Degradation.PARTIAL_FANOUT)

        best: Dict[str, SearchHit] = {}
        for hits, variant_degradations in results:
            for degradation in variant_degradations:
                if degradation not in degradations:
                    degradations.append(degradation)
            for hit in hits:
                current = best.get(hit.id)
                if current is None or hit.score > current.score:
                    best[hit.id] = hit

        merged = sorted(best.values(), key=lambda h: h.score, reverse=True)
        return merged, degradations

    async def _search_variant(
        self,
        variant: str,
        namespace: str,
        weights: HybridWeights,
        top_k: int,
        filters: Optional[Dict],
        min_similarity: Optional[float],
        use_cache: bool
    ) -> VariantResult:
        """
        Dense search and fusion for one query variant.

        Raises:
            UpstreamUnavailable: the query could not be embedded or dense search failed
        """
        try:
            vector = await self.embedding_service.embed_query(variant)
        except UpstreamUnavailable as e:
            raise UpstreamUnavailable("dense_search", f"query embedding failed: {e}") from e

        candidates = max(top_k, round(top_k * settings.HYBRID_TOP_K_MULTIPLIER))
        dense_hits = await self.vector_store.dense_query(namespace, vector, candidates, filters)

        degradations: List[Degradation] = []
        try:
            fused = await self.hybrid_searcher.fuse(
                variant,
                dense_hits,
                namespace,
                weights=weights,
                top_k=top_k,
                filters=filters,
                min_similarity=min_similarity,
                use_cache=use_cache
            )
        except Exception as e:
            logger.error(f"Fusion failed for {variant[:50]!r}, using dense results: {e}")
            fused = [
                hit.model_copy(update={"hybrid": HybridInfo(
                    dense_score=hit.score, dense_weight=1.0, sources=["dense"], fallback_mode=True
                )})
                for hit in dense_hits[:top_k]
            ]
            degradations.append(Degradation.FUSION_FAILED)
        else:
            if any(hit.hybrid is not None and hit.hybrid.keyword_fallback for hit in fused):
                degradations.append(Degradation.SPARSE_KEYWORD_FALLBACK)
            if any(hit.hybrid is not None and hit.hybrid.sparse_failed for hit in fused):
                degradations.append(Degradation.SPARSE_FAILED)
            if any(hit.hybrid is not None and hit.hybrid.fallback_mode for hit in fused):
                degradations.append(Degradation.FUSION_DENSE_FALLBACK)

        return [hit.model_copy(update={"matched_query": variant}) for hit in fused], degradations

    # ------------------------------------------------------------------
    # Vector availability
    # ------------------------------------------------------------------

    async def vectors_available(self, tenant_id: str, agent_id: str) -> bool:
        """True if the agent's namespace holds at least one passage."""
        return await self._vectors_available(VectorStore.namespace_for(tenant_id, agent_id))

    async def _vectors_available(self, namespace: str) -> bool:
        cached = await self.cache.get(CacheNamespace.VECTOR_AVAILABILITY, namespace)
        if cached is not None:
            return cached > 0

        try:
            count = await self.vector_store.count(namespace)
        except Exception as e:
            # Unknown: let the search itself find out
            logger.warning(f"Vector count failed for {namespace}: {e}")
            return True

        await self.cache.set(CacheNamespace.VECTOR_AVAILABILITY, namespace, count, scope=namespace)
        return count > 0

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    async def invalidate(self, tenant_id: str, agent_id: str) -> int:
        """
        Purge every cache entry produced while serving one agent.

        Call after re-indexing or deleting the agent's documents.

        Returns:
            Number of cache keys purged
        """
        namespace = VectorStore.namespace_for(tenant_id, agent_id)
        purged = await self.cache.invalidate_scope(namespace)
        logger.info(f"Invalidated {purged} cache keys for {namespace}")
        return purged

    async def invalidate_tenant(self, tenant_id: str) -> int:
        """Purge cache entries of every agent of a tenant."""
        prefix = f"tenant:{quote(str(tenant_id), safe='')}:agent:"
        purged = await self.cache.invalidate_scopes_with_prefix(prefix)
        logger.info(f"Invalidated {purged} cache keys for tenant {tenant_id}")
        return purged

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _get_cache_key(
        normalized_query: str,
        namespace: str,
        weights: HybridWeights,
        top_k: int,
        options: SearchOptions,
        rerank_enabled: bool
    ) -> str:
        # namespace rather than raw ids: ":" inside an id cannot shift the key
        return CacheEngine.hash_key(
            normalized_query,
            namespace,
            f"{weights.dense}/{weights.sparse}",
            top_k,
            json.dumps(options.filters or {}, sort_keys=True),
            options.min_similarity,
            rerank_enabled,
            options.rerank_model,
            options.rerank_top_n,
            options.rerank_threshold,
            options.prioritize_speed,
            options.expand_query
        )

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return (time.perf_counter() - started) * 1000.0
