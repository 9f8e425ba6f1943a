"""
Reranker Module

Second relevance pass over already-retrieved passages.

Models:
- rerank-english-v3.0 (accurate): Cohere cross-encoder, sees query and
  passage together
- embedding-similarity (fast): cosine similarity between query and
  passage embeddings from the EmbeddingService

When a model is unavailable or a pair fails to score, that pair falls
back to a term-overlap heuristic; the rest of the batch still uses the
model.

Why reranking?
- Initial retrieval optimizes for recall
- Reranking optimizes for precision

Usage:
    reranker = Reranker(embedding_service=embeddings)
    model = select_model(query, prioritize_speed=True)
    reranked = await reranker.rerank(query, hits, RerankOptions(top_n=5, model=model))
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

import cohere
import numpy as np

from kbsearch.cache import CacheEngine, CacheNamespace
from kbsearch.config import settings
from kbsearch.models import RerankInfo, RerankOptions, SearchHit
from kbsearch.retrieval.embeddings import EmbeddingService

logger = logging.getLogger(__name__)

SHORT_QUERY_CHARS = 100
LONG_QUERY_CHARS = 200

# Heuristic relevance when the query has no usable terms
EMPTY_QUERY_RELEVANCE = 0.1


def select_model(query: str, prioritize_speed: bool = False) -> str:
    """
    Pick a rerank model from the query alone.

    Short queries, or callers that prioritize speed, get the fast model;
    long queries get the accurate one.
    """
    if prioritize_speed or len(query) < SHORT_QUERY_CHARS:
        return settings.RERANK_FAST_MODEL
    if len(query) > LONG_QUERY_CHARS:
        return settings.RERANK_ACCURATE_MODEL
    return settings.RERANK_FAST_MODEL


class Reranker:
    """
    Model-backed reranker with per-pair heuristic fallback.

    Scores are combined as relevance_weight * new + original_weight *
    retrieval score, for model and heuristic scores alike.
    """

    select_model = staticmethod(select_model)

    def __init__(
        self,
        embedding_service: Optional[EmbeddingService] = None,
        api_key: str = None,
        client: Optional[cohere.AsyncClient] = None,
        cache: Optional[CacheEngine] = None,
        timeout: float = None
    ):
        """
        Initialize reranker.

        Args:
            embedding_service: Backs the fast embedding-similarity model
            api_key: Cohere API key (backs the accurate model)
            client: Pre-built Cohere async client
            cache: Cache engine for the reranked_results stage
            timeout: Deadline per model call in seconds
        """
        self.embedding_service = embedding_service
        self.api_key = api_key or settings.COHERE_API_KEY
        self.client = client or (cohere.AsyncClient(api_key=self.api_key) if self.api_key else None)
        self.cache = cache
        self.timeout = timeout if timeout is not None else settings.RERANK_TIMEOUT

        self.fast_model = settings.RERANK_FAST_MODEL
        self.accurate_model = settings.RERANK_ACCURATE_MODEL
        self.max_candidates = settings.RERANK_MAX_CANDIDATES
        self.relevance_weight = settings.RERANK_RELEVANCE_WEIGHT
        self.original_weight = settings.RERANK_ORIGINAL_WEIGHT
        self.term_overlap_weight = settings.RERANK_TERM_OVERLAP_WEIGHT
        self.length_factor_weight = settings.RERANK_LENGTH_FACTOR_WEIGHT

    async def rerank(
        self,
        query: str,
        hits: List[SearchHit],
        options: Optional[RerankOptions] = None,
        scope: Optional[str] = None
    ) -> List[SearchHit]:
        """
        Rerank hits for a query.

        Args:
            query: Search query
            hits: Retrieved hits (only the first max_candidates are scored)
            options: top_n, score_threshold, model, enabled
            scope: Invalidation group for the cached result

        Returns:
            Hits sorted by reranked score, thresholded and truncated;
            the input unchanged when disabled or fewer than 2 hits
        """
        options = options or RerankOptions()
        if not options.enabled or len(hits) < 2:
            return hits

        model = options.model or self.select_model(query)
        candidates = hits[:self.max_candidates]

        cache_key = None
        if self.cache is not None:
            cache_key = CacheEngine.hash_key(
                query, model, options.top_n, options.score_threshold,
                ",".join(f"{hit.id}={hit.score:.6f}" for hit in candidates)
            )
            cached = await self.cache.get(CacheNamespace.RERANKED_RESULTS, cache_key)
            if cached is not None:
                return [SearchHit.model_validate(item) for item in cached]

        logger.info(f"Reranking {len(candidates)} hits with {model}")

        scored = await self._score(query, candidates, model)

        reranked = []
        heuristic_count = 0
        for hit, (relevance, heuristic) in zip(candidates, scored):
            heuristic_count += heuristic
            final = self.relevance_weight * relevance + self.original_weight * hit.score
            reranked.append(hit.model_copy(update={
                "score": final,
                "rerank": RerankInfo(
                    model=model,
                    original_score=hit.score,
                    rerank_score=relevance,
                    heuristic=heuristic
                )
            }))

        reranked.sort(key=lambda h: h.score, reverse=True)
        reranked = [hit for hit in reranked if hit.score >= options.score_threshold][:options.top_n]

        if heuristic_count:
            logger.warning(f"{heuristic_count}/{len(candidates)} pairs scored by heuristic fallback")

        # Heuristic scores reflect an outage; do not cache them
        if cache_key is not None and reranked and not heuristic_count:
            await self.cache.set(
                CacheNamespace.RERANKED_RESULTS,
                cache_key,
                [hit.model_dump(mode="json") for hit in reranked],
                scope=scope
            )

        logger.info(f"Reranked to top {len(reranked)} hits")
        return reranked

    async def _score(self, query: str, hits: List[SearchHit], model: str) -> List[Tuple[float, bool]]:
        """
        Relevance per hit as (score, heuristic?).

        Pairs the model could not score get the heuristic score.
        """
        if model == self.fast_model:
            scores = await self._score_with_embeddings(query, hits)
        else:
            scores = await self._score_with_cohere(query, hits, model)

        return [
            (score, False) if score is not None else (self.heuristic_score(query, hit), True)
            for hit, score in zip(hits, scores)
        ]

    async def _score_with_cohere(self, query: str, hits: List[SearchHit], model: str) -> List[Optional[float]]:
        """Cross-encoder relevance; all None when the client is missing or the call fails."""
        if self.client is None:
            logger.warning("Cohere API key not configured, using heuristic reranking")
            return [None] * len(hits)

        try:
            response = await asyncio.wait_for(
                self.client.rerank(
                    model=model,
                    query=query,
                    documents=[hit.text for hit in hits],
                    top_n=len(hits)
                ),
                timeout=self.timeout
            )
        except Exception as e:
            logger.error(f"Reranking with {model} failed: {e}")
            return [None] * len(hits)

        scores: List[Optional[float]] = [None] * len(hits)
        for result in response.results:
            scores[result.index] = float(result.relevance_score)
        return scores

    async def _score_with_embeddings(self, query: str, hits: List[SearchHit]) -> List[Optional[float]]:
        """Cosine similarity per pair; a failed passage embedding yields None for that pair only."""
        if self.embedding_service is None:
            logger.warning("No embedding service configured, using heuristic reranking")
            return [None] * len(hits)

        try:
            query_vector = await asyncio.wait_for(
                self.embedding_service.embed_query(query), timeout=self.timeout
            )
        except Exception as e:
            logger.error(f"Query embedding for reranking failed: {e}")
            return [None] * len(hits)

        results = await asyncio.gather(
            *(asyncio.wait_for(self.embedding_service.embed(hit.text), timeout=self.timeout) for hit in hits),
            return_exceptions=True
        )

        scores: List[Optional[float]] = []
        for hit, result in zip(hits, results):
            if isinstance(result, BaseException):
                logger.debug(f"Embedding failed for hit {hit.id}: {result}")
                scores.append(None)
            else:
                scores.append(self._cosine(query_vector, result))
        return scores

    @staticmethod
    def _cosine(a: List[float], b: List[float]) -> Optional[float]:
        va = np.asarray(a, dtype=float)
        vb = np.asarray(b, dtype=float)
        if va.shape != vb.shape:
            return None
        norm = np.linalg.norm(va) * np.linalg.norm(vb)
        if norm == 0:
            return 0.0
        return float(np.dot(va, vb) / norm)

    def heuristic_score(self, query: str, hit: SearchHit) -> float:
        """
        Term-overlap relevance.

        Fraction of query terms found in the passage, plus a bonus for
        passages at least twice as long as the query.
        """
        terms = [t for t in query.lower().split() if t]
        if not terms:
            return EMPTY_QUERY_RELEVANCE

        text = hit.text.lower()
        term_overlap = sum(1 for term in terms if term in text) / len(terms)
        length_factor = min(1.0, len(hit.text) / (len(query) * 2))

        return term_overlap * self.term_overlap_weight + length_factor * self.length_factor_weight

    def available_models(self) -> List[str]:
        """Models that can currently score pairs without falling back."""
        models = []
        if self.embedding_service is not None:
            models.append(self.fast_model)
        if self.client is not None:
            models.append(self.accurate_model)
        return models

    def is_available(self) -> bool:
        """
        Check if any rerank model is configured.

        Returns:
            True if at least one model can score pairs
        """
        return bool(self.available_models())

    def estimate_cost(self, num_documents: int) -> Dict[str, Any]:
        """
        Estimate cost for one accurate-model rerank call.

        Args:
            num_documents: Number of documents to rerank

        Returns:
            Cost estimation
        """
        # Cohere pricing: $1 per 1000 searches
        return {
            "num_documents": min(num_documents, self.max_candidates),
            "estimated_cost_usd": 0.001,
            "model": self.accurate_model
        }
