"""
Tests for the reranker.

Model selection, score combination, per-pair heuristic fallback, and
the reranked_results cache.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from kbsearch.cache import CacheNamespace
from kbsearch.models import RerankOptions
from kbsearch.retrieval.reranker import Reranker, select_model

from conftest import make_hit

FAST = "embedding-similarity"
ACCURATE = "rerank-english-v3.0"


def make_reranker(embedding_service=None, client=None, cache=None):
    reranker = Reranker(embedding_service=embedding_service, client=client, cache=cache, timeout=1.0)
    # No ambient API key should leak a real client into tests
    reranker.client = client
    return reranker


def cohere_client(relevance):
    """Cohere client mock returning `relevance` by document index."""
    client = MagicMock()
    client.rerank = AsyncMock(return_value=SimpleNamespace(results=[
        SimpleNamespace(index=i, relevance_score=score) for i, score in enumerate(relevance)
    ]))
    return client


def embedding_service(vectors, fail_on=()):
    """Embedding service mock: query -> [1, 0], passage text -> vectors[text]."""
    service = MagicMock()
    service.embed_query = AsyncMock(return_value=[1.0, 0.0])

    async def embed(text):
        if text in fail_on:
            raise RuntimeError("provider down")
        return vectors[text]

    service.embed = AsyncMock(side_effect=embed)
    return service


class TestSelectModel:
    """Query-driven model choice."""

    def test_short_query_fast(self):
        assert select_model("refund policy") == FAST

    def test_long_query_accurate(self):
        assert select_model("x" * 201) == ACCURATE

    def test_medium_query_fast(self):
        assert select_model("x" * 150) == FAST

    def test_prioritize_speed_wins(self):
        assert select_model("x" * 500, prioritize_speed=True) == FAST

    def test_available_on_instance(self):
        assert Reranker.select_model("x" * 201) == ACCURATE


class TestPassthrough:
    """Inputs returned unchanged."""

    @pytest.mark.asyncio
    async def test_disabled(self):
        hits = [make_hit("a", 0.2), make_hit("b", 0.9)]

        assert await make_reranker().rerank("q", hits, RerankOptions(enabled=False)) is hits

    @pytest.mark.asyncio
    async def test_single_hit(self):
        hits = [make_hit("a", 0.2)]

        assert await make_reranker().rerank("q", hits) is hits


class TestHeuristic:
    """Term-overlap fallback scoring."""

    def test_full_overlap_long_passage(self):
        hit = make_hit("a", 0.5, text="Refund policy: refunds within thirty days")

        assert make_reranker().heuristic_score("refund policy", hit) == pytest.approx(1.0)

    def test_partial_overlap_short_passage(self):
        hit = make_hit("a", 0.5, text="refund")  # 6 chars vs query 13

        score = make_reranker().heuristic_score("refund policy", hit)

        assert score == pytest.approx(0.5 * 0.7 + (6 / 26) * 0.3)

    def test_empty_query(self):
        assert make_reranker().heuristic_score("   ", make_hit("a", 0.5)) == 0.1

    @pytest.mark.asyncio
    async def test_accurate_model_without_client_uses_heuristic(self):
        hits = [make_hit("a", 0.4, text="unrelated"), make_hit("b", 0.2, text="refund policy details here")]

        reranked = await make_reranker().rerank("refund policy", hits, RerankOptions(model=ACCURATE))

        assert [h.id for h in reranked] == ["b", "a"]
        assert all(h.rerank.heuristic for h in reranked)
        assert all(h.rerank.model == ACCURATE for h in reranked)


class TestEmbeddingSimilarity:
    """Fast model: cosine between query and passage embeddings."""

    @pytest.mark.asyncio
    async def test_ranks_by_similarity(self):
        service = embedding_service({"close": [1.0, 0.0], "far": [0.0, 1.0]})
        hits = [make_hit("far", 0.5, text="far"), make_hit("close", 0.5, text="close")]

        reranked = await make_reranker(embedding_service=service).rerank("q", hits, RerankOptions(model=FAST))

        assert [h.id for h in reranked] == ["close", "far"]
        close = reranked[0]
        assert close.score == pytest.approx(0.7 * 1.0 + 0.3 * 0.5)
        assert close.rerank.original_score == 0.5
        assert close.rerank.rerank_score == pytest.approx(1.0)
        assert close.rerank.heuristic is False

    @pytest.mark.asyncio
    async def test_failed_pair_falls_back_alone(self):
        service = embedding_service({"ok": [1.0, 0.0]}, fail_on={"broken"})
        hits = [make_hit("ok", 0.5, text="ok"), make_hit("broken", 0.5, text="broken")]

        reranked = await make_reranker(embedding_service=service).rerank("q", hits, RerankOptions(model=FAST))

        by_id = {h.id: h for h in reranked}
        assert by_id["ok"].rerank.heuristic is False
        assert by_id["broken"].rerank.heuristic is True

    @pytest.mark.asyncio
    async def test_query_embedding_failure_falls_back_for_all(self):
        service = embedding_service({})
        service.embed_query.side_effect = RuntimeError("provider down")
        hits = [make_hit("a", 0.5), make_hit("b", 0.4)]

        reranked = await make_reranker(embedding_service=service).rerank("q", hits, RerankOptions(model=FAST))

        assert all(h.rerank.heuristic for h in reranked)


class TestCohere:
    """Accurate model via the Cohere rerank endpoint."""

    @pytest.mark.asyncio
    async def test_uses_relevance_scores(self):
        client = cohere_client([0.1, 0.95])
        hits = [make_hit("a", 0.9), make_hit("b", 0.3)]

        reranked = await make_reranker(client=client).rerank("q", hits, RerankOptions(model=ACCURATE))

        assert [h.id for h in reranked] == ["b", "a"]
        assert reranked[0].score == pytest.approx(0.7 * 0.95 + 0.3 * 0.3)
        kwargs = client.rerank.await_args.kwargs
        assert kwargs["model"] == ACCURATE
        assert kwargs["documents"] == ["passage a", "passage b"]

    @pytest.mark.asyncio
    async def test_client_failure_falls_back(self):
        client = MagicMock()
        client.rerank = AsyncMock(side_effect=RuntimeError("429 Too Many Requests"))
        hits = [make_hit("a", 0.9), make_hit("b", 0.3)]

        reranked = await make_reranker(client=client).rerank("q", hits, RerankOptions(model=ACCURATE))

        assert len(reranked) == 2
        assert all(h.rerank.heuristic for h in reranked)


class TestSelection:
    """Thresholding, truncation, candidate cap."""

    @pytest.mark.asyncio
    async def test_threshold_and_top_n(self):
        client = cohere_client([0.9, 0.8, 0.1, 0.7])
        hits = [make_hit(h, 0.5) for h in "abcd"]

        reranked = await make_reranker(client=client).rerank(
            "q", hits, RerankOptions(model=ACCURATE, top_n=2, score_threshold=0.3)
        )

        assert [h.id for h in reranked] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_threshold_drops_low_scores(self):
        client = cohere_client([0.9, 0.0])
        hits = [make_hit("a", 0.5), make_hit("b", 0.1)]

        reranked = await make_reranker(client=client).rerank(
            "q", hits, RerankOptions(model=ACCURATE, score_threshold=0.3)
        )

        assert [h.id for h in reranked] == ["a"]

    @pytest.mark.asyncio
    async def test_candidates_capped(self):
        client = cohere_client([0.5] * 20)
        hits = [make_hit(f"h{i}", 0.5) for i in range(30)]

        reranked = await make_reranker(client=client).rerank("q", hits, RerankOptions(model=ACCURATE, top_n=50))

        assert len(client.rerank.await_args.kwargs["documents"]) == 20
        assert len(reranked) == 20

    def test_available_models(self):
        assert make_reranker().available_models() == []
        assert not make_reranker().is_available()
        assert make_reranker(embedding_service=MagicMock(), client=MagicMock()).available_models() == [FAST, ACCURATE]


class TestRerankCache:
    """reranked_results stage cache."""

    @pytest.mark.asyncio
    async def test_repeat_served_from_cache(self, l1_engine):
        client = cohere_client([0.1, 0.95])
        reranker = make_reranker(client=client, cache=l1_engine)
        hits = [make_hit("a", 0.9), make_hit("b", 0.3)]

        first = await reranker.rerank("q", hits, RerankOptions(model=ACCURATE), scope="tenant:t:agent:a")
        second = await reranker.rerank("q", hits, RerankOptions(model=ACCURATE), scope="tenant:t:agent:a")

        assert first == second
        assert client.rerank.await_count == 1

        await l1_engine.invalidate_scope("tenant:t:agent:a")
        assert l1_engine.l1_size(CacheNamespace.RERANKED_RESULTS) == 0

    @pytest.mark.asyncio
    async def test_heuristic_results_not_cached(self, l1_engine):
        reranker = make_reranker(cache=l1_engine)
        hits = [make_hit("a", 0.9), make_hit("b", 0.3)]

        await reranker.rerank("q", hits, RerankOptions(model=ACCURATE))

        assert l1_engine.l1_size(CacheNamespace.RERANKED_RESULTS) == 0
