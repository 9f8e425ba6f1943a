"""
Tests for the Qdrant vector store client.

The async Qdrant client is mocked; tests check the requests built and
the conversion of points back to SearchHits.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from qdrant_client.http import models as qdrant_models

from kbsearch.exceptions import SparseQueryUnsupported, UpstreamUnavailable
from kbsearch.models import IndexRecord, TextMetadata, WebsiteMetadata
from kbsearch.retrieval.vector_store import VectorStore

NAMESPACE = VectorStore.namespace_for("acme", "support-bot")


def point(passage_id, score=0.5, text="", **payload):
    payload.update({"namespace": NAMESPACE, "passage_id": passage_id, "text": text})
    return SimpleNamespace(id=VectorStore.point_id(NAMESPACE, passage_id), score=score, payload=payload)


@pytest.fixture
def client():
    client = MagicMock()
    client.query_points = AsyncMock(return_value=SimpleNamespace(points=[]))
    client.scroll = AsyncMock(return_value=([], None))
    client.count = AsyncMock(return_value=SimpleNamespace(count=0))
    client.upsert = AsyncMock()
    client.delete = AsyncMock()
    client.collection_exists = AsyncMock(return_value=False)
    client.create_collection = AsyncMock()
    client.create_payload_index = AsyncMock()
    return client


@pytest.fixture
def store(client):
    return VectorStore(client=client, collection_name="kb_test", sparse_enabled=True, query_timeout=1.0)


def namespace_of(query_filter):
    return [c.match.value for c in query_filter.must if getattr(c, "key", None) == "namespace"]


class TestNamespaces:
    """Namespace string derivation."""

    def test_format(self):
        assert VectorStore.namespace_for("acme", "bot") == "tenant:acme:agent:bot"

    def test_reserved_characters_encoded(self):
        assert VectorStore.namespace_for("a:b", "c/d") == "tenant:a%3Ab:agent:c%2Fd"

    def test_distinct_pairs_never_collide(self):
        pairs = [("a:b", "c"), ("a", "b:c"), ("a:agent:b", "c"), ("a", "agent:b:c"), ("1", "2"), (1, "2")]
        namespaces = {VectorStore.namespace_for(t, a) for t, a in pairs[:-1]}

        assert len(namespaces) == len(pairs) - 1
        assert VectorStore.namespace_for(1, "2") == VectorStore.namespace_for("1", "2")

    def test_point_id_depends_on_namespace(self):
        assert VectorStore.point_id("ns1", "p1") != VectorStore.point_id("ns2", "p1")
        assert VectorStore.point_id("ns1", "p1") == VectorStore.point_id("ns1", "p1")


class TestDenseQuery:
    """Dense similarity search."""

    @pytest.mark.asyncio
    async def test_returns_hits_with_typed_metadata(self, store, client):
        client.query_points.return_value = SimpleNamespace(points=[
            point("p1", 0.91, "Refunds take 5 days", source_type="website", url="https://acme.test/refunds"),
            point("p2", 0.72, "Shipping info"),
        ])

        hits = await store.dense_query(NAMESPACE, [0.1, 0.2], top_k=5)

        assert [h.id for h in hits] == ["p1", "p2"]
        assert hits[0].score == 0.91
        assert isinstance(hits[0].metadata, WebsiteMetadata)
        assert hits[0].metadata.url == "https://acme.test/refunds"
        assert isinstance(hits[1].metadata, TextMetadata)

    @pytest.mark.asyncio
    async def test_request_scoped_to_namespace(self, store, client):
        await store.dense_query(NAMESPACE, [0.1, 0.2], top_k=7, filters={"category": "billing"})

        kwargs = client.query_points.await_args.kwargs
        assert kwargs["using"] == "dense"
        assert kwargs["limit"] == 7
        assert kwargs["collection_name"] == "kb_test"
        assert namespace_of(kwargs["query_filter"]) == [NAMESPACE]
        assert len(kwargs["query_filter"].must) == 2

    @pytest.mark.asyncio
    async def test_reserved_filter_keys_ignored(self, store, client):
        await store.dense_query(NAMESPACE, [0.1], filters={"namespace": "tenant:other:agent:x"})

        query_filter = client.query_points.await_args.kwargs["query_filter"]
        assert namespace_of(query_filter) == [NAMESPACE]

    @pytest.mark.asyncio
    async def test_unreadable_metadata_falls_back_to_text(self, store, client):
        client.query_points.return_value = SimpleNamespace(points=[point("p1", source_type="fax")])

        hits = await store.dense_query(NAMESPACE, [0.1])

        assert isinstance(hits[0].metadata, TextMetadata)

    @pytest.mark.asyncio
    async def test_index_error_raises_upstream_unavailable(self, store, client):
        client.query_points.side_effect = ConnectionError("refused")

        with pytest.raises(UpstreamUnavailable) as exc_info:
            await store.dense_query(NAMESPACE, [0.1])

        assert exc_info.value.stage == "dense_search"


class TestSparseQuery:
    """Sparse lexical search."""

    @pytest.mark.asyncio
    async def test_sends_sparse_vector(self, store, client):
        client.query_points.return_value = SimpleNamespace(points=[point("p1", 3.2, "refund policy")])

        hits = await store.sparse_query(NAMESPACE, "refund policy", top_k=15)

        kwargs = client.query_points.await_args.kwargs
        assert kwargs["using"] == "sparse"
        assert isinstance(kwargs["query"], qdrant_models.SparseVector)
        assert len(kwargs["query"].indices) == 2
        assert hits[0].score == 3.2

    @pytest.mark.asyncio
    async def test_stopword_only_query_skips_index(self, store, client):
        assert await store.sparse_query(NAMESPACE, "what is the") == []
        client.query_points.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_disabled_sparse_unsupported(self, client):
        store = VectorStore(client=client, sparse_enabled=False)

        with pytest.raises(SparseQueryUnsupported):
            await store.sparse_query(NAMESPACE, "refund policy")

    @pytest.mark.asyncio
    async def test_missing_vector_name_unsupported(self, store, client):
        client.query_points.side_effect = RuntimeError("Wrong input: Not existing vector name error: sparse")

        with pytest.raises(SparseQueryUnsupported):
            await store.sparse_query(NAMESPACE, "refund policy")

    @pytest.mark.asyncio
    async def test_other_errors_upstream_unavailable(self, store, client):
        client.query_points.side_effect = ConnectionError("refused")

        with pytest.raises(UpstreamUnavailable) as exc_info:
            await store.sparse_query(NAMESPACE, "refund policy")

        assert not isinstance(exc_info.value, SparseQueryUnsupported)
        assert exc_info.value.stage == "sparse_search"


class TestKeywordQuery:
    """Full-text keyword fallback."""

    @pytest.mark.asyncio
    async def test_scores_by_keyword_fraction(self, store, client):
        client.scroll.return_value = ([
            point("p1", text="Reset your password"),
            point("p2", text="Password and account reset steps"),
            point("p3", text="Unrelated"),
        ], None)

        hits = await store.keyword_query(NAMESPACE, ["password", "account"], top_k=5)

        assert [(h.id, h.score) for h in hits] == [("p2", 1.0), ("p1", 0.5)]

        scroll_filter = client.scroll.await_args.kwargs["scroll_filter"]
        assert namespace_of(scroll_filter) == [NAMESPACE]
        assert [c.match.text for c in scroll_filter.should] == ["password", "account"]

    @pytest.mark.asyncio
    async def test_no_keywords(self, store, client):
        assert await store.keyword_query(NAMESPACE, []) == []
        client.scroll.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_error_raises_upstream_unavailable(self, store, client):
        client.scroll.side_effect = ConnectionError("refused")

        with pytest.raises(UpstreamUnavailable):
            await store.keyword_query(NAMESPACE, ["password"])


class TestWrites:
    """Upsert, count, delete, collection setup."""

    @pytest.mark.asyncio
    async def test_upsert_builds_points(self, store, client):
        records = [
            IndexRecord(id="p1", text="Refunds take five days", vector=[0.1, 0.2],
                        metadata=WebsiteMetadata(url="https://acme.test", source_id="s1")),
            IndexRecord(id="p2", text="the", vector=[0.3, 0.4]),
        ]

        assert await store.upsert(NAMESPACE, records) == 2

        points = client.upsert.await_args.kwargs["points"]
        assert points[0].id == VectorStore.point_id(NAMESPACE, "p1")
        assert points[0].payload["namespace"] == NAMESPACE
        assert points[0].payload["passage_id"] == "p1"
        assert points[0].payload["source_type"] == "website"
        assert points[0].payload["source_id"] == "s1"
        assert set(points[0].vector) == {"dense", "sparse"}
        # Stopword-only text has no sparse vector
        assert set(points[1].vector) == {"dense"}

    @pytest.mark.asyncio
    async def test_upsert_batches(self, store, client):
        records = [IndexRecord(id=f"p{i}", text="text", vector=[0.1]) for i in range(5)]

        await store.upsert(NAMESPACE, records, batch_size=2)

        assert client.upsert.await_count == 3

    @pytest.mark.asyncio
    async def test_upsert_requires_vectors(self, store):
        with pytest.raises(ValueError):
            await store.upsert(NAMESPACE, [IndexRecord(id="p1", text="x", vector=[])])

    @pytest.mark.asyncio
    async def test_upsert_empty(self, store, client):
        assert await store.upsert(NAMESPACE, []) == 0
        client.upsert.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_count(self, store, client):
        client.count.return_value = SimpleNamespace(count=42)

        assert await store.count(NAMESPACE) == 42
        assert namespace_of(client.count.await_args.kwargs["count_filter"]) == [NAMESPACE]

    @pytest.mark.asyncio
    async def test_delete_namespace(self, store, client):
        client.count.return_value = SimpleNamespace(count=3)

        assert await store.delete_namespace(NAMESPACE) == 3
        selector = client.delete.await_args.kwargs["points_selector"]
        assert namespace_of(selector.filter) == [NAMESPACE]

    @pytest.mark.asyncio
    async def test_delete_empty_namespace_skips_delete(self, store, client):
        assert await store.delete_namespace(NAMESPACE) == 0
        client.delete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ensure_collection_creates_vectors_and_indexes(self, store, client):
        assert await store.ensure_collection(vector_size=8) is True

        kwargs = client.create_collection.await_args.kwargs
        assert kwargs["vectors_config"]["dense"].size == 8
        assert kwargs["sparse_vectors_config"]["sparse"].modifier == qdrant_models.Modifier.IDF
        indexed = {c.kwargs["field_name"] for c in client.create_payload_index.await_args_list}
        assert {"namespace", "text", "source_type"} <= indexed

    @pytest.mark.asyncio
    async def test_ensure_collection_existing(self, store, client):
        client.collection_exists.return_value = True

        assert await store.ensure_collection() is False
        client.create_collection.assert_not_awaited()
