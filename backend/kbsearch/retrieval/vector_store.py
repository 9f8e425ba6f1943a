"""
Vector Store Client

Qdrant vector database client with support for:
- Collection management (named dense + sparse vectors, payload indexes)
- Namespace-partitioned upserts and deletes
- Dense, sparse, and keyword queries with exact-match metadata filters

Every passage lives in one collection and carries its tenant+agent
namespace in the payload; every query is filtered on it.

Usage:
    store = VectorStore()
    namespace = VectorStore.namespace_for("acme", "support-bot")
    await store.upsert(namespace, records)
    hits = await store.dense_query(namespace, query_vector, top_k=10)
"""

import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from pydantic import TypeAdapter, ValidationError
from qdrant_client import AsyncQdrantClient
from qdrant_client.http import models as qdrant_models

from kbsearch.config import settings
from kbsearch.exceptions import SparseQueryUnsupported, UpstreamUnavailable
from kbsearch.models import IndexRecord, PassageMetadata, SearchHit, TextMetadata
from kbsearch.retrieval.tokenizer import sparse_vector

logger = logging.getLogger(__name__)

# Payload keys owned by the store; never part of passage metadata filters
RESERVED_PAYLOAD_KEYS = ("namespace", "passage_id", "text")

_metadata_adapter = TypeAdapter(PassageMetadata)


class VectorStore:
    """
    Qdrant vector store client.

    Features:
    - Async operations for high throughput
    - Namespace isolation through a mandatory payload filter
    - Hashed-term sparse vectors with server-side IDF
    - Per-call deadline on every index request
    """

    def __init__(
        self,
        host: str = None,
        port: int = None,
        api_key: str = None,
        collection_name: str = None,
        client: Optional[AsyncQdrantClient] = None,
        sparse_enabled: bool = None,
        query_timeout: float = None
    ):
        """
        Initialize Qdrant client.

        Args:
            host: Qdrant server host
            port: Qdrant server port
            api_key: API key for Qdrant Cloud
            collection_name: Collection holding every namespace
            client: Pre-built async client
            sparse_enabled: Whether the collection carries a sparse vector
            query_timeout: Deadline per index call in seconds
        """
        self.host = host or settings.QDRANT_HOST
        self.port = port or settings.QDRANT_PORT
        self.api_key = api_key or settings.QDRANT_API_KEY
        self.collection_name = collection_name or settings.QDRANT_COLLECTION_NAME
        self.dense_vector_name = settings.QDRANT_DENSE_VECTOR_NAME
        self.sparse_vector_name = settings.QDRANT_SPARSE_VECTOR_NAME
        self.sparse_enabled = settings.QDRANT_SPARSE_ENABLED if sparse_enabled is None else sparse_enabled
        self.query_timeout = query_timeout if query_timeout is not None else settings.INDEX_QUERY_TIMEOUT

        self._async_client: Optional[AsyncQdrantClient] = client

    @staticmethod
    def namespace_for(tenant_id: str, agent_id: str) -> str:
        """
        Index namespace of a (tenant, agent) pair.

        Both ids are percent-encoded (":" included), so distinct pairs
        never map to the same namespace.
        """
        return f"tenant:{quote(str(tenant_id), safe='')}:agent:{quote(str(agent_id), safe='')}"

    async def _get_async_client(self) -> AsyncQdrantClient:
        """Get or create async client."""
        if self._async_client is None:
            if settings.QDRANT_URL:
                # Cloud instance
                self._async_client = AsyncQdrantClient(
                    url=settings.QDRANT_URL,
                    api_key=self.api_key,
                    timeout=settings.QDRANT_TIMEOUT
                )
            else:
                # Local instance - use HTTP
                self._async_client = AsyncQdrantClient(
                    url=f"http://{self.host}:{self.port}",
                    api_key=self.api_key,
                    https=False,
                    timeout=settings.QDRANT_TIMEOUT
                )
        return self._async_client

    async def _call(self, awaitable):
        return await asyncio.wait_for(awaitable, timeout=self.query_timeout)

    # ------------------------------------------------------------------
    # Collection management
    # ------------------------------------------------------------------

    async def ensure_collection(self, vector_size: int = None) -> bool:
        """
        Create the collection and its payload indexes if missing.

        Args:
            vector_size: Dimension of dense vectors

        Returns:
            True if the collection was created, False if it already existed
        """
        vector_size = vector_size or settings.EMBEDDING_DIMENSION
        client = await self._get_async_client()

        if await client.collection_exists(self.collection_name):
            logger.info(f"Collection {self.collection_name} already exists")
            return False

        sparse_config = None
        if self.sparse_enabled:
            sparse_config = {
                self.sparse_vector_name: qdrant_models.SparseVectorParams(
                    modifier=qdrant_models.Modifier.IDF
                )
            }

        try:
            await client.create_collection(
                collection_name=self.collection_name,
                vectors_config={
                    self.dense_vector_name: qdrant_models.VectorParams(
                        size=vector_size,
                        distance=qdrant_models.Distance.COSINE
                    )
                },
                sparse_vectors_config=sparse_config
            )
        except Exception as e:
            # Created concurrently by another process
            if "already exists" in str(e) or "409" in str(e):
                logger.info(f"Collection {self.collection_name} already exists (caught during creation)")
                return False
            logger.error(f"Failed to create collection {self.collection_name}: {e}")
            raise

        payload_indexes = {
            "namespace": qdrant_models.PayloadSchemaType.KEYWORD,
            "source_type": qdrant_models.PayloadSchemaType.KEYWORD,
            "source_id": qdrant_models.PayloadSchemaType.KEYWORD,
            "category": qdrant_models.PayloadSchemaType.KEYWORD,
            "text": qdrant_models.TextIndexParams(
                type=qdrant_models.TextIndexType.TEXT,
                tokenizer=qdrant_models.TokenizerType.WORD,
                lowercase=True
            ),
        }
        for field_name, field_schema in payload_indexes.items():
            try:
                await client.create_payload_index(
                    collection_name=self.collection_name,
                    field_name=field_name,
                    field_schema=field_schema
                )
            except Exception as e:
                logger.warning(f"Could not create payload index {field_name}: {e}")

        logger.info(f"Created collection {self.collection_name} with vector size {vector_size}")
        return True

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert(self, namespace: str, records: List[IndexRecord], batch_size: int = 100) -> int:
        """
        Upsert passages into a namespace.

        Args:
            namespace: Target namespace (see namespace_for)
            records: Passages with dense vectors
            batch_size: Points per upsert request

        Returns:
            Number of passages upserted
        """
        if not records:
            return 0

        for record in records:
            if not record.vector:
                raise ValueError(f"Record {record.id} missing vector")

        client = await self._get_async_client()

        total_upserted = 0
        for i in range(0, len(records), batch_size):
            batch = records[i:i + batch_size]
            points = [self._record_to_point(namespace, record) for record in batch]
            await self._call(client.upsert(collection_name=self.collection_name, points=points))
            total_upserted += len(batch)
            logger.debug(f"Upserted batch {i // batch_size + 1}: {len(batch)} passages")

        logger.info(f"Upserted {total_upserted} passages to {namespace}")
        return total_upserted

    async def delete_namespace(self, namespace: str) -> int:
        """
        Delete every passage of a namespace.

        Returns:
            Number of passages deleted
        """
        deleted_count = await self.count(namespace)
        if deleted_count == 0:
            return 0

        client = await self._get_async_client()
        await self._call(client.delete(
            collection_name=self.collection_name,
            points_selector=qdrant_models.FilterSelector(filter=self._build_filter(namespace))
        ))
        logger.info(f"Deleted {deleted_count} passages from {namespace}")
        return deleted_count

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def count(self, namespace: str) -> int:
        """Exact number of passages stored under a namespace."""
        client = await self._get_async_client()
        result = await self._call(client.count(
            collection_name=self.collection_name,
            count_filter=self._build_filter(namespace),
            exact=True
        ))
        return result.count if result else 0

    async def dense_query(
        self,
        namespace: str,
        vector: List[float],
        top_k: int = None,
        filters: Optional[Dict[str, Any]] = None
    ) -> List[SearchHit]:
        """
        Nearest-neighbour search on the dense vector.

        Returns:
            Hits sorted by cosine similarity

        Raises:
            UpstreamUnavailable: index error or timeout (stage "dense_search")
        """
        top_k = top_k or settings.RETRIEVAL_TOP_K
        client = await self._get_async_client()

        try:
            results = await self._call(client.query_points(
                collection_name=self.collection_name,
                query=vector,
                using=self.dense_vector_name,
                limit=top_k,
                query_filter=self._build_filter(namespace, filters),
                with_payload=True
            ))
        except asyncio.TimeoutError as e:
            raise UpstreamUnavailable("dense_search", f"dense query timed out after {self.query_timeout}s") from e
        except Exception as e:
            logger.error(f"Dense query failed for {namespace}: {e}")
            raise UpstreamUnavailable("dense_search", f"dense query failed: {e}") from e

        return [self._point_to_hit(point) for point in results.points]

    async def sparse_query(
        self,
        namespace: str,
        query: str,
        top_k: int = None,
        filters: Optional[Dict[str, Any]] = None
    ) -> List[SearchHit]:
        """
        Lexical search on the sparse vector.

        Returns:
            Hits sorted by sparse score ([] when the query has no terms)

        Raises:
            SparseQueryUnsupported: collection has no sparse vector
            UpstreamUnavailable: other index error or timeout
        """
        if not self.sparse_enabled:
            raise SparseQueryUnsupported()

        indices, values = sparse_vector(query, is_query=True)
        if not indices:
            return []

        top_k = top_k or settings.RETRIEVAL_TOP_K
        client = await self._get_async_client()

        try:
            results = await self._call(client.query_points(
                collection_name=self.collection_name,
                query=qdrant_models.SparseVector(indices=indices, values=values),
                using=self.sparse_vector_name,
                limit=top_k,
                query_filter=self._build_filter(namespace, filters),
                with_payload=True
            ))
        except asyncio.TimeoutError as e:
            raise UpstreamUnavailable("sparse_search", "sparse query timed out") from e
        except Exception as e:
            message = str(e)
            if "not existing vector name" in message.lower() or "sparse" in message.lower():
                raise SparseQueryUnsupported(message) from e
            raise UpstreamUnavailable("sparse_search", f"sparse query failed: {message}") from e

        return [self._point_to_hit(point) for point in results.points]

    async def keyword_query(
        self,
        namespace: str,
        keywords: List[str],
        top_k: int = None,
        filters: Optional[Dict[str, Any]] = None
    ) -> List[SearchHit]:
        """
        Full-text match on passage text for any of `keywords`.

        Score is the fraction of keywords the passage contains.

        Raises:
            UpstreamUnavailable: index error or timeout (stage "keyword_search")
        """
        if not keywords:
            return []

        top_k = top_k or settings.RETRIEVAL_TOP_K
        client = await self._get_async_client()

        query_filter = qdrant_models.Filter(
            must=self._build_filter(namespace, filters).must,
            should=[
                qdrant_models.FieldCondition(key="text", match=qdrant_models.MatchText(text=keyword))
                for keyword in keywords
            ]
        )

        try:
            points, _ = await self._call(client.scroll(
                collection_name=self.collection_name,
                scroll_filter=query_filter,
                limit=top_k * 4,
                with_payload=True,
                with_vectors=False
            ))
        except Exception as e:
            logger.error(f"Keyword query failed for {namespace}: {e}")
            raise UpstreamUnavailable("keyword_search", f"keyword query failed: {e}") from e

        hits = []
        lowered = [k.lower() for k in keywords]
        for point in points:
            text = (point.payload or {}).get("text", "").lower()
            matched = sum(1 for keyword in lowered if keyword in text)
            if matched:
                hits.append(self._point_to_hit(point, score=matched / len(lowered)))

        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:top_k]

    # ------------------------------------------------------------------
    # Conversions
    # ------------------------------------------------------------------

    def _build_filter(
        self,
        namespace: str,
        filters: Optional[Dict[str, Any]] = None
    ) -> qdrant_models.Filter:
        """
        Build Qdrant filter: namespace plus exact-match metadata conditions.

        Args:
            namespace: Namespace every result must belong to
            filters: Metadata field -> scalar value

        Returns:
            Qdrant Filter object
        """
        conditions = [
            qdrant_models.FieldCondition(key="namespace", match=qdrant_models.MatchValue(value=namespace))
        ]

        for key, value in (filters or {}).items():
            if key in RESERVED_PAYLOAD_KEYS:
                logger.warning(f"Ignoring filter on reserved field {key!r}")
                continue
            if value is None:
                conditions.append(qdrant_models.IsNullCondition(is_null=qdrant_models.PayloadField(key=key)))
            else:
                conditions.append(
                    qdrant_models.FieldCondition(key=key, match=qdrant_models.MatchValue(value=value))
                )

        return qdrant_models.Filter(must=conditions)

    @staticmethod
    def point_id(namespace: str, passage_id: str) -> str:
        """Deterministic point id; the same passage id may exist in several namespaces."""
        return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{namespace}/{passage_id}"))

    def _record_to_point(self, namespace: str, record: IndexRecord) -> qdrant_models.PointStruct:
        """Convert an IndexRecord to a Qdrant point."""
        vectors: Dict[str, Any] = {self.dense_vector_name: record.vector}
        if self.sparse_enabled:
            indices, values = sparse_vector(record.text)
            if indices:
                vectors[self.sparse_vector_name] = qdrant_models.SparseVector(indices=indices, values=values)

        payload = record.metadata.model_dump(mode="json")
        payload.update({"namespace": namespace, "passage_id": record.id, "text": record.text})

        return qdrant_models.PointStruct(
            id=self.point_id(namespace, record.id),
            vector=vectors,
            payload=payload
        )

    def _point_to_hit(self, point, score: Optional[float] = None) -> SearchHit:
        """Convert a Qdrant scored/record point to a SearchHit."""
        payload = dict(point.payload or {})
        payload.setdefault("source_type", "text")

        try:
            metadata = _metadata_adapter.validate_python(payload)
        except ValidationError as e:
            logger.warning(f"Unreadable metadata on point {point.id}: {e}")
            metadata = TextMetadata()

        return SearchHit(
            id=str(payload.get("passage_id", point.id)),
            text=payload.get("text", ""),
            score=score if score is not None else float(point.score),
            metadata=metadata
        )
