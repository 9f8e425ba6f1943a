"""
Component wiring.

Builds one explicit instance of every retrieval component and injects
them into each other; nothing here is a module-level singleton.

Usage:
    orchestrator = build_orchestrator()
    response = await orchestrator.search(query, tenant_id, agent_id)
"""

import logging
from typing import Optional

from kbsearch.cache import CacheEngine, PolicyRegistry, RedisCacheStore
from kbsearch.config import Settings, settings as default_settings
from kbsearch.retrieval import (
    EmbeddingService,
    HybridSearcher,
    Reranker,
    RetrievalOrchestrator,
    VectorStore,
)

logger = logging.getLogger(__name__)


def build_cache_engine(config: Optional[Settings] = None) -> CacheEngine:
    """Cache engine with a Redis tier when REDIS_URL is configured."""
    config = config or default_settings

    store = None
    if config.CACHE_L2_ENABLED and config.REDIS_URL:
        store = RedisCacheStore(redis_url=config.REDIS_URL, password=config.REDIS_PASSWORD)
    else:
        logger.info("No REDIS_URL configured, cache runs in-process only")

    return CacheEngine(
        store=store,
        registry=PolicyRegistry(),
        l1_enabled=config.CACHE_L1_ENABLED,
        l2_enabled=config.CACHE_L2_ENABLED,
        l2_timeout=config.CACHE_L2_TIMEOUT
    )


def build_orchestrator(
    config: Optional[Settings] = None,
    cache: Optional[CacheEngine] = None
) -> RetrievalOrchestrator:
    """
    Build the full retrieval stack.

    Args:
        config: Settings to build from (global settings if not provided)
        cache: Shared cache engine (built from config if not provided)

    Returns:
        Ready-to-use RetrievalOrchestrator
    """
    config = config or default_settings
    cache = cache or build_cache_engine(config)

    embedding_service = EmbeddingService(
        model=config.EMBEDDING_MODEL,
        api_key=config.OPENAI_API_KEY,
        cache=cache,
        timeout=config.EMBEDDING_TIMEOUT,
        max_retries=config.EMBEDDING_MAX_RETRIES
    )
    vector_store = VectorStore(
        host=config.QDRANT_HOST,
        port=config.QDRANT_PORT,
        api_key=config.QDRANT_API_KEY,
        collection_name=config.QDRANT_COLLECTION_NAME,
        sparse_enabled=config.QDRANT_SPARSE_ENABLED,
        query_timeout=config.INDEX_QUERY_TIMEOUT
    )
    hybrid_searcher = HybridSearcher(vector_store, cache=cache)
    reranker = Reranker(
        embedding_service=embedding_service,
        api_key=config.COHERE_API_KEY,
        cache=cache,
        timeout=config.RERANK_TIMEOUT
    )

    logger.info(
        f"Retrieval stack ready: embeddings={embedding_service.model}, "
        f"collection={vector_store.collection_name}, rerank models={reranker.available_models()}"
    )

    return RetrievalOrchestrator(
        embedding_service=embedding_service,
        vector_store=vector_store,
        hybrid_searcher=hybrid_searcher,
        reranker=reranker,
        cache=cache,
        fanout_timeout=config.FANOUT_TIMEOUT,
        max_query_variants=config.MAX_QUERY_VARIANTS
    )
