"""
Application Configuration Module

Manages all environment variables and retrieval settings using Pydantic.
Supports multiple environments (development, staging, production).

Environment variables are loaded from .env file or system environment.

Units:
- Every timeout below is in seconds (they feed asyncio.wait_for).
- Cache TTLs are NOT configured here; they live in the single
  millisecond policy table in kbsearch.cache.policies.
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All sensitive values (API keys, credentials) should be set via
    environment variables, never hardcoded.
    """

    # Application Settings
    APP_NAME: str = "kbsearch"
    APP_ENV: str = Field(default="development", description="development|staging|production")
    LOG_LEVEL: str = Field(default="INFO", description="Root log level")

    # API Keys - NEVER commit actual values
    OPENAI_API_KEY: str = Field(default="", description="OpenAI API key for embeddings")
    COHERE_API_KEY: str = Field(default="", description="Cohere API key for reranking")

    # Embedding Configuration
    EMBEDDING_MODEL: str = Field(default="text-embedding-3-small", description="OpenAI embedding model")
    EMBEDDING_MAX_TEXT_LENGTH: int = Field(default=8192, description="Inputs longer than this (chars) are chunked")
    EMBEDDING_CHUNK_SIZE: int = Field(default=4000, description="Chunk size in characters for long inputs")
    EMBEDDING_CHUNK_OVERLAP: int = Field(default=500, description="Overlap between consecutive chunks")
    EMBEDDING_BREAK_SEARCH_RANGE: int = Field(
        default=200,
        description="How far back from the chunk end to look for a paragraph/sentence/word break"
    )
    EMBEDDING_BATCH_SIZE: int = Field(default=100, description="Max texts per embeddings API call")
    EMBEDDING_MAX_RETRIES: int = Field(default=3, description="Bounded retry attempts per embedding call")
    EMBEDDING_TIMEOUT: float = Field(default=15.0, description="Deadline per embedding call (seconds)")

    # Vector Store Configuration
    QDRANT_HOST: str = Field(default="localhost", description="Qdrant server host")
    QDRANT_PORT: int = Field(default=6333, description="Qdrant server port")
    QDRANT_URL: Optional[str] = Field(default=None, description="Qdrant server URL (overrides host/port)")
    QDRANT_API_KEY: Optional[str] = Field(default=None, description="Qdrant API key for cloud")
    QDRANT_COLLECTION_NAME: str = Field(default="kb_passages", description="Collection holding all namespaces")
    QDRANT_DENSE_VECTOR_NAME: str = Field(default="dense", description="Named dense vector")
    QDRANT_SPARSE_VECTOR_NAME: str = Field(default="sparse", description="Named sparse vector")
    QDRANT_SPARSE_ENABLED: bool = Field(default=True, description="Collection carries a sparse vector")
    QDRANT_TIMEOUT: int = Field(default=30, description="Qdrant client timeout in seconds")
    INDEX_QUERY_TIMEOUT: float = Field(default=10.0, description="Deadline per index query (seconds)")
    EMBEDDING_DIMENSION: int = Field(default=1536, description="Embedding vector dimension")

    # Cache Configuration
    REDIS_URL: Optional[str] = Field(default=None, description="redis://host:port/db for the L2 tier")
    REDIS_PASSWORD: Optional[str] = Field(default=None, description="Redis password")
    CACHE_L1_ENABLED: bool = Field(default=True, description="Enable in-process tier")
    CACHE_L2_ENABLED: bool = Field(default=True, description="Enable shared persistent tier")
    CACHE_L2_TIMEOUT: float = Field(default=0.5, description="Deadline per L2 call (seconds), never retried")

    # Hybrid Search Configuration
    HYBRID_DENSE_WEIGHT: float = Field(default=0.7, ge=0.0, le=1.0, description="Default dense weight")
    HYBRID_SPARSE_WEIGHT: float = Field(default=0.3, ge=0.0, le=1.0, description="Default sparse weight")
    HYBRID_KEYWORD_DENSE_WEIGHT: float = Field(
        default=0.6, ge=0.0, le=1.0,
        description="Dense weight for keyword-heavy queries"
    )
    HYBRID_KEYWORD_SPARSE_WEIGHT: float = Field(
        default=0.4, ge=0.0, le=1.0,
        description="Sparse weight for keyword-heavy queries"
    )
    HYBRID_TOP_K_MULTIPLIER: float = Field(default=1.5, description="Candidate multiplier for merging")
    HYBRID_KEYWORD_SCORE_PENALTY: float = Field(default=0.5, description="Multiplier for keyword-fallback hits")
    HYBRID_SPARSE_FALLBACK_PENALTY: float = Field(default=0.8, description="Multiplier for dense-only fallback")
    HYBRID_MAX_KEYWORDS: int = Field(default=3, description="Keywords used by the keyword fallback")

    # Reranking Configuration
    RERANK_ENABLED: bool = Field(default=False, description="Rerank by default")
    RERANK_FAST_MODEL: str = Field(default="embedding-similarity", description="Cheap semantic reranker")
    RERANK_ACCURATE_MODEL: str = Field(default="rerank-english-v3.0", description="Cohere cross-encoder")
    RERANK_SCORE_THRESHOLD: float = Field(default=0.3, description="Drop reranked hits below this")
    RERANK_TOP_N: int = Field(default=10, description="Hits kept after reranking")
    RERANK_MAX_CANDIDATES: int = Field(default=20, description="Hits sent to the reranker")
    RERANK_RELEVANCE_WEIGHT: float = Field(default=0.7, description="Heuristic share of the combined score")
    RERANK_ORIGINAL_WEIGHT: float = Field(default=0.3, description="Retrieval share of the combined score")
    RERANK_TERM_OVERLAP_WEIGHT: float = Field(default=0.7, description="Term overlap share of the heuristic")
    RERANK_LENGTH_FACTOR_WEIGHT: float = Field(default=0.3, description="Length factor share of the heuristic")
    RERANK_TIMEOUT: float = Field(default=10.0, description="Deadline per rerank call (seconds)")

    # Orchestration
    RETRIEVAL_TOP_K: int = Field(default=10, description="Number of passages returned")
    MAX_QUERY_VARIANTS: int = Field(default=5, description="Query-expansion fan-out limit")
    FANOUT_TIMEOUT: float = Field(default=20.0, description="Deadline for the whole fan-out (seconds)")
    MIN_SIMILARITY: Optional[float] = Field(default=None, description="Optional fused-score floor")

    model_config = {
        "env_file": Path(__file__).parent.parent / ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore"
    }


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.

    Returns:
        Settings instance with all configuration values
    """
    return Settings()


# Global settings instance
settings = get_settings()


def configure_logging(level: Optional[str] = None) -> None:
    """
    Configure root logging once at process start.

    Args:
        level: Log level name (defaults to settings.LOG_LEVEL)
    """
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
    )


def validate_api_keys() -> dict:
    """
    Validate that external service credentials are configured.

    Returns:
        Dict with validation status for each key
    """
    return {
        "openai": bool(settings.OPENAI_API_KEY),
        "cohere": bool(settings.COHERE_API_KEY),
        "qdrant": bool(settings.QDRANT_API_KEY) or settings.QDRANT_HOST == "localhost",
        "redis": bool(settings.REDIS_URL)
    }
