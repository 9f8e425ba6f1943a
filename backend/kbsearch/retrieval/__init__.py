"""
Retrieval Module

Hybrid retrieval pipeline:
- OpenAI embeddings for dense search
- Qdrant sparse vectors (with keyword fallback) for lexical search
- Weighted score fusion joined on passage id
- Cohere / embedding-similarity reranking with heuristic fallback
- Orchestrator tying the stages to the cache engine
"""

from kbsearch.retrieval.embeddings import EmbeddingService
from kbsearch.retrieval.vector_store import VectorStore
from kbsearch.retrieval.hybrid_search import HybridSearcher
from kbsearch.retrieval.reranker import Reranker, select_model
from kbsearch.retrieval.orchestrator import RetrievalOrchestrator

__all__ = [
    "EmbeddingService",
    "VectorStore",
    "HybridSearcher",
    "Reranker",
    "select_model",
    "RetrievalOrchestrator"
]
