"""
Pydantic Data Models

Defines all data structures used throughout the retrieval core:
- Passage metadata (tagged by source type)
- Search hits and their per-stage provenance
- Hybrid weights and request/response models for the orchestrator
- Index records for upserts
"""

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Enums
# ============================================================================

class SourceType(str, Enum):
    """Kinds of source a passage can come from."""
    FILE = "file"
    TEXT = "text"
    WEBSITE = "website"
    QA = "qa"
    DATABASE = "database"


class Degradation(str, Enum):
    """Lower-confidence paths a response may have taken."""
    SPARSE_KEYWORD_FALLBACK = "sparse_keyword_fallback"   # sparse query replaced by keyword query
    SPARSE_FAILED = "sparse_failed"                       # sparse and keyword queries errored, dense only
    FUSION_DENSE_FALLBACK = "fusion_dense_fallback"       # merge empty, penalized dense hits returned
    FUSION_FAILED = "fusion_failed"                       # fusion raised, dense hits returned
    RERANK_HEURISTIC = "rerank_heuristic"                 # some pairs scored by term overlap
    RERANK_FAILED = "rerank_failed"                       # reranker raised, fused hits returned
    PARTIAL_FANOUT = "partial_fanout"                     # some query variants failed or timed out


# Degradations caused by a transient failure; such responses are not cached
TRANSIENT_DEGRADATIONS = frozenset({
    Degradation.SPARSE_FAILED,
    Degradation.FUSION_FAILED,
    Degradation.RERANK_HEURISTIC,
    Degradation.RERANK_FAILED,
    Degradation.PARTIAL_FANOUT,
})


# ============================================================================
# Passage Metadata
# ============================================================================

Scalar = Union[str, int, float, bool, None]


class _PassageMetadataBase(BaseModel):
    """Fields shared by every source type."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    source_id: Optional[str] = Field(None, description="Identifier of the source document")
    category: Optional[str] = Field(None, description="Free-form category label")
    chunk_index: Optional[int] = Field(None, description="Position of the passage in its source")
    total_chunks: Optional[int] = Field(None, description="Number of passages in the source")
    section_title: Optional[str] = Field(None, description="Enclosing section heading")


class FileMetadata(_PassageMetadataBase):
    source_type: Literal["file"] = "file"
    document_title: Optional[str] = None
    file_type: Optional[str] = None
    language: Optional[str] = None


class TextMetadata(_PassageMetadataBase):
    source_type: Literal["text"] = "text"
    document_title: Optional[str] = None


class WebsiteMetadata(_PassageMetadataBase):
    source_type: Literal["website"] = "website"
    url: Optional[str] = None
    page_title: Optional[str] = None


class QAMetadata(_PassageMetadataBase):
    source_type: Literal["qa"] = "qa"
    question: Optional[str] = None


class DatabaseMetadata(_PassageMetadataBase):
    source_type: Literal["database"] = "database"
    table_name: Optional[str] = None


PassageMetadata = Annotated[
    Union[FileMetadata, TextMetadata, WebsiteMetadata, QAMetadata, DatabaseMetadata],
    Field(discriminator="source_type")
]


# ============================================================================
# Search Hits
# ============================================================================

StageSource = Literal["dense", "sparse"]


class HybridInfo(BaseModel):
    """How a fused score was produced."""
    model_config = ConfigDict(frozen=True)

    dense_score: float = 0.0
    sparse_score: float = 0.0
    dense_weight: float = 0.0
    sparse_weight: float = 0.0
    sources: List[StageSource] = Field(default_factory=list)
    fallback_mode: bool = Field(False, description="Dense-only fallback after an empty merge")
    keyword_fallback: bool = Field(False, description="Sparse side came from the keyword query")
    sparse_failed: bool = Field(False, description="Sparse and keyword queries both errored")


class RerankInfo(BaseModel):
    """How a reranked score was produced."""
    model_config = ConfigDict(frozen=True)

    model: str
    original_score: float
    rerank_score: float
    heuristic: bool = Field(False, description="Scored by term overlap instead of the model")


class SearchHit(BaseModel):
    """
    A passage returned by a retrieval stage.

    `id` is stable across dense, sparse, and rerank stages and is the
    fusion join key. `score` is stage-relative.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Passage identity")
    text: str = Field("", description="Passage text")
    score: float = Field(..., description="Stage-relative relevance score")
    metadata: PassageMetadata = Field(default_factory=TextMetadata)
    hybrid: Optional[HybridInfo] = None
    rerank: Optional[RerankInfo] = None
    matched_query: Optional[str] = Field(None, description="Query variant that produced the hit")

    @property
    def sources(self) -> List[StageSource]:
        """Retrieval stages this hit was found by."""
        return list(self.hybrid.sources) if self.hybrid else []


class HybridWeights(BaseModel):
    """Dense/sparse weights; each in [0, 1], not required to sum to 1."""
    model_config = ConfigDict(frozen=True)

    dense: float = Field(..., ge=0.0, le=1.0)
    sparse: float = Field(..., ge=0.0, le=1.0)


# ============================================================================
# Index Records
# ============================================================================

class IndexRecord(BaseModel):
    """A passage to upsert into the vector index."""
    id: str = Field(..., description="Passage identity")
    text: str = Field(..., description="Passage text (also drives the sparse vector)")
    vector: List[float] = Field(..., description="Dense embedding")
    metadata: PassageMetadata = Field(default_factory=TextMetadata)


# ============================================================================
# Orchestrator Request/Response
# ============================================================================

class RerankOptions(BaseModel):
    """Per-call reranking options."""
    enabled: bool = True
    top_n: int = Field(10, ge=1)
    score_threshold: float = 0.0
    model: Optional[str] = None


class SearchOptions(BaseModel):
    """Options accepted by RetrievalOrchestrator.search."""
    top_k: Optional[int] = Field(None, ge=1, description="Passages to return")
    weights: Optional[HybridWeights] = Field(None, description="Override the weight heuristic")
    filters: Optional[Dict[str, Scalar]] = Field(None, description="Exact-match metadata filters")
    min_similarity: Optional[float] = Field(None, description="Fused-score floor")
    enable_cache: bool = True
    enable_reranking: Optional[bool] = Field(None, description="Defaults to settings.RERANK_ENABLED")
    rerank_model: Optional[str] = None
    rerank_top_n: Optional[int] = Field(None, ge=1)
    rerank_threshold: Optional[float] = None
    prioritize_speed: bool = False
    expand_query: bool = Field(True, description="Search reformulated variants in parallel")


class SearchResponse(BaseModel):
    """Result of one orchestrated search."""
    query: str
    namespace: str
    hits: List[SearchHit] = Field(default_factory=list)
    cache_hit: bool = False
    degradations: List[Degradation] = Field(default_factory=list)
    query_variants: List[str] = Field(default_factory=list)
    timings_ms: Dict[str, float] = Field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        """True when any stage fell back to a lower-confidence path."""
        return bool(self.degradations)

    def to_cache_payload(self) -> Dict[str, Any]:
        """JSON-ready form stored by the cache engine."""
        return {
            "hits": [hit.model_dump(mode="json") for hit in self.hits],
            "degradations": [d.value for d in self.degradations],
            "query_variants": list(self.query_variants),
        }
