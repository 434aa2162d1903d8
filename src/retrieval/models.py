"""
Retrieval Data Models

Pydantic models shared by every stage of the retrieval pipeline:
expansion, decomposition, multi-strategy search, ranking and
iterative refinement.

Result-like models are frozen. A stage that needs to annotate a result
(tagging, weighting, ranking) builds a new instance with model_copy()
or by extending the parent model, never by mutating in place.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


ExpansionType = Literal["synonym", "technical", "conceptual", "procedural", "contextual"]


class ExpandedQuery(BaseModel):
    """One alternative phrasing of a user query."""
    model_config = ConfigDict(frozen=True)

    original: str
    expanded: str
    type: ExpansionType = "synonym"
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class QueryExpansionResult(BaseModel):
    """All expansions generated for a query."""
    model_config = ConfigDict(frozen=True)

    original_query: str
    expanded_queries: List[ExpandedQuery] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)
    technical_terms: List[str] = Field(default_factory=list)


class SubQuery(BaseModel):
    """A focused sub-question produced by query decomposition."""
    model_config = ConfigDict(frozen=True)

    question: str
    priority: int = Field(default=3, ge=1, le=5)  # 5 = most important
    category: str = "concept"


class DecompositionResult(BaseModel):
    """Outcome of query decomposition."""
    model_config = ConfigDict(frozen=True)

    original_query: str
    sub_queries: List[SubQuery]
    is_complex: bool
    strategy: Literal["single", "decomposed", "hybrid"] = "single"


class DocumentHit(BaseModel):
    """A passage returned by the vector store."""
    model_config = ConfigDict(frozen=True)

    id: str
    filename: str
    title: str = ""
    content: str = ""
    similarity: float = 0.0
    source_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SearchResult(DocumentHit):
    """
    A passage tagged with the strategy and query that produced it.

    similarity is always the raw vector-store score. The strategy-weighted
    composite used for truncation lives in weighted_score.
    """
    search_strategy: str = Field(min_length=1)
    query_used: str = Field(min_length=1)
    weighted_score: Optional[float] = None


class SearchStrategy(BaseModel):
    """A named bundle of queries searched with the same parameters."""
    model_config = ConfigDict(frozen=True)

    name: str
    queries: List[str]
    weight: float = Field(gt=0.0, le=1.0)
    threshold: float = 0.7
    limit: int = 10


class MultiQueryResult(BaseModel):
    """Output of one multi-strategy retrieval call."""
    original_query: str
    all_results: List[SearchResult]
    deduplicated_results: List[SearchResult]
    search_strategies: List[str]
    queries_executed: List[str] = Field(default_factory=list)
    total_queries: int = 0
    execution_time_ms: float = 0.0


class RankingFactors(BaseModel):
    """The seven independent ranking factors, each in [0, 1]."""
    model_config = ConfigDict(frozen=True)

    semantic_similarity: float
    title_relevance: float
    content_quality: float
    document_type: float
    recency: float
    source_reliability: float
    query_alignment: float


class RankedResult(SearchResult):
    """A search result with its ranking score and factor breakdown."""
    ranking_score: float
    ranking_factors: RankingFactors
    original_rank: int


class GapAnalysis(BaseModel):
    """Self-assessed adequacy of a result set for a query."""
    model_config = ConfigDict(frozen=True)

    information_gaps: List[str] = Field(default_factory=list)
    missing_topics: List[str] = Field(default_factory=list)
    ambiguous_areas: List[str] = Field(default_factory=list)
    needs_more_detail: List[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class RefinementContext(BaseModel):
    """Input to a single refinement decision."""
    original_query: str
    search_results: List[RankedResult]
    iteration: int
    max_iterations: int
    confidence_threshold: float
    gaps_identified: List[str] = Field(default_factory=list)
    follow_up_queries: List[str] = Field(default_factory=list)


class RefinementResult(BaseModel):
    """Whether to run another round, and with which queries."""
    should_refine: bool
    follow_up_queries: List[str]
    gap_analysis: GapAnalysis
    refinement_reason: str
    confidence: float


class IterationRecord(BaseModel):
    """One round of the refinement loop (iteration 0 is the initial search)."""
    iteration: int
    query: str
    results: List[RankedResult]
    gap_analysis: GapAnalysis
    refinement_applied: bool


class IterativeSearchResult(BaseModel):
    """Accumulated outcome of the refinement loop."""
    final_results: List[RankedResult]
    iterations: List[IterationRecord]
    total_iterations: int
    convergence_reached: bool
    final_confidence: float


class SearchOptions(BaseModel):
    """Options for the public search entry point."""
    limit: int = Field(default=10, ge=1)
    threshold: float = 0.3
    enable_iterative_refinement: bool = True
    max_iterations: int = Field(default=3, ge=0)
    confidence_threshold: float = Field(default=0.75, ge=0.0, le=1.0)
    ranking: Optional[Dict[str, Dict[str, float]]] = None


class SearchMetadata(BaseModel):
    """Diagnostics returned alongside search results."""
    queries_used: List[str]
    iterations_performed: int = 0
    final_confidence: float = 0.0
    convergence_reached: bool = False
    total_results_considered: int = 0
    processing_time_ms: float = 0.0
    failure_reason: Optional[str] = None


class SearchResponse(BaseModel):
    """Ranked passages plus search diagnostics."""
    results: List[RankedResult]
    metadata: SearchMetadata


class ChatMessage(BaseModel):
    """A prior turn supplied by the caller for answer generation."""
    role: Literal["user", "assistant", "system"]
    content: str


class SourceCitation(BaseModel):
    """A passage cited in a generated answer."""
    id: str
    title: str
    content: str
    similarity: float
    source_url: Optional[str] = None
    ranking_score: float
    search_strategy: str


class ChatAnswer(BaseModel):
    """Generated answer with its cited sources."""
    answer: str
    sources: List[SourceCitation]
    search_metadata: SearchMetadata
