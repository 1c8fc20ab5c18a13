"""Pydantic models for grading, refinement, reranking and pipeline state."""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from mnemos.models.memory import MemoryProfile, SearchResult


class CompletionReason(str, Enum):
    """Why an agentic retrieval call stopped iterating."""
    SUFFICIENT_RESULTS = "sufficient_results"
    MAX_ITERATIONS = "max_iterations"
    NO_IMPROVEMENT = "no_improvement"
    TIMEOUT = "timeout"
    ERROR = "error"


class RefinementType(str, Enum):
    """Strategy used to rewrite a query."""
    EXPANSION = "expansion"
    DECOMPOSITION = "decomposition"
    REFORMULATION = "reformulation"
    HYDE = "hyde"
    ENTITY_FOCUS = "entity_focus"
    NONE = "none"


class EntityType(str, Enum):
    """Entity categories recognized in queries."""
    PERSON = "person"
    ORGANIZATION = "organization"
    DATE = "date"
    AMOUNT = "amount"
    LOCATION = "location"
    CONCEPT = "concept"
    OTHER = "other"


# =============================================================================
# Relevance Grading
# =============================================================================


class GradeFactor(BaseModel):
    """One signal that pushed a relevance grade up or down."""

    name: str
    impact: float = Field(default=0.0, ge=-1.0, le=1.0)
    description: str = ""


class GradingMetadata(BaseModel):
    """Stored signals about a candidate used for post-hoc score boosts."""

    kind: Optional[str] = None
    is_static: bool = False
    importance: Optional[float] = None


class RelevanceGrade(BaseModel):
    """Scored, explained judgment of how well a candidate answers a query."""

    score: float = Field(..., ge=0.0, le=1.0)
    reasoning: str = ""
    factors: list[GradeFactor] = Field(default_factory=list)
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    is_relevant: bool = False


class GradedResult(BaseModel):
    """Search candidate together with its relevance grade."""

    result: SearchResult
    grade: RelevanceGrade

    @property
    def id(self) -> str:
        return self.result.memory.id

    @property
    def content(self) -> str:
        return self.result.memory.content

    @property
    def is_relevant(self) -> bool:
        return self.grade.is_relevant


class GradedHistoryItem(BaseModel):
    """What the refiner sees about one earlier result."""

    content: str
    relevance: float
    reason: str = ""


# =============================================================================
# Query Refinement
# =============================================================================


class QueryEntity(BaseModel):
    """Entity extracted from a query."""

    text: str
    type: EntityType
    importance: float = Field(default=0.5, ge=0.0, le=1.0)


class QueryAnalysis(BaseModel):
    """Result of the remote analysis step of refinement."""

    intent: str = ""
    entities: list[QueryEntity] = Field(default_factory=list)
    complexity: str = "simple"
    suggested_strategy: RefinementType = RefinementType.NONE
    gap_analysis: str = ""


class QueryRefinement(BaseModel):
    """Proposed rewrite of a query."""

    original_query: str
    refined_query: str
    refinement_type: RefinementType = RefinementType.NONE
    reasoning: str = ""
    alternatives: list[str] = Field(default_factory=list)
    entities: list[QueryEntity] = Field(default_factory=list)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class DecomposedQuery(BaseModel):
    """A complex question split into independently searchable parts."""

    original_query: str
    sub_queries: list[str] = Field(default_factory=list)
    strategy: str = "parallel"


# =============================================================================
# Reranking
# =============================================================================


class RerankDocument(BaseModel):
    """Document submitted to the reranker."""

    id: str
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class RerankedDocument(BaseModel):
    """Document after reranking with its old and new position."""

    id: str
    content: str
    score: float = Field(..., ge=0.0, le=1.0)
    original_rank: int
    new_rank: int
    metadata: dict[str, Any] = Field(default_factory=dict)


class RerankResponse(BaseModel):
    """Reranker output."""

    results: list[RerankedDocument] = Field(default_factory=list)
    model: str = ""
    latency_ms: float = 0.0


# =============================================================================
# Pipeline
# =============================================================================


class PipelineConfig(BaseModel):
    """Per-call knobs for the agentic pipeline."""

    max_iterations: int = Field(default=3, ge=1)
    relevance_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    min_good_results_ratio: float = Field(default=0.5, ge=0.0, le=1.0)
    enable_refinement: bool = True
    enable_reranking: bool = True
    retrieval_limit: int = Field(default=10, ge=1)
    timeout_seconds: float = Field(default=30.0, gt=0)
    include_profile: bool = False


class IterationTiming(BaseModel):
    """Wall-clock split for one pipeline iteration (milliseconds)."""

    iteration: int
    retrieval_ms: float = 0.0
    grading_ms: float = 0.0
    refinement_ms: Optional[float] = None


class PipelineTiming(BaseModel):
    """Wall-clock split for a whole pipeline call (milliseconds)."""

    total_ms: float = 0.0
    retrieval_ms: float = 0.0
    grading_ms: float = 0.0
    refinement_ms: float = 0.0
    reranking_ms: float = 0.0
    iterations: list[IterationTiming] = Field(default_factory=list)


class PipelineState(BaseModel):
    """Mutable state for one agentic retrieval call. Never persisted."""

    original_query: str
    current_query: str
    iteration: int = 0
    results: list[SearchResult] = Field(default_factory=list)
    graded_results: list[GradedResult] = Field(default_factory=list)
    refinements: list[QueryRefinement] = Field(default_factory=list)
    is_complete: bool = False
    completion_reason: CompletionReason = CompletionReason.MAX_ITERATIONS
    timing: PipelineTiming = Field(default_factory=PipelineTiming)

    def seen_ids(self) -> set[str]:
        return {r.memory.id for r in self.results}

    def complete(self, reason: CompletionReason) -> None:
        self.is_complete = True
        self.completion_reason = reason


class PipelineResult(BaseModel):
    """Outcome of an agentic retrieval call."""

    results: list[GradedResult] = Field(default_factory=list)
    relevant_count: int = 0
    avg_relevance: float = 0.0
    refinements: list[QueryRefinement] = Field(default_factory=list)
    iterations: int = 0
    completion_reason: CompletionReason
    timing: PipelineTiming = Field(default_factory=PipelineTiming)
    profile: Optional[MemoryProfile] = None
