"""
Data Models and Schemas.

This module defines the data structures used throughout Mnemos:

- memory: Memory records, relations, store inputs and query outputs
- retrieval: Relevance grades, query refinements, rerank output and
  agentic pipeline state

Example:
    from mnemos.models import MemoryCandidate, MemoryKind

    candidate = MemoryCandidate(
        content="User is VP of Finance",
        importance=0.9,
        is_static=True,
        kind=MemoryKind.PROFILE,
    )
"""

from mnemos.models.memory import (
    ConsolidationCandidate,
    ConsolidationResult,
    MemoryCandidate,
    MemoryKind,
    MemoryProfile,
    MemoryRecord,
    MemoryRelation,
    MemoryStats,
    MemoryTier,
    MemoryUpdate,
    RelationType,
    ScoredMemory,
    SearchFilters,
    SearchResult,
    TierUpdateStats,
    utcnow,
)
from mnemos.models.retrieval import (
    CompletionReason,
    DecomposedQuery,
    EntityType,
    GradedHistoryItem,
    GradedResult,
    GradeFactor,
    GradingMetadata,
    IterationTiming,
    PipelineConfig,
    PipelineResult,
    PipelineState,
    PipelineTiming,
    QueryAnalysis,
    QueryEntity,
    QueryRefinement,
    RefinementType,
    RelevanceGrade,
    RerankDocument,
    RerankedDocument,
    RerankResponse,
)

__all__ = [
    # Memory
    "ConsolidationCandidate",
    "ConsolidationResult",
    "MemoryCandidate",
    "MemoryKind",
    "MemoryProfile",
    "MemoryRecord",
    "MemoryRelation",
    "MemoryStats",
    "MemoryTier",
    "MemoryUpdate",
    "RelationType",
    "ScoredMemory",
    "SearchFilters",
    "SearchResult",
    "TierUpdateStats",
    "utcnow",
    # Retrieval
    "CompletionReason",
    "DecomposedQuery",
    "EntityType",
    "GradedHistoryItem",
    "GradedResult",
    "GradeFactor",
    "GradingMetadata",
    "IterationTiming",
    "PipelineConfig",
    "PipelineResult",
    "PipelineState",
    "PipelineTiming",
    "QueryAnalysis",
    "QueryEntity",
    "QueryRefinement",
    "RefinementType",
    "RelevanceGrade",
    "RerankDocument",
    "RerankedDocument",
    "RerankResponse",
]
