"""Retrieval endpoints: single-pass hybrid search and agentic retrieval."""

import structlog
from fastapi import APIRouter, Depends

from mnemos.api.dependencies import get_pipeline, get_search
from mnemos.api.models import (
    GradedHit,
    MemoryResponse,
    RetrieveRequest,
    RetrieveResponse,
    SearchHit,
    SearchRequest,
    SearchResponse,
)
from mnemos.memory.search import HybridSearch
from mnemos.retrieval.pipeline import AgenticPipeline, build_context

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["Retrieval"])


@router.post(
    "/search",
    response_model=SearchResponse,
    summary="Hybrid search",
    description="Vector and lexical search fused with reciprocal rank fusion.",
)
async def search_memories(
    request: SearchRequest,
    search: HybridSearch = Depends(get_search),
) -> SearchResponse:
    results = await search.search(
        request.query,
        request.user_id,
        limit=request.limit,
        filters=request.filters,
    )
    return SearchResponse(
        results=[
            SearchHit(
                memory=MemoryResponse.from_record(r.memory),
                vector_similarity=r.vector_similarity,
                lexical_score=r.lexical_score,
                score=r.final_score,
            )
            for r in results
        ]
    )


@router.post(
    "/retrieve",
    response_model=RetrieveResponse,
    summary="Agentic retrieval",
    description=(
        "Iterative retrieve, grade and refine loop with final reranking. "
        "Degraded remote scoring still returns results."
    ),
)
async def retrieve(
    request: RetrieveRequest,
    pipeline: AgenticPipeline = Depends(get_pipeline),
) -> RetrieveResponse:
    config = request.config
    if request.include_context:
        config = (config or pipeline.default_config()).model_copy(update={"include_profile": True})

    result = await pipeline.retrieve(request.query, request.user_id, config)

    return RetrieveResponse(
        results=[
            GradedHit(
                memory=MemoryResponse.from_record(g.result.memory),
                score=g.result.final_score,
                relevance=g.grade.score,
                is_relevant=g.is_relevant,
                reasoning=g.grade.reasoning,
                confidence=g.grade.confidence,
            )
            for g in result.results
        ],
        relevant_count=result.relevant_count,
        avg_relevance=result.avg_relevance,
        iterations=result.iterations,
        completion_reason=result.completion_reason,
        refinements=result.refinements,
        timing=result.timing,
        context=build_context(result) if request.include_context else None,
    )
