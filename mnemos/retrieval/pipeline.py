"""
Agentic retrieval pipeline: retrieve, grade, refine, repeat, rerank.

Each iteration searches with the current query, grades only candidates
not seen before (always against the original query), and stops when
enough candidates are relevant. Otherwise the refiner proposes a new
query; an unchanged query ends the loop. After the loop the whole graded
set is reranked once.

The call never raises for retrieval problems: a failing search ends the
loop with reason "error", and a timeout or cancellation ends it with
reason "timeout". Both return whatever was graded so far.

Usage:
    pipeline = AgenticPipeline(search, grader, refiner, reranker)
    result = await pipeline.retrieve("what does the user do?", user_id)
    context = build_context(result)
"""

from __future__ import annotations

import asyncio
import time
from typing import Optional

import structlog

from mnemos.config.settings import Settings, get_settings
from mnemos.memory.search import HybridSearch
from mnemos.models.memory import SearchFilters, SearchResult
from mnemos.models.retrieval import (
    CompletionReason,
    GradedHistoryItem,
    GradedResult,
    IterationTiming,
    PipelineConfig,
    PipelineResult,
    PipelineState,
    RerankDocument,
)
from mnemos.monitoring.metrics import record_pipeline_completion
from mnemos.retrieval.grader import RelevanceGrader
from mnemos.retrieval.refiner import QueryRefiner
from mnemos.retrieval.reranker import Reranker

logger = structlog.get_logger(__name__)

UNRANKED = 999
PROFILE_STATIC_LIMIT = 5
PROFILE_DYNAMIC_LIMIT = 3


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


class AgenticPipeline:
    """
    Self-correcting retrieval over one user's memories.

    Args:
        search: Hybrid search over the tiered store.
        grader: Relevance grader.
        refiner: Query refiner.
        reranker: Final reranker.
    """

    def __init__(
        self,
        search: HybridSearch,
        grader: RelevanceGrader,
        refiner: QueryRefiner,
        reranker: Reranker,
        settings: Optional[Settings] = None,
    ) -> None:
        self.search = search
        self.grader = grader
        self.refiner = refiner
        self.reranker = reranker
        self.settings = settings or get_settings()

    def default_config(self) -> PipelineConfig:
        s = self.settings
        return PipelineConfig(
            max_iterations=s.pipeline_max_iterations,
            relevance_threshold=s.pipeline_relevance_threshold,
            min_good_results_ratio=s.pipeline_min_good_results_ratio,
            enable_refinement=s.pipeline_enable_refinement,
            enable_reranking=s.pipeline_enable_reranking,
            retrieval_limit=s.pipeline_retrieval_limit,
            timeout_seconds=s.pipeline_timeout_seconds,
        )

    async def retrieve(
        self,
        query: str,
        user_id: str,
        config: Optional[PipelineConfig] = None,
        filters: Optional[SearchFilters] = None,
    ) -> PipelineResult:
        """
        Run the retrieve-grade-refine loop, then rerank.

        Args:
            query: Natural language query.
            user_id: Owner of the memories.
            config: Per-call knobs. Defaults come from settings.
            filters: Store filters passed to every search.
        """
        config = config or self.default_config()
        state = PipelineState(original_query=query, current_query=query)
        start = time.perf_counter()

        try:
            await asyncio.wait_for(
                self._run(state, user_id, config, filters),
                timeout=config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "pipeline_timeout",
                user_id=user_id,
                iteration=state.iteration,
                graded=len(state.graded_results),
            )
            state.complete(CompletionReason.TIMEOUT)
        except asyncio.CancelledError:
            logger.warning(
                "pipeline_cancelled",
                user_id=user_id,
                iteration=state.iteration,
                graded=len(state.graded_results),
            )
            state.complete(CompletionReason.TIMEOUT)
        except Exception as e:
            logger.error(
                "pipeline_error",
                user_id=user_id,
                iteration=state.iteration,
                error=str(e),
                error_type=type(e).__name__,
            )
            state.complete(CompletionReason.ERROR)

        profile = None
        if config.include_profile and state.completion_reason != CompletionReason.TIMEOUT:
            try:
                profile = await self.search.get_profile(
                    user_id,
                    query=query,
                    static_limit=PROFILE_STATIC_LIMIT,
                    dynamic_limit=PROFILE_DYNAMIC_LIMIT,
                )
            except Exception as e:
                logger.warning("pipeline_profile_failed", user_id=user_id, error=str(e))

        state.timing.total_ms = _elapsed_ms(start)
        graded = state.graded_results
        relevant = [g for g in graded if g.is_relevant]
        avg_relevance = sum(g.grade.score for g in graded) / len(graded) if graded else 0.0

        record_pipeline_completion(
            state.completion_reason.value,
            state.iteration,
            state.timing.total_ms / 1000,
        )
        logger.info(
            "pipeline_completed",
            user_id=user_id,
            reason=state.completion_reason.value,
            iterations=state.iteration,
            results=len(graded),
            relevant=len(relevant),
            refinements=len(state.refinements),
            total_ms=round(state.timing.total_ms, 2),
        )

        return PipelineResult(
            results=graded,
            relevant_count=len(relevant),
            avg_relevance=avg_relevance,
            refinements=state.refinements,
            iterations=state.iteration,
            completion_reason=state.completion_reason,
            timing=state.timing,
            profile=profile,
        )

    async def _run(
        self,
        state: PipelineState,
        user_id: str,
        config: PipelineConfig,
        filters: Optional[SearchFilters],
    ) -> None:
        while not state.is_complete and state.iteration < config.max_iterations:
            await self._iterate(state, user_id, config, filters)

        if not state.is_complete:
            state.complete(CompletionReason.MAX_ITERATIONS)

        if config.enable_reranking and len(state.graded_results) > 2:
            rerank_start = time.perf_counter()
            await self._rerank(state)
            state.timing.reranking_ms = _elapsed_ms(rerank_start)

    async def _iterate(
        self,
        state: PipelineState,
        user_id: str,
        config: PipelineConfig,
        filters: Optional[SearchFilters],
    ) -> None:
        state.iteration += 1
        timing = IterationTiming(iteration=state.iteration)
        state.timing.iterations.append(timing)

        retrieval_start = time.perf_counter()
        found = await self.search.search(
            state.current_query,
            user_id,
            limit=config.retrieval_limit,
            filters=filters,
        )
        timing.retrieval_ms = _elapsed_ms(retrieval_start)
        state.timing.retrieval_ms += timing.retrieval_ms

        seen = state.seen_ids()
        new_results = [r for r in found if r.memory.id not in seen]
        state.results.extend(new_results)

        grading_start = time.perf_counter()
        if new_results:
            graded = await self.grader.grade_batch(
                state.original_query, new_results, config.relevance_threshold
            )
            state.graded_results.extend(graded)
        timing.grading_ms = _elapsed_ms(grading_start)
        state.timing.grading_ms += timing.grading_ms

        relevant_count = sum(1 for g in state.graded_results if g.is_relevant)
        relevant_ratio = relevant_count / max(1, len(state.graded_results))

        logger.debug(
            "pipeline_iteration_completed",
            iteration=state.iteration,
            query=state.current_query,
            new_results=len(new_results),
            relevant=relevant_count,
            ratio=round(relevant_ratio, 3),
        )

        if (
            relevant_count >= config.retrieval_limit * config.min_good_results_ratio
            or relevant_ratio >= config.min_good_results_ratio
        ):
            state.complete(CompletionReason.SUFFICIENT_RESULTS)
            return

        if not config.enable_refinement or state.iteration >= config.max_iterations:
            return

        refinement_start = time.perf_counter()
        history = [
            GradedHistoryItem(
                content=g.content,
                relevance=g.grade.score,
                reason=g.grade.reasoning,
            )
            for g in state.graded_results
        ]
        refinement = await self.refiner.refine(
            state.original_query,
            state.current_query,
            history,
            state.iteration,
        )
        timing.refinement_ms = _elapsed_ms(refinement_start)
        state.timing.refinement_ms += timing.refinement_ms

        if refinement.refined_query != state.current_query:
            state.refinements.append(refinement)
            state.current_query = refinement.refined_query
        else:
            state.complete(CompletionReason.NO_IMPROVEMENT)

    async def _rerank(self, state: PipelineState) -> None:
        """Rerank the whole accumulated graded set and reorder by the output."""
        documents = [
            RerankDocument(
                id=g.id,
                content=g.content,
                metadata={"kind": g.result.memory.kind.value, "grade": g.grade.score},
            )
            for g in state.graded_results
        ]
        response = await self.reranker.rerank(
            state.original_query, documents, top_n=None
        )

        ranks = {doc.id: doc.new_rank for doc in response.results}
        scores = {doc.id: doc.score for doc in response.results}

        reordered: list[GradedResult] = []
        for graded in sorted(state.graded_results, key=lambda g: ranks.get(g.id, UNRANKED)):
            if graded.id in scores:
                result = graded.result.model_copy(update={"final_score": scores[graded.id]})
                graded = graded.model_copy(update={"result": result})
            reordered.append(graded)
        state.graded_results = reordered


# =============================================================================
# Simplified Retrieval
# =============================================================================


async def fast_retrieve(
    search: HybridSearch,
    query: str,
    user_id: str,
    limit: int = 5,
) -> list[SearchResult]:
    """Single hybrid search, no grading."""
    return await search.search(query, user_id, limit=limit)


async def graded_retrieve(
    search: HybridSearch,
    grader: RelevanceGrader,
    query: str,
    user_id: str,
    limit: int = 10,
    threshold: float = 0.7,
) -> tuple[list[GradedResult], dict[str, float]]:
    """
    One search over-fetched two to one, graded, best ``limit`` kept.

    Returns the graded results and a timing dict with retrieval_ms and
    grading_ms.
    """
    retrieval_start = time.perf_counter()
    found = await search.search(query, user_id, limit=limit * 2)
    retrieval_ms = _elapsed_ms(retrieval_start)

    grading_start = time.perf_counter()
    graded = await grader.grade_batch(query, found, threshold)
    grading_ms = _elapsed_ms(grading_start)

    graded.sort(key=lambda g: g.grade.score, reverse=True)
    return graded[:limit], {"retrieval_ms": retrieval_ms, "grading_ms": grading_ms}


def build_context(
    result: PipelineResult,
    max_length: int = 8000,
    include_metadata: bool = False,
    include_grades: bool = False,
) -> str:
    """
    Render a pipeline result as prompt context.

    Sections: the user profile, contextual memories, then relevant
    retrieved memories until ``max_length`` characters would be exceeded.
    """
    parts: list[str] = []

    if result.profile is not None:
        if result.profile.static:
            parts.append("## User Profile")
            parts.extend(f"- {m.content}" for m in result.profile.static)
            parts.append("")
        if result.profile.dynamic:
            parts.append("## Contextual Memories")
            parts.extend(f"- {m.content}" for m in result.profile.dynamic)
            parts.append("")

    if result.results:
        parts.append("## Retrieved Information")
        for graded in result.results:
            if not graded.is_relevant:
                continue
            entry = f"- {graded.content}"
            if include_metadata:
                entry += f" [{graded.result.memory.kind.value}]"
            if include_grades:
                entry += f" (relevance: {round(graded.grade.score * 100)}%)"
            parts.append(entry)
            if len("\n".join(parts)) > max_length:
                parts.pop()
                break

    return "\n".join(parts)
