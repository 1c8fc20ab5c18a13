"""Unit tests for the agentic retrieval pipeline."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from mnemos.core.exceptions import DependencyFailureError
from mnemos.models.memory import MemoryProfile, SearchResult
from mnemos.models.retrieval import (
    CompletionReason,
    GradedResult,
    PipelineConfig,
    PipelineResult,
    QueryRefinement,
    RefinementType,
    RelevanceGrade,
)
from mnemos.retrieval.grader import RelevanceGrader
from mnemos.retrieval.pipeline import (
    AgenticPipeline,
    build_context,
    fast_retrieve,
    graded_retrieve,
)
from mnemos.retrieval.refiner import QueryRefiner
from mnemos.retrieval.reranker import Reranker


def fixed_grades(scores: dict[str, float], threshold: float = 0.7):
    """grade_batch stand-in scoring each result by its content."""

    async def grade_batch(query, results, threshold_override=None):
        cutoff = threshold if threshold_override is None else threshold_override
        return [
            GradedResult(
                result=r,
                grade=RelevanceGrade(
                    score=scores.get(r.memory.content, 0.0),
                    reasoning="fixed",
                    is_relevant=scores.get(r.memory.content, 0.0) >= cutoff,
                ),
            )
            for r in results
        ]

    return grade_batch


@pytest.fixture
def results_for(record_factory):
    cache: dict[str, SearchResult] = {}

    def make(*contents: str) -> list[SearchResult]:
        out = []
        for content in contents:
            if content not in cache:
                cache[content] = SearchResult(memory=record_factory(content), final_score=0.5)
            out.append(cache[content])
        return out

    return make


@pytest.fixture
def search_mock():
    search = MagicMock()
    search.search = AsyncMock(return_value=[])
    search.get_profile = AsyncMock(return_value=MemoryProfile())
    return search


@pytest.fixture
def grader_mock():
    grader = MagicMock()
    grader.grade_batch = AsyncMock(side_effect=fixed_grades({}))
    return grader


@pytest.fixture
def refiner_mock():
    refiner = MagicMock()
    counter = {"n": 0}

    async def refine(original, current, history, iteration):
        counter["n"] += 1
        return QueryRefinement(
            original_query=original,
            refined_query=f"{original} v{counter['n']}",
            refinement_type=RefinementType.EXPANSION,
        )

    refiner.refine = AsyncMock(side_effect=refine)
    return refiner


@pytest.fixture
def pipeline(search_mock, grader_mock, refiner_mock, settings):
    return AgenticPipeline(search_mock, grader_mock, refiner_mock, Reranker(), settings)


class TestLoop:
    """Iteration and stop conditions."""

    @pytest.mark.asyncio
    async def test_stops_at_max_iterations(self, pipeline, search_mock, refiner_mock, results_for):
        search_mock.search.side_effect = [
            results_for("note one"),
            results_for("note two"),
            results_for("note three"),
        ]

        result = await pipeline.retrieve("budget", "user-1", PipelineConfig(max_iterations=3))

        assert result.completion_reason == CompletionReason.MAX_ITERATIONS
        assert result.iterations == 3
        assert refiner_mock.refine.await_count == 2
        assert [r.refined_query for r in result.refinements] == ["budget v1", "budget v2"]
        queries = [c.args[0] for c in search_mock.search.call_args_list]
        assert queries == ["budget", "budget v1", "budget v2"]

    @pytest.mark.asyncio
    async def test_refinement_disabled_still_iterates(
        self, pipeline, search_mock, refiner_mock, results_for
    ):
        search_mock.search.return_value = results_for("note one")

        result = await pipeline.retrieve(
            "budget", "user-1", PipelineConfig(max_iterations=2, enable_refinement=False)
        )

        assert result.iterations == 2
        assert result.completion_reason == CompletionReason.MAX_ITERATIONS
        refiner_mock.refine.assert_not_called()

    @pytest.mark.asyncio
    async def test_sufficient_results_stop_early(self, pipeline, search_mock, grader_mock, results_for):
        search_mock.search.return_value = results_for("User is VP of Finance", "User likes tea")
        grader_mock.grade_batch.side_effect = fixed_grades({"User is VP of Finance": 0.9})

        result = await pipeline.retrieve("what is the user's job?", "user-1")

        assert result.completion_reason == CompletionReason.SUFFICIENT_RESULTS
        assert result.iterations == 1
        assert result.relevant_count == 1
        assert result.avg_relevance == pytest.approx(0.45)

    @pytest.mark.asyncio
    async def test_empty_first_iteration_is_no_improvement(self, search_mock, grader_mock, settings):
        pipeline = AgenticPipeline(
            search_mock, grader_mock, QueryRefiner(settings=settings), Reranker(), settings
        )

        result = await pipeline.retrieve("anything at all", "user-1")

        assert result.completion_reason == CompletionReason.NO_IMPROVEMENT
        assert result.iterations == 1
        assert result.results == []
        grader_mock.grade_batch.assert_not_called()

    @pytest.mark.asyncio
    async def test_results_are_never_regraded(self, pipeline, search_mock, grader_mock, results_for):
        search_mock.search.side_effect = [
            results_for("note one", "note two"),
            results_for("note one", "note two", "note three"),
        ]

        result = await pipeline.retrieve("budget", "user-1", PipelineConfig(max_iterations=2))

        batches = [c.args[1] for c in grader_mock.grade_batch.call_args_list]
        assert [[r.memory.content for r in batch] for batch in batches] == [
            ["note one", "note two"],
            ["note three"],
        ]
        assert all(c.args[0] == "budget" for c in grader_mock.grade_batch.call_args_list)
        assert len(result.results) == 3


class TestFailures:
    """Timeouts and errors return partial results."""

    @pytest.mark.asyncio
    async def test_timeout_keeps_graded_results(self, pipeline, search_mock, results_for):
        async def search(query, user_id, limit=None, filters=None):
            if query == "budget":
                return results_for("note one")
            await asyncio.sleep(5)
            return []

        search_mock.search.side_effect = search

        result = await pipeline.retrieve(
            "budget", "user-1", PipelineConfig(max_iterations=3, timeout_seconds=0.05)
        )

        assert result.completion_reason == CompletionReason.TIMEOUT
        assert [g.content for g in result.results] == ["note one"]

    @pytest.mark.asyncio
    async def test_search_error_ends_with_error(self, pipeline, search_mock):
        search_mock.search.side_effect = DependencyFailureError("store", "down")

        result = await pipeline.retrieve("budget", "user-1")

        assert result.completion_reason == CompletionReason.ERROR
        assert result.results == []
        assert result.iterations == 1


class TestRerankAndProfile:

    @pytest.mark.asyncio
    async def test_rerank_reorders_graded_results(self, pipeline, search_mock, grader_mock, results_for):
        contents = ("likes hiking", "finance", "VP of finance, a senior finance role")
        search_mock.search.return_value = results_for(*contents)
        grader_mock.grade_batch.side_effect = fixed_grades({c: 0.8 for c in contents})

        result = await pipeline.retrieve("finance role", "user-1")

        assert [g.content for g in result.results] == [
            "VP of finance, a senior finance role",
            "finance",
            "likes hiking",
        ]
        assert result.results[0].result.final_score == pytest.approx(1.0)
        assert result.results[-1].result.final_score == 0.0

    @pytest.mark.asyncio
    async def test_rerank_disabled_keeps_order(self, pipeline, search_mock, grader_mock, results_for):
        contents = ("likes hiking", "finance", "VP of finance, a senior finance role")
        search_mock.search.return_value = results_for(*contents)
        grader_mock.grade_batch.side_effect = fixed_grades({c: 0.8 for c in contents})

        result = await pipeline.retrieve(
            "finance role", "user-1", PipelineConfig(enable_reranking=False)
        )

        assert [g.content for g in result.results] == list(contents)

    @pytest.mark.asyncio
    async def test_rerank_scores_every_graded_result(self, pipeline, search_mock, grader_mock, results_for):
        contents = [f"weekend note {i}" for i in range(11)] + ["quarterly finance budget"]
        search_mock.search.return_value = results_for(*contents)
        grader_mock.grade_batch.side_effect = fixed_grades({c: 0.8 for c in contents})
        pipeline.reranker.rerank = AsyncMock(wraps=pipeline.reranker.rerank)

        result = await pipeline.retrieve("finance budget", "user-1")

        assert len(result.results) == 12 > pipeline.default_config().retrieval_limit
        assert pipeline.reranker.rerank.await_args.kwargs["top_n"] is None
        assert result.results[0].content == "quarterly finance budget"
        scores = [g.result.final_score for g in result.results]
        assert scores == sorted(scores, reverse=True)
        assert 0.5 not in scores

    @pytest.mark.asyncio
    async def test_profile_limits(self, pipeline, search_mock):
        await pipeline.retrieve("budget", "user-1", PipelineConfig(include_profile=True))

        search_mock.get_profile.assert_awaited_once_with(
            "user-1", query="budget", static_limit=5, dynamic_limit=3
        )

    @pytest.mark.asyncio
    async def test_profile_failure_is_not_fatal(self, pipeline, search_mock):
        search_mock.get_profile.side_effect = DependencyFailureError("store", "down")

        result = await pipeline.retrieve("budget", "user-1", PipelineConfig(include_profile=True))

        assert result.profile is None

    def test_default_config_from_settings(self, pipeline):
        config = pipeline.default_config()

        assert config.max_iterations == 3
        assert config.relevance_threshold == 0.7
        assert config.retrieval_limit == 10


class TestHelpers:

    def test_build_context_sections(self, record_factory):
        relevant = GradedResult(
            result=SearchResult(memory=record_factory("User manages the budget")),
            grade=RelevanceGrade(score=0.9, is_relevant=True),
        )
        irrelevant = GradedResult(
            result=SearchResult(memory=record_factory("User likes tea")),
            grade=RelevanceGrade(score=0.1),
        )
        result = PipelineResult(
            results=[relevant, irrelevant],
            completion_reason=CompletionReason.SUFFICIENT_RESULTS,
            profile=MemoryProfile(
                static=[record_factory("User is VP of Finance")],
                dynamic=[record_factory("User asked about grant writing yesterday")],
            ),
        )

        context = build_context(result, include_grades=True)

        assert context == (
            "## User Profile\n"
            "- User is VP of Finance\n"
            "\n"
            "## Contextual Memories\n"
            "- User asked about grant writing yesterday\n"
            "\n"
            "## Retrieved Information\n"
            "- User manages the budget (relevance: 90%)"
        )

    def test_build_context_respects_max_length(self, record_factory):
        results = [
            GradedResult(
                result=SearchResult(memory=record_factory(f"fact number {i} " + "x" * 40)),
                grade=RelevanceGrade(score=0.9, is_relevant=True),
            )
            for i in range(10)
        ]
        result = PipelineResult(results=results, completion_reason=CompletionReason.MAX_ITERATIONS)

        context = build_context(result, max_length=200)

        assert len(context) <= 200
        assert context.startswith("## Retrieved Information")

    @pytest.mark.asyncio
    async def test_fast_retrieve(self, search_mock):
        await fast_retrieve(search_mock, "budget", "user-1")

        search_mock.search.assert_awaited_once_with("budget", "user-1", limit=5)

    @pytest.mark.asyncio
    async def test_graded_retrieve_overfetches_and_sorts(self, search_mock, settings, results_for):
        search_mock.search.return_value = results_for(
            "User likes tea", "User manages the finance budget", "finance notes"
        )
        grader = RelevanceGrader(settings=settings)

        graded, timing = await graded_retrieve(
            search_mock, grader, "finance budget", "user-1", limit=2
        )

        search_mock.search.assert_awaited_once_with("finance budget", "user-1", limit=4)
        assert [g.content for g in graded] == ["User manages the finance budget", "finance notes"]
        assert set(timing) == {"retrieval_ms", "grading_ms"}
