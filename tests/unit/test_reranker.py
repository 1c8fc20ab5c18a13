"""Unit tests for reranking."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from mnemos.core.exceptions import (
    ConfigurationError,
    DependencyFailureError,
    DependencyTimeoutError,
)
from mnemos.models.retrieval import RerankDocument
from mnemos.retrieval.reranker import (
    BatchScores,
    BM25Reranker,
    CohereReranker,
    Reranker,
)


def documents(*contents: str) -> list[RerankDocument]:
    return [RerankDocument(id=f"doc-{i}", content=c) for i, c in enumerate(contents)]


def rerank_reply(*pairs: tuple[int, float]) -> SimpleNamespace:
    return SimpleNamespace(
        results=[SimpleNamespace(index=i, relevance_score=s) for i, s in pairs]
    )


class TestReranker:
    """Front end: passthrough, BM25 and fallback."""

    @pytest.mark.asyncio
    async def test_empty_input(self):
        response = await Reranker().rerank("q", [])

        assert response.results == []
        assert response.model == "passthrough"

    @pytest.mark.asyncio
    async def test_small_batches_pass_through(self):
        response = await Reranker().rerank("finance", documents("hiking", "finance"))

        assert [d.id for d in response.results] == ["doc-0", "doc-1"]
        assert [d.score for d in response.results] == pytest.approx([1.0, 0.9])
        assert response.model == "passthrough"

    @pytest.mark.asyncio
    async def test_bm25_orders_by_term_frequency(self):
        docs = documents("likes hiking", "VP of finance, a senior finance role", "finance")

        response = await Reranker().rerank("finance role", docs)

        assert [d.original_rank for d in response.results] == [1, 2, 0]
        assert [d.new_rank for d in response.results] == [0, 1, 2]
        assert response.model == "local-bm25"

    @pytest.mark.asyncio
    async def test_top_n(self):
        docs = documents("likes hiking", "VP of finance, a senior finance role", "finance")

        response = await Reranker().rerank("finance role", docs, top_n=1)

        assert [d.id for d in response.results] == ["doc-1"]

    @pytest.mark.asyncio
    async def test_remote_scores_are_clamped_and_padded(self):
        remote = MagicMock()
        remote.score = AsyncMock(return_value=BatchScores(model="rerank-test", scores=[1.4, -0.2]))

        response = await Reranker(remote=remote).rerank("q", documents("a", "b", "c"))

        assert [(d.id, d.score) for d in response.results] == [
            ("doc-0", 1.0),
            ("doc-2", 0.1),
            ("doc-1", 0.0),
        ]
        assert response.model == "rerank-test"

    @pytest.mark.asyncio
    async def test_remote_failure_falls_back_to_bm25(self):
        remote = MagicMock()
        remote.score = AsyncMock(side_effect=DependencyTimeoutError("cohere_rerank", "slow"))
        docs = documents("likes hiking", "VP of finance, a senior finance role", "finance")

        response = await Reranker(remote=remote).rerank("finance role", docs)

        assert response.model == "local-bm25"
        assert [d.original_rank for d in response.results] == [1, 2, 0]

    @pytest.mark.asyncio
    async def test_metadata_is_carried(self):
        docs = [
            RerankDocument(id=str(i), content=f"finance note {i}", metadata={"tier": "hot"})
            for i in range(3)
        ]

        response = await Reranker().rerank("finance", docs)

        assert all(d.metadata == {"tier": "hot"} for d in response.results)


class TestBM25Reranker:

    @pytest.mark.asyncio
    async def test_scores_in_submission_order(self):
        batch = await BM25Reranker().score("finance", ["hiking", "finance"])

        assert batch.model == "local-bm25"
        assert batch.scores[0] == 0.0
        assert batch.scores[1] > 0.0


class TestCohereReranker:
    """Remote scorer with the client patched out."""

    def test_requires_api_key(self, settings):
        with pytest.raises(ConfigurationError):
            CohereReranker(settings=settings)

    @pytest.mark.asyncio
    async def test_missing_indices_get_low_score(self, settings):
        reranker = CohereReranker(api_key="test-key", model="rerank-test", timeout=1.0, settings=settings)

        with patch.object(
            reranker, "_rerank", AsyncMock(return_value=rerank_reply((2, 0.9), (0, 0.4)))
        ):
            batch = await reranker.score("q", ["a", "b", "c"])

        assert batch.model == "rerank-test"
        assert batch.scores == [0.4, 0.1, 0.9]

    @pytest.mark.asyncio
    async def test_timeout(self, settings):
        reranker = CohereReranker(api_key="test-key", timeout=0.01, settings=settings)

        async def slow(query, documents):
            await asyncio.sleep(1)

        with patch.object(reranker, "_rerank", slow):
            with pytest.raises(DependencyTimeoutError):
                await reranker.score("q", ["a", "b", "c"])

    @pytest.mark.asyncio
    async def test_client_error_is_wrapped(self, settings):
        reranker = CohereReranker(api_key="test-key", timeout=1.0, settings=settings)

        with patch.object(reranker, "_rerank", AsyncMock(side_effect=RuntimeError("boom"))):
            with pytest.raises(DependencyFailureError):
                await reranker.score("q", ["a", "b", "c"])

    @pytest.mark.asyncio
    async def test_long_documents_are_cut(self, settings):
        reranker = CohereReranker(api_key="test-key", timeout=1.0, settings=settings)
        rerank = AsyncMock(return_value=rerank_reply((0, 0.5)))

        with patch.object(reranker, "_rerank", rerank):
            await reranker.score("q", ["x" * 5000])

        sent = rerank.call_args.args[1]
        assert len(sent[0]) == 4000
