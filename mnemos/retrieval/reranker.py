"""
Reranker: reorders a candidate set by query relevance.

Uses Cohere's rerank model as a cross-encoder. When the remote call fails
or times out, a corpus-free BM25 approximation scores the same batch
locally. Batches of two or fewer skip scoring entirely.

Usage:
    reranker = Reranker(remote=CohereReranker())

    response = await reranker.rerank(
        query="What does the user do for work?",
        documents=[RerankDocument(id=m.id, content=m.content) for m in memories],
        top_n=5,
    )
    for doc in response.results:
        print(f"[{doc.score:.3f}] {doc.content}")
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Optional, Protocol

import cohere
import structlog
from cohere.core import ApiError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from mnemos.config.settings import Settings, get_settings
from mnemos.core.circuit_breaker import RERANK_SERVICE, breaker_for
from mnemos.core.exceptions import (
    ConfigurationError,
    DependencyFailureError,
    DependencyTimeoutError,
    MnemosError,
)
from mnemos.core.fallback import FallbackChain
from mnemos.knowledge.text import bm25_score, tokenize
from mnemos.models.retrieval import RerankDocument, RerankedDocument, RerankResponse

logger = structlog.get_logger(__name__)

PASSTHROUGH_MODEL = "passthrough"
BM25_MODEL = "local-bm25"
MISSING_SCORE = 0.1
MAX_DOCUMENT_CHARS = 4000


@dataclass
class BatchScores:
    """One score per submitted document, in submission order."""

    model: str
    scores: list[float]


class RerankScorer(Protocol):
    async def score(self, query: str, documents: list[str]) -> BatchScores: ...


class BM25Reranker:
    """Local BM25 scorer (k1 1.2, b 0.75, average document length 200)."""

    def __init__(self, k1: float = 1.2, b: float = 0.75, avg_doc_length: float = 200.0):
        self.k1 = k1
        self.b = b
        self.avg_doc_length = avg_doc_length

    async def score(self, query: str, documents: list[str]) -> BatchScores:
        query_tokens = tokenize(query)
        return BatchScores(
            model=BM25_MODEL,
            scores=[
                bm25_score(query_tokens, tokenize(doc), self.k1, self.b, self.avg_doc_length)
                for doc in documents
            ],
        )


class CohereReranker:
    """Cohere cross-encoder scorer."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        """
        Initialize the Cohere reranker.

        Args:
            api_key: Cohere API key. Defaults to settings.cohere_api_key.
            model: Rerank model. Defaults to settings.cohere_rerank_model.
            timeout: Seconds allowed for one rerank call.
        """
        settings = settings or get_settings()
        if api_key is None and settings.cohere_api_key is not None:
            api_key = settings.cohere_api_key.get_secret_value()
        if not api_key:
            raise ConfigurationError("Cohere API key is not configured", "cohere_api_key")

        self._api_key = api_key
        self.model = model or settings.cohere_rerank_model
        self.timeout = timeout or settings.rerank_timeout_seconds
        self._client: cohere.AsyncClientV2 | None = None
        self._breaker = breaker_for(RERANK_SERVICE, settings)

    @property
    def client(self) -> cohere.AsyncClientV2:
        """Get or create the Cohere async client."""
        if self._client is None:
            self._client = cohere.AsyncClientV2(api_key=self._api_key)
        return self._client

    @retry(
        retry=retry_if_exception_type((ApiError,)),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        stop=stop_after_attempt(2),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(
            "cohere_retry",
            attempt=retry_state.attempt_number,
            wait=retry_state.next_action.sleep if retry_state.next_action else 0,
        ),
    )
    async def _rerank(self, query: str, documents: list[str]):
        return await self.client.rerank(
            model=self.model,
            query=query,
            documents=documents,
            top_n=len(documents),
        )

    async def score(self, query: str, documents: list[str]) -> BatchScores:
        """
        Score every document; indices missing from the reply get a low score.

        Raises:
            DependencyTimeoutError: If the call exceeded its budget.
            DependencyFailureError: For any other remote failure.
        """
        texts = [doc[:MAX_DOCUMENT_CHARS] for doc in documents]
        try:
            response = await asyncio.wait_for(
                self._breaker(self._rerank)(query, texts),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise DependencyTimeoutError(
                "cohere_rerank",
                f"Rerank exceeded {self.timeout}s",
                {"documents": len(documents)},
            ) from e
        except MnemosError as e:
            raise DependencyFailureError("cohere_rerank", e.message, e.details) from e
        except Exception as e:
            raise DependencyFailureError("cohere_rerank", str(e)) from e

        scores: list[Optional[float]] = [None] * len(documents)
        for item in response.results:
            if 0 <= item.index < len(scores):
                scores[item.index] = item.relevance_score

        missing = sum(1 for s in scores if s is None)
        if missing:
            logger.warning(
                "rerank_score_count_mismatch",
                expected=len(documents),
                received=len(documents) - missing,
            )

        return BatchScores(
            model=self.model,
            scores=[MISSING_SCORE if s is None else s for s in scores],
        )


class Reranker:
    """
    Reranking front end used by the pipeline.

    Args:
        remote: Remote scorer; when None only BM25 runs.
        local: Local fallback scorer.
    """

    def __init__(
        self,
        remote: Optional[RerankScorer] = None,
        local: Optional[RerankScorer] = None,
    ):
        self.local = local or BM25Reranker()
        self._chain: Optional[FallbackChain[RerankScorer]] = None
        if remote is not None:
            self._chain = FallbackChain("reranker", primary=remote, secondary=self.local)

    async def rerank(
        self,
        query: str,
        documents: list[RerankDocument],
        top_n: Optional[int] = None,
    ) -> RerankResponse:
        """
        Reorder ``documents`` by relevance to ``query``.

        Returns at most ``top_n`` documents (all when None), each carrying its
        position before and after reranking.
        """
        start = time.perf_counter()

        if not documents:
            return RerankResponse(results=[], model=PASSTHROUGH_MODEL)

        if len(documents) <= 2:
            return RerankResponse(
                results=[
                    RerankedDocument(
                        id=doc.id,
                        content=doc.content,
                        score=1 - i * 0.1,
                        original_rank=i,
                        new_rank=i,
                        metadata=doc.metadata,
                    )
                    for i, doc in enumerate(documents)
                ],
                model=PASSTHROUGH_MODEL,
                latency_ms=(time.perf_counter() - start) * 1000,
            )

        texts = [doc.content for doc in documents]
        if self._chain is not None:
            batch: BatchScores = await self._chain.call("score", query, texts)
        else:
            batch = await self.local.score(query, texts)

        scores = list(batch.scores[: len(documents)])
        scores.extend([MISSING_SCORE] * (len(documents) - len(scores)))

        order = sorted(range(len(documents)), key=lambda i: scores[i], reverse=True)
        if top_n is not None:
            order = order[:top_n]

        results = [
            RerankedDocument(
                id=documents[i].id,
                content=documents[i].content,
                score=max(0.0, min(1.0, scores[i])),
                original_rank=i,
                new_rank=new_rank,
                metadata=documents[i].metadata,
            )
            for new_rank, i in enumerate(order)
        ]
        latency_ms = (time.perf_counter() - start) * 1000

        logger.info(
            "rerank_completed",
            query_length=len(query),
            doc_count=len(documents),
            results=len(results),
            model=batch.model,
            latency_ms=round(latency_ms, 2),
        )
        return RerankResponse(results=results, model=batch.model, latency_ms=latency_ms)
