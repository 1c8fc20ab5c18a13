"""
Relevance grader: scores how well a candidate answers a query.

Two implementations share one interface:
- RemoteRelevanceGrader asks a completion model for a JSON grade
- HeuristicRelevanceGrader blends keyword, length, exact-match and bigram
  signals locally (lower confidence)

RelevanceGrader puts cheap checks in front of both (near-empty documents
and zero keyword overlap never reach the remote scorer), falls back from
remote to heuristic on any failure, and applies metadata boosts after the
base score.

Usage:
    grader = RelevanceGrader(remote=RemoteRelevanceGrader(client))
    grade = await grader.grade("board members", "Jane sits on the board of ...")
"""

from __future__ import annotations

import asyncio
import json
from typing import Optional, Protocol

import structlog

from mnemos.config.settings import Settings, get_settings
from mnemos.core.exceptions import DependencyFailureError
from mnemos.core.fallback import FallbackChain
from mnemos.knowledge.text import keyword_overlap, ngram_overlap, truncate_at_sentence
from mnemos.models.memory import SearchResult
from mnemos.models.retrieval import (
    GradedResult,
    GradeFactor,
    GradingMetadata,
    RelevanceGrade,
)
from mnemos.retrieval.completion import JSONCompletionClient

logger = structlog.get_logger(__name__)

MIN_DOCUMENT_LENGTH = 10
QUICK_REJECT_SCORE = 0.1
HEURISTIC_CONFIDENCE = 0.6

GRADING_PROMPT = """You grade documents for a retrieval system. Your grade decides whether \
the document is shown to the user.

[QUERY]
{query}

[DOCUMENT]
{document}

[METADATA]
{metadata}

Score the document from 0.0 to 1.0:
- 0.9-1.0: answers the query directly
- 0.7-0.8: contains the key information
- 0.5-0.6: partially useful
- 0.3-0.4: tangentially related
- 0.1-0.2: superficial connection
- 0.0: not relevant

Rate each factor's impact from -1 (hurts) to +1 (helps): semantic match, \
information quality, recency, completeness, context fit (is_static, importance, kind).
If you would score above 0.7 with confidence below 0.7, lower the score to 0.5-0.6.

Reply with JSON only:
{{"score": <0-1>, "reasoning": "<2-3 sentences>", \
"factors": [{{"name": "<factor>", "impact": <-1 to 1>, "description": "<brief>"}}], \
"confidence": <0-1>}}"""


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def apply_metadata_boosts(score: float, metadata: Optional[GradingMetadata]) -> float:
    """Boost static memories and high-importance memories, capped at 1.0."""
    if metadata is None:
        return score
    if metadata.is_static and score > 0.3:
        score = min(1.0, score * 1.15)
    if metadata.importance is not None and metadata.importance > 0.8:
        score = min(1.0, score * 1.1)
    return score


class Grader(Protocol):
    async def grade(
        self,
        query: str,
        document: str,
        metadata: Optional[GradingMetadata] = None,
    ) -> RelevanceGrade: ...


class HeuristicRelevanceGrader:
    """Local grader: keyword x0.4 + length x0.1 + exact match x0.2 + bigram x0.3."""

    async def grade(
        self,
        query: str,
        document: str,
        metadata: Optional[GradingMetadata] = None,
    ) -> RelevanceGrade:
        keyword = keyword_overlap(query, document)
        length_ratio = min(len(document) / 500, 1.0)
        exact = query.lower() in document.lower()
        bigram = ngram_overlap(query, document, 2)

        factors = [
            GradeFactor(
                name="keyword_overlap",
                impact=keyword * 2 - 1,
                description=f"{round(keyword * 100)}% query terms found",
            ),
            GradeFactor(
                name="content_length",
                impact=length_ratio * 0.5 - 0.25,
                description="Sufficient content" if length_ratio > 0.5 else "Limited content",
            ),
        ]
        if exact:
            factors.append(
                GradeFactor(name="exact_match", impact=0.5, description="Contains exact query phrase")
            )
        factors.append(
            GradeFactor(
                name="ngram_overlap",
                impact=bigram * 2 - 1,
                description=f"{round(bigram * 100)}% bigram overlap",
            )
        )

        score = _clamp(keyword * 0.4 + length_ratio * 0.1 + (0.2 if exact else 0.0) + bigram * 0.3)
        return RelevanceGrade(
            score=score,
            reasoning=(
                f"Heuristic grade based on keyword overlap ({round(keyword * 100)}%) "
                "and content analysis"
            ),
            factors=factors,
            confidence=HEURISTIC_CONFIDENCE,
        )


class RemoteRelevanceGrader:
    """Grader backed by a JSON completion model."""

    def __init__(self, client: JSONCompletionClient, timeout: Optional[float] = None):
        self.client = client
        self.timeout = timeout or get_settings().grading_timeout_seconds

    async def grade(
        self,
        query: str,
        document: str,
        metadata: Optional[GradingMetadata] = None,
    ) -> RelevanceGrade:
        prompt = GRADING_PROMPT.format(
            query=query,
            document=truncate_at_sentence(document, 2000),
            metadata=json.dumps(metadata.model_dump(exclude_none=True)) if metadata else "None",
        )
        data = await self.client.complete_json(prompt, timeout=self.timeout, operation="grade")

        try:
            score = _clamp(float(data["score"]))
            factors = [
                GradeFactor(
                    name=str(f.get("name", "")),
                    impact=_clamp(float(f.get("impact", 0.0)), -1.0, 1.0),
                    description=str(f.get("description", "")),
                )
                for f in data.get("factors") or []
                if isinstance(f, dict)
            ]
            confidence = _clamp(float(data.get("confidence") or 0.8))
        except (KeyError, TypeError, ValueError) as e:
            raise DependencyFailureError("anthropic", f"Malformed grade: {e}", {"reply": data}) from e

        return RelevanceGrade(
            score=score,
            reasoning=str(data.get("reasoning", "")),
            factors=factors,
            confidence=confidence,
        )


class RelevanceGrader:
    """
    Grading front end used by the pipeline.

    Args:
        remote: Remote grader; when None only the heuristic grader runs.
        heuristic: Local fallback grader.
        threshold: Default score at or above which a grade is relevant.
        concurrency: Maximum grades in flight for one batch.
    """

    def __init__(
        self,
        remote: Optional[Grader] = None,
        heuristic: Optional[Grader] = None,
        threshold: Optional[float] = None,
        concurrency: Optional[int] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.heuristic = heuristic or HeuristicRelevanceGrader()
        self.threshold = settings.pipeline_relevance_threshold if threshold is None else threshold
        self.concurrency = concurrency or settings.grading_concurrency
        self._chain: Optional[FallbackChain[Grader]] = None
        if remote is not None:
            self._chain = FallbackChain("grader", primary=remote, secondary=self.heuristic)

    async def grade(
        self,
        query: str,
        document: str,
        metadata: Optional[GradingMetadata] = None,
        threshold: Optional[float] = None,
    ) -> RelevanceGrade:
        threshold = self.threshold if threshold is None else threshold

        if len(document.strip()) < MIN_DOCUMENT_LENGTH:
            return RelevanceGrade(
                score=0.0,
                reasoning="Document too short to evaluate",
                confidence=1.0,
            )

        overlap = keyword_overlap(query, document)
        if overlap < QUICK_REJECT_SCORE:
            return RelevanceGrade(
                score=overlap,
                reasoning="No keyword overlap detected",
                factors=[
                    GradeFactor(
                        name="keyword_overlap",
                        impact=-1.0,
                        description="Query terms not found in document",
                    )
                ],
                confidence=0.7,
                is_relevant=overlap >= threshold,
            )

        if self._chain is not None:
            base = await self._chain.call("grade", query, document, metadata)
        else:
            base = await self.heuristic.grade(query, document, metadata)

        score = apply_metadata_boosts(base.score, metadata)
        return base.model_copy(update={"score": score, "is_relevant": score >= threshold})

    async def grade_batch(
        self,
        query: str,
        results: list[SearchResult],
        threshold: Optional[float] = None,
    ) -> list[GradedResult]:
        """Grade search results concurrently, preserving input order."""
        semaphore = asyncio.Semaphore(self.concurrency)

        async def grade_one(result: SearchResult) -> GradedResult:
            metadata = GradingMetadata(
                kind=result.memory.kind.value,
                is_static=result.memory.is_static,
                importance=result.memory.importance,
            )
            async with semaphore:
                grade = await self.grade(query, result.memory.content, metadata, threshold)
            return GradedResult(result=result, grade=grade)

        graded = await asyncio.gather(*(grade_one(r) for r in results))

        if graded:
            relevant = sum(1 for g in graded if g.is_relevant)
            logger.debug(
                "batch_graded",
                total=len(graded),
                relevant=relevant,
                avg_score=round(sum(g.grade.score for g in graded) / len(graded), 3),
            )
        return list(graded)
