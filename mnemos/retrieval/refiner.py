"""
Query refiner: rewrites a query when its results grade poorly.

RemoteQueryRefiner makes two completion calls, an analysis of why the
results fall short followed by the rewrite itself. HeuristicQueryRefiner
applies deterministic rules, first applicable wins:

1. quote capitalized phrases for exact matching (entity_focus)
2. widen one known term with synonyms, only when results exist (expansion)
3. drop stop words from queries longer than ten words (reformulation)

QueryRefiner skips refinement when there is nothing to learn from (first
iteration without results) or the results are already good (average
relevance >= 0.7), and otherwise falls back from remote to heuristic.

Usage:
    refiner = QueryRefiner(remote=RemoteQueryRefiner(client))
    refinement = await refiner.refine(original, current, history, iteration=2)
"""

from __future__ import annotations

import re
from typing import Any, Optional, Protocol

import structlog

from mnemos.config.settings import Settings, get_settings
from mnemos.core.exceptions import DependencyError, DependencyFailureError
from mnemos.core.fallback import FallbackChain
from mnemos.knowledge.text import QUERY_STOP_WORDS, STOP_WORDS, shorten
from mnemos.models.retrieval import (
    DecomposedQuery,
    EntityType,
    GradedHistoryItem,
    QueryAnalysis,
    QueryEntity,
    QueryRefinement,
    RefinementType,
)
from mnemos.retrieval.completion import JSONCompletionClient

logger = structlog.get_logger(__name__)

MAX_ALTERNATIVES = 3
SUFFICIENT_AVG_RELEVANCE = 0.7
HEURISTIC_CONFIDENCE = 0.5
SIMPLIFY_MIN_WORDS = 10
SIMPLIFY_KEEP_WORDS = 6

_PROPER_NOUN = re.compile(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*")
_PERSON_NAME = re.compile(r"^[A-Z][a-z]+\s+[A-Z][a-z]+$")
_ORGANIZATION_HINT = re.compile(r"Inc|LLC|Corp|Foundation|University|Institute|Company", re.I)
_DATE = re.compile(
    r"\b\d{4}\b|\b(?:January|February|March|April|May|June|July|August|September"
    r"|October|November|December)\s+\d{1,2}(?:,?\s+\d{4})?",
    re.I,
)
_AMOUNT = re.compile(r"\$[\d,]+(?:\.\d{2})?|\d+(?:,\d{3})*\s*(?:million|billion|thousand)", re.I)
_COMMAND_PREFIX = re.compile(r"^(find|search|look for|get|show me|tell me)\s+", re.I)
_WHAT_PREFIX = re.compile(r"^what\s+(is|are)\s+", re.I)

# Only one term is expanded per query, in table order.
SYNONYMS: dict[str, list[str]] = {
    "job": ["role", "position", "occupation"],
    "works": ["employed", "job", "position"],
    "lives": ["resides", "based", "home"],
    "likes": ["enjoys", "prefers", "favorite"],
    "dislikes": ["avoids", "hates", "unfavorite"],
    "family": ["spouse", "children", "relatives"],
    "project": ["initiative", "work", "task"],
    "goal": ["plan", "objective", "aim"],
    "meeting": ["call", "appointment", "session"],
    "asked": ["requested", "inquired", "wanted"],
}

ANALYSIS_PROMPT = """You improve search queries for a personal memory store. \
The current query returned weak results.

[ORIGINAL QUERY]
{original_query}

[CURRENT QUERY]
{current_query}

[ITERATION]
{iteration}

[RESULTS WITH RELEVANCE]
{results}

Work out the user's intent, the entities mentioned, why the results miss, \
and which rewrite strategy would help.

Reply with JSON only:
{{"intent": "factual|exploratory|comparative|procedural|definitional|relational", \
"entities": [{{"text": "<entity>", "type": "person|organization|location|date|amount|other", \
"importance": <0-1>}}], \
"complexity": "simple|moderate|complex", \
"strategy": "expansion|decomposition|reformulation|hyde|entity_focus|none", \
"gapAnalysis": "<why results are weak>"}}"""

REFINEMENT_PROMPT = """Rewrite a search query for a personal memory store.

[ORIGINAL QUERY]
{original_query}

[CURRENT QUERY]
{current_query}

[ANALYSIS]
{analysis}

[STRATEGY]
{strategy}

Strategy guide:
- expansion: add synonyms and related terms
- decomposition: focus on the most important sub-question
- reformulation: rephrase for clarity and precision
- hyde: write the passage an ideal answer would contain
- entity_focus: center the query on its key entities

Reply with JSON only:
{{"refinedQuery": "<improved query>", "reasoning": "<why it helps>", \
"alternatives": ["<alternative 1>", "<alternative 2>"], "confidence": <0-1>}}"""

HYDE_PROMPT = """Write a short passage that would perfectly answer this query, \
as if quoted from a note about the user.

[QUERY]
{query}

Write 2-3 specific, factual sentences.

Reply with JSON only:
{{"passage": "<passage>"}}"""

DECOMPOSITION_PROMPT = """Split this query into 2-4 simpler, independently searchable \
sub-queries.

[QUERY]
{query}

Reply with JSON only:
{{"queries": ["<sub-query>", "..."]}}"""


# =============================================================================
# Heuristics
# =============================================================================


def _proper_nouns(query: str) -> list[str]:
    """Capitalized phrases with leading stop words ("What", "Does") stripped."""
    nouns: list[str] = []
    for match in _PROPER_NOUN.findall(query):
        words = match.split()
        while words and words[0].lower() in STOP_WORDS:
            words.pop(0)
        if words:
            nouns.append(" ".join(words))
    return nouns


def extract_entities(query: str) -> list[QueryEntity]:
    """
    Pull people, organizations, dates and amounts out of a query.

    Two capitalized words read as a person; phrases with a corporate or
    institutional suffix read as an organization.
    """
    entities: list[QueryEntity] = []

    for noun in _proper_nouns(query):
        entity_type = EntityType.OTHER
        if _PERSON_NAME.match(noun):
            entity_type = EntityType.PERSON
        elif _ORGANIZATION_HINT.search(noun):
            entity_type = EntityType.ORGANIZATION
        entities.append(QueryEntity(text=noun, type=entity_type, importance=0.8))

    for match in _DATE.finditer(query):
        entities.append(QueryEntity(text=match.group(), type=EntityType.DATE, importance=0.6))

    for match in _AMOUNT.finditer(query):
        entities.append(QueryEntity(text=match.group(), type=EntityType.AMOUNT, importance=0.7))

    return entities


def expand_with_synonyms(query: str) -> str:
    """Widen the first known term in ``query`` into an OR group."""
    for term, synonyms in SYNONYMS.items():
        pattern = re.compile(rf"\b{re.escape(term)}\b", re.I)
        if pattern.search(query):
            alternatives = " OR ".join(synonyms[:2])
            return pattern.sub(f"({term} OR {alternatives})", query, count=1)
    return query


def simplify_query(query: str) -> str:
    """Keep the first six non stop words."""
    words = [w for w in query.split() if w.lower() not in QUERY_STOP_WORDS]
    return " ".join(words[:SIMPLIFY_KEEP_WORDS])


def generate_alternatives(query: str) -> list[str]:
    """Cheap rephrasings: question form, noun-phrase form, command prefix dropped."""
    alternatives: list[str] = []
    lowered = query.lower()

    if "?" not in query and not lowered.startswith("what"):
        alternatives.append(f"What is {query}?")

    if lowered.startswith("what") or "?" in query:
        noun_phrase = _WHAT_PREFIX.sub("", query).rstrip("?").strip()
        if noun_phrase and noun_phrase != query:
            alternatives.append(noun_phrase)

    without_prefix = _COMMAND_PREFIX.sub("", query).strip()
    if without_prefix != query:
        alternatives.append(without_prefix)

    return alternatives[:MAX_ALTERNATIVES]


def average_relevance(history: list[GradedHistoryItem]) -> float:
    if not history:
        return 0.0
    return sum(item.relevance for item in history) / len(history)


def no_refinement(original_query: str, current_query: str) -> QueryRefinement:
    return QueryRefinement(
        original_query=original_query,
        refined_query=current_query,
        refinement_type=RefinementType.NONE,
        reasoning="Current results are sufficient or no improvement possible",
        entities=extract_entities(original_query),
        confidence=1.0,
    )


# =============================================================================
# Refiners
# =============================================================================


class Refiner(Protocol):
    async def refine(
        self,
        original_query: str,
        current_query: str,
        history: list[GradedHistoryItem],
        iteration: int,
    ) -> QueryRefinement: ...


class HeuristicQueryRefiner:
    """Deterministic rewrites used without, or after failure of, the remote refiner."""

    async def refine(
        self,
        original_query: str,
        current_query: str,
        history: list[GradedHistoryItem],
        iteration: int,
    ) -> QueryRefinement:
        refined = current_query
        refinement_type = RefinementType.NONE
        reasoning = "No refinement applied"

        nouns = _proper_nouns(original_query)
        if nouns and '"' not in current_query:
            quoted = " ".join(f'"{noun}"' for noun in nouns)
            remainder = re.sub("|".join(re.escape(n) for n in nouns), "", original_query)
            refined = " ".join(f"{quoted} {remainder}".split())
            refinement_type = RefinementType.ENTITY_FOCUS
            reasoning = "Added quotes around proper nouns for exact matching"
        elif history:
            expanded = expand_with_synonyms(current_query)
            if expanded != current_query:
                refined = expanded
                refinement_type = RefinementType.EXPANSION
                reasoning = "Added synonyms for key terms"
        elif len(current_query.split()) > SIMPLIFY_MIN_WORDS:
            refined = simplify_query(current_query)
            refinement_type = RefinementType.REFORMULATION
            reasoning = "Simplified overly complex query"

        return QueryRefinement(
            original_query=original_query,
            refined_query=refined,
            refinement_type=refinement_type,
            reasoning=reasoning,
            alternatives=generate_alternatives(original_query),
            entities=extract_entities(original_query),
            confidence=HEURISTIC_CONFIDENCE,
        )


def _parse_entities(raw: Any) -> list[QueryEntity]:
    entities: list[QueryEntity] = []
    for item in raw or []:
        if not isinstance(item, dict) or not item.get("text"):
            continue
        try:
            entity_type = EntityType(str(item.get("type", "other")).lower())
        except ValueError:
            entity_type = EntityType.OTHER
        importance = max(0.0, min(1.0, float(item.get("importance", 0.5))))
        entities.append(QueryEntity(text=str(item["text"]), type=entity_type, importance=importance))
    return entities


def _parse_strategy(raw: Any) -> RefinementType:
    try:
        return RefinementType(str(raw).lower())
    except ValueError:
        return RefinementType.REFORMULATION


class RemoteQueryRefiner:
    """Two-step remote refiner: analyze the gap, then rewrite."""

    def __init__(
        self,
        client: JSONCompletionClient,
        timeout: Optional[float] = None,
        max_alternatives: int = MAX_ALTERNATIVES,
    ):
        self.client = client
        self.timeout = timeout or get_settings().refinement_timeout_seconds
        self.max_alternatives = max_alternatives

    async def analyze(
        self,
        original_query: str,
        current_query: str,
        history: list[GradedHistoryItem],
        iteration: int,
    ) -> QueryAnalysis:
        results = "\n".join(
            f"{i + 1}. [{round(item.relevance * 100)}%] {shorten(item.content, 200)}"
            + (f" ({item.reason})" if item.reason else "")
            for i, item in enumerate(history[:5])
        )
        prompt = ANALYSIS_PROMPT.format(
            original_query=original_query,
            current_query=current_query,
            iteration=iteration,
            results=results or "No results found",
        )
        data = await self.client.complete_json(
            prompt, timeout=self.timeout, operation="refine_analysis", temperature=0.3
        )
        try:
            return QueryAnalysis(
                intent=str(data.get("intent", "")),
                entities=_parse_entities(data.get("entities")),
                complexity=str(data.get("complexity", "simple")),
                suggested_strategy=_parse_strategy(data.get("strategy")),
                gap_analysis=str(data.get("gapAnalysis", "")),
            )
        except (TypeError, ValueError) as e:
            raise DependencyFailureError("anthropic", f"Malformed analysis: {e}", {"reply": data}) from e

    async def refine(
        self,
        original_query: str,
        current_query: str,
        history: list[GradedHistoryItem],
        iteration: int,
    ) -> QueryRefinement:
        analysis = await self.analyze(original_query, current_query, history, iteration)

        prompt = REFINEMENT_PROMPT.format(
            original_query=original_query,
            current_query=current_query,
            analysis=analysis.model_dump_json(),
            strategy=analysis.suggested_strategy.value,
        )
        data = await self.client.complete_json(
            prompt,
            timeout=self.timeout,
            operation="refine_rewrite",
            max_tokens=600,
            temperature=0.5,
        )

        refined = data.get("refinedQuery")
        if not isinstance(refined, str) or not refined.strip():
            raise DependencyFailureError("anthropic", "Refinement reply has no query", {"reply": data})

        try:
            confidence = max(0.0, min(1.0, float(data.get("confidence", 0.5))))
        except (TypeError, ValueError):
            confidence = 0.5
        alternatives = [str(a) for a in data.get("alternatives") or [] if a]

        return QueryRefinement(
            original_query=original_query,
            refined_query=refined.strip(),
            refinement_type=analysis.suggested_strategy,
            reasoning=str(data.get("reasoning", "")),
            alternatives=alternatives[: self.max_alternatives],
            entities=analysis.entities,
            confidence=confidence,
        )

    async def generate_hyde(self, query: str) -> str:
        data = await self.client.complete_json(
            HYDE_PROMPT.format(query=query),
            timeout=self.timeout,
            operation="hyde",
            max_tokens=200,
            temperature=0.3,
        )
        passage = data.get("passage")
        return passage.strip() if isinstance(passage, str) and passage.strip() else query

    async def decompose(self, query: str) -> list[str]:
        data = await self.client.complete_json(
            DECOMPOSITION_PROMPT.format(query=query),
            timeout=self.timeout,
            operation="decompose",
            max_tokens=300,
            temperature=0.3,
        )
        queries = [q.strip() for q in data.get("queries") or [] if isinstance(q, str) and q.strip()]
        return queries or [query]


class QueryRefiner:
    """
    Refinement front end used by the pipeline.

    Args:
        remote: Remote refiner; when None only the heuristic refiner runs.
        heuristic: Local fallback refiner.
    """

    def __init__(
        self,
        remote: Optional[RemoteQueryRefiner] = None,
        heuristic: Optional[Refiner] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.remote = remote
        self.heuristic = heuristic or HeuristicQueryRefiner()
        self._chain: Optional[FallbackChain[Refiner]] = None
        if remote is not None:
            self._chain = FallbackChain("refiner", primary=remote, secondary=self.heuristic)

    async def refine(
        self,
        original_query: str,
        current_query: str,
        history: list[GradedHistoryItem],
        iteration: int,
    ) -> QueryRefinement:
        if iteration == 1 and not history:
            return no_refinement(original_query, current_query)
        if history and average_relevance(history) >= SUFFICIENT_AVG_RELEVANCE:
            return no_refinement(original_query, current_query)

        if self._chain is not None:
            refinement = await self._chain.call(
                "refine", original_query, current_query, history, iteration
            )
        else:
            refinement = await self.heuristic.refine(
                original_query, current_query, history, iteration
            )

        logger.debug(
            "query_refined",
            iteration=iteration,
            refinement_type=refinement.refinement_type.value,
            changed=refinement.refined_query != current_query,
        )
        return refinement

    async def generate_hyde(self, query: str) -> str:
        """Hypothetical answer passage for ``query``; the query itself without a remote."""
        if self.remote is None:
            return query
        try:
            return await self.remote.generate_hyde(query)
        except DependencyError as e:
            logger.warning("hyde_failed", error=e.message)
            return query

    async def decompose_query(self, query: str) -> DecomposedQuery:
        """Split a compound question into independently searchable parts."""
        sub_queries = decompose_query(query)
        if self.remote is not None:
            try:
                sub_queries = await self.remote.decompose(query)
            except DependencyError as e:
                logger.warning("decomposition_failed", error=e.message)
        return DecomposedQuery(original_query=query, sub_queries=sub_queries)


def decompose_query(query: str) -> list[str]:
    """Split on " and " when no remote decomposer is available."""
    if " and " in query:
        parts = [part.strip() for part in query.split(" and ")]
        return [part for part in parts if part] or [query]
    return [query]

