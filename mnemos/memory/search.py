"""
Hybrid search over the tiered store.

Vector similarity and lexical queries run concurrently and are combined
with weighted reciprocal rank fusion:

    rrf(d) = sum over lists of  weight / (k + rank(d) + 1)

Only the store round trips carry the store timeout. The query embedding
is bounded by the vectorizer's own (longer) timeout, so a slow similarity
query is reported as a store timeout rather than hidden behind embedding
latency.

Usage:
    search = HybridSearch(store, vectorizer, hot_cache)
    results = await search.search("what does the user do?", user_id)
    profile = await search.get_profile(user_id, query="grant writing")
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Optional, TypeVar

import structlog

from mnemos.config.settings import Settings, get_settings
from mnemos.core.exceptions import DependencyTimeoutError, InvalidInputError
from mnemos.knowledge.embeddings import Vectorizer, cosine_similarity
from mnemos.memory.hot_cache import HotCache
from mnemos.memory.store import TieredStore
from mnemos.models.memory import (
    MemoryProfile,
    MemoryRecord,
    MemoryTier,
    ScoredMemory,
    SearchFilters,
    SearchResult,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_TIERS = [MemoryTier.HOT, MemoryTier.WARM]


def rrf_fuse(
    vector_hits: list[ScoredMemory],
    lexical_hits: list[ScoredMemory],
    vector_weight: float = 0.6,
    lexical_weight: float = 0.4,
    k: int = 60,
) -> list[SearchResult]:
    """Combine two ranked lists with weighted reciprocal rank fusion."""
    fused: dict[str, SearchResult] = {}

    for rank, hit in enumerate(vector_hits):
        result = fused.setdefault(hit.memory.id, SearchResult(memory=hit.memory))
        result.rrf_score += vector_weight / (k + rank + 1)
        result.vector_similarity = max(result.vector_similarity, hit.score)

    for rank, hit in enumerate(lexical_hits):
        result = fused.setdefault(hit.memory.id, SearchResult(memory=hit.memory))
        result.rrf_score += lexical_weight / (k + rank + 1)
        result.lexical_score = max(result.lexical_score, hit.score)

    ranked = sorted(fused.values(), key=lambda r: r.rrf_score, reverse=True)
    for result in ranked:
        result.final_score = result.rrf_score
    return ranked


def format_memories_for_prompt(profile: MemoryProfile) -> str:
    """Render a profile as prompt context."""
    parts: list[str] = []
    if profile.static:
        parts.append("## User Profile (Always Relevant)")
        parts.extend(f"- {m.content}" for m in profile.static)
    if profile.dynamic:
        parts.append("\n## Contextual Memories")
        parts.extend(f"- {m.content}" for m in profile.dynamic)
    return "\n".join(parts)


class HybridSearch:
    """Vector + lexical retrieval, profile assembly and cache-first search."""

    def __init__(
        self,
        store: TieredStore,
        vectorizer: Vectorizer,
        cache: HotCache,
        settings: Optional[Settings] = None,
    ) -> None:
        self.store = store
        self.vectorizer = vectorizer
        self.cache = cache
        self.settings = settings or get_settings()

    async def _bounded(self, operation: str, awaitable: Awaitable[T]) -> T:
        """Apply the store timeout to one store round trip."""
        timeout = self.settings.store_timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise DependencyTimeoutError(
                "store",
                f"{operation} exceeded {timeout}s",
                {"operation": operation},
            ) from e

    async def search(
        self,
        query: str,
        user_id: str,
        limit: Optional[int] = None,
        filters: Optional[SearchFilters] = None,
        query_embedding: Optional[list[float]] = None,
    ) -> list[SearchResult]:
        """
        Hybrid search for a user's memories.

        Args:
            query: Natural language query.
            user_id: Owner of the memories.
            limit: Results to return. Defaults to settings.search_default_limit.
            filters: Store filters. Defaults to the hot and warm tiers.
            query_embedding: Precomputed query vector.

        Raises:
            InvalidInputError: If the query is blank.
            DependencyTimeoutError: If a store round trip exceeds its budget.
        """
        if not query or not query.strip():
            raise InvalidInputError("Search query cannot be empty")

        s = self.settings
        limit = limit or s.search_default_limit
        filters = filters or SearchFilters(tiers=DEFAULT_TIERS)
        start = time.perf_counter()

        if query_embedding is None:
            query_embedding = await self.vectorizer.embed_query(query)
        embed_ms = (time.perf_counter() - start) * 1000

        store_start = time.perf_counter()
        vector_hits, lexical_hits = await asyncio.gather(
            self._bounded(
                "similarity_search",
                self.store.similarity_search(
                    user_id,
                    query_embedding,
                    threshold=s.search_vector_threshold,
                    limit=limit * 2,
                    filters=filters,
                ),
            ),
            self._bounded(
                "lexical_search",
                self.store.lexical_search(
                    user_id,
                    query,
                    threshold=s.search_lexical_threshold,
                    limit=limit * 2,
                    filters=filters,
                ),
            ),
        )
        store_ms = (time.perf_counter() - store_start) * 1000

        results = rrf_fuse(
            [h for h in vector_hits if h.score >= s.search_vector_threshold],
            [h for h in lexical_hits if h.score >= s.search_lexical_threshold],
            s.search_vector_weight,
            s.search_lexical_weight,
            s.search_rrf_k,
        )[:limit]

        logger.debug(
            "hybrid_search_completed",
            user_id=user_id,
            vector_hits=len(vector_hits),
            lexical_hits=len(lexical_hits),
            results=len(results),
            embed_ms=round(embed_ms, 2),
            store_ms=round(store_ms, 2),
        )
        return results

    async def get_profile(
        self,
        user_id: str,
        query: Optional[str] = None,
        static_limit: Optional[int] = None,
        dynamic_limit: Optional[int] = None,
    ) -> MemoryProfile:
        """
        Static identity facts plus contextual facts for a user.

        Static facts come from the hot cache when it holds any, otherwise
        from the store by importance. Dynamic facts are ranked by similarity
        to ``query`` when one is given, otherwise by importance and recency.
        A record chosen as static never appears in dynamic.
        """
        s = self.settings
        static_limit = s.profile_static_limit if static_limit is None else static_limit
        dynamic_limit = s.profile_dynamic_limit if dynamic_limit is None else dynamic_limit

        static: list[MemoryRecord] = []
        if static_limit > 0:
            cached = await self.cache.get_filtered(user_id, static_only=True)
            if cached:
                static = cached[:static_limit]
            else:
                static = await self._bounded(
                    "list_memories",
                    self.store.list_memories(
                        user_id,
                        SearchFilters(static_only=True),
                        limit=static_limit,
                    ),
                )

        dynamic: list[MemoryRecord] = []
        if dynamic_limit > 0:
            static_ids = {m.id for m in static}
            fetch = dynamic_limit + len(static_ids)
            if query and query.strip():
                embedding = await self.vectorizer.embed_query(query)
                hits = await self._bounded(
                    "similarity_search",
                    self.store.similarity_search(
                        user_id,
                        embedding,
                        threshold=0.0,
                        limit=fetch,
                        filters=SearchFilters(dynamic_only=True),
                    ),
                )
                candidates = [h.memory for h in hits]
            else:
                candidates = await self._bounded(
                    "list_memories",
                    self.store.list_memories(
                        user_id,
                        SearchFilters(dynamic_only=True),
                        limit=fetch,
                    ),
                )
            dynamic = [m for m in candidates if m.id not in static_ids][:dynamic_limit]

        return MemoryProfile(static=static, dynamic=dynamic)

    async def tiered_search(
        self,
        query: str,
        user_id: str,
        limit: Optional[int] = None,
        filters: Optional[SearchFilters] = None,
    ) -> list[SearchResult]:
        """
        Answer from the hot cache when it holds enough records, else search.

        Cached records are ranked by cosine similarity to the query.
        """
        limit = limit or self.settings.search_default_limit
        cached = await self.cache.get(user_id)

        if cached is not None and len(cached) >= limit:
            query_embedding = await self.vectorizer.embed_query(query)
            scored: list[SearchResult] = []
            for memory in cached:
                similarity = 0.0
                if memory.embedding and len(memory.embedding) == len(query_embedding):
                    similarity = cosine_similarity(query_embedding, memory.embedding)
                scored.append(
                    SearchResult(
                        memory=memory,
                        vector_similarity=similarity,
                        rrf_score=similarity,
                        final_score=similarity,
                    )
                )
            scored.sort(key=lambda r: r.final_score, reverse=True)
            logger.debug("tiered_search_cache_hit", user_id=user_id, cached=len(cached))
            return scored[:limit]

        return await self.search(query, user_id, limit=limit, filters=filters)
