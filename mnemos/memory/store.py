"""Tiered store interface and in-process implementation.

The store is the source of truth for memory records. Every backend offers:
- point CRUD on records by id and user
- a similarity query (vector + user + threshold + count + filters)
- a lexical query (text + user + threshold + count + filters)
- batch updates for tier and importance changes

Writes that touch a version chain run under a per-root lock and either
apply completely or raise, so exactly one record per root stays latest.

Usage:
    store = InMemoryTieredStore()
    await store.insert(record)
    hits = await store.similarity_search(user_id, vector, threshold=0.9, limit=1)
"""

from __future__ import annotations

import asyncio
import math
from collections import defaultdict
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Iterable, Optional, Protocol

import structlog

from mnemos.core.exceptions import (
    InvalidInputError,
    InvariantViolationError,
    NotFoundError,
)
from mnemos.knowledge.embeddings import cosine_similarity
from mnemos.knowledge.text import extract_terms
from mnemos.models.memory import (
    MemoryRecord,
    MemoryRelation,
    MemoryTier,
    ScoredMemory,
    SearchFilters,
    utcnow,
)

logger = structlog.get_logger(__name__)

# Fields that define a version's identity or content. They can only change
# by inserting a new version, never through update().
IMMUTABLE_FIELDS = frozenset(
    {
        "id",
        "user_id",
        "root_id",
        "parent_id",
        "version",
        "is_latest",
        "content",
        "embedding",
        "embedding_model",
        "created_at",
    }
)

SECONDS_PER_DAY = 86400


class TieredStore(Protocol):
    """Protocol for tiered store backends."""

    name: str

    async def insert(self, record: MemoryRecord) -> MemoryRecord: ...

    async def get(self, memory_id: str) -> Optional[MemoryRecord]: ...

    async def list_memories(
        self,
        user_id: str,
        filters: Optional[SearchFilters] = None,
        limit: Optional[int] = None,
    ) -> list[MemoryRecord]: ...

    async def get_chain(self, root_id: str) -> list[MemoryRecord]: ...

    async def get_relations(self, memory_id: str) -> list[MemoryRelation]: ...

    async def list_user_ids(self) -> list[str]: ...

    async def similarity_search(
        self,
        user_id: str,
        embedding: list[float],
        threshold: float,
        limit: int,
        filters: Optional[SearchFilters] = None,
    ) -> list[ScoredMemory]: ...

    async def lexical_search(
        self,
        user_id: str,
        query: str,
        threshold: float,
        limit: int,
        filters: Optional[SearchFilters] = None,
    ) -> list[ScoredMemory]: ...

    async def update(self, memory_id: str, changes: dict[str, Any]) -> MemoryRecord: ...

    async def batch_update(self, changes: dict[str, dict[str, Any]]) -> int: ...

    async def insert_version(
        self,
        existing_id: str,
        record: MemoryRecord,
        relation: MemoryRelation,
    ) -> MemoryRecord: ...

    async def replace_with_merged(
        self,
        original_ids: list[str],
        merged: MemoryRecord,
        relations: list[MemoryRelation],
    ) -> MemoryRecord: ...

    async def delete_chain(self, root_id: str) -> int: ...

    async def delete_user(self, user_id: str) -> int: ...

    async def apply_decay(
        self,
        user_id: str,
        daily_rate: float,
        min_importance: float,
        now: Optional[datetime] = None,
    ) -> int: ...

    async def increment_access(
        self,
        memory_id: str,
        boost: float,
        max_importance: float,
        now: Optional[datetime] = None,
    ) -> MemoryRecord: ...

    async def forget_expired(
        self,
        user_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> list[str]: ...

    async def ping(self) -> bool: ...


# =============================================================================
# Shared Rules
# =============================================================================


def check_record_invariants(record: MemoryRecord) -> None:
    """Raise if a record on its own breaks a store invariant."""
    if record.is_forgotten and record.tier != MemoryTier.COLD:
        raise InvariantViolationError(
            "Forgotten memories must be in the cold tier",
            {"id": record.id, "tier": record.tier.value},
        )
    if record.version == 1 and record.parent_id is not None:
        raise InvariantViolationError(
            "A first version cannot have a parent",
            {"id": record.id, "parent_id": record.parent_id},
        )


def check_mutable(changes: dict[str, Any]) -> None:
    """Reject updates that would rewrite content or chain identity in place."""
    forbidden = IMMUTABLE_FIELDS & changes.keys()
    if forbidden:
        raise InvariantViolationError(
            "Content and version fields change only through a new version",
            {"fields": sorted(forbidden)},
        )


def decay_importance(
    record: MemoryRecord,
    daily_rate: float,
    min_importance: float,
    now: datetime,
) -> Optional[tuple[float, datetime]]:
    """
    Decay owed to a record at ``now``.

    Importance is multiplied by ``(1 - daily_rate)`` for every whole day since
    the last decay (or creation) and floored at ``min_importance``. The anchor
    only advances by whole days, so repeating the call within a day is a
    no-op. Returns ``None`` when nothing is owed.
    """
    anchor = record.last_decayed_at or record.created_at
    days = math.floor((now - anchor).total_seconds() / SECONDS_PER_DAY)
    if days < 1:
        return None

    new_anchor = anchor + timedelta(days=days)
    if record.importance <= min_importance:
        return record.importance, new_anchor
    decayed = record.importance * (1 - daily_rate) ** days
    return max(min_importance, decayed), new_anchor


def next_access_velocity(velocity: float) -> float:
    """Exponential moving average of access events (one-week window)."""
    return (velocity * 6 + 1) / 7


# =============================================================================
# In-Memory Store
# =============================================================================


class InMemoryTieredStore:
    """
    In-process store backend.

    Holds records and relations in dicts. Chain writes take an asyncio.Lock
    per root id; operations spanning several chains take the locks in sorted
    order. Returned records are copies, never live references.
    """

    name = "memory"

    def __init__(self) -> None:
        self._records: dict[str, MemoryRecord] = {}
        self._relations: list[MemoryRelation] = []
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def _lock_roots(self, root_ids: Iterable[str]) -> AsyncIterator[None]:
        async with AsyncExitStack() as stack:
            for root_id in sorted(set(root_ids)):
                await stack.enter_async_context(self._locks[root_id])
            yield

    def _require(self, memory_id: str) -> MemoryRecord:
        record = self._records.get(memory_id)
        if record is None:
            raise NotFoundError("memory", memory_id)
        return record

    def _user_latest(self, user_id: str, filters: SearchFilters) -> list[MemoryRecord]:
        return [
            r for r in self._records.values()
            if r.user_id == user_id and filters.matches(r)
        ]

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(self, memory_id: str) -> Optional[MemoryRecord]:
        record = self._records.get(memory_id)
        return record.model_copy(deep=True) if record else None

    async def list_memories(
        self,
        user_id: str,
        filters: Optional[SearchFilters] = None,
        limit: Optional[int] = None,
    ) -> list[MemoryRecord]:
        """Latest records for a user ordered by importance, then recency."""
        records = self._user_latest(user_id, filters or SearchFilters())
        records.sort(key=lambda r: (r.importance, r.updated_at), reverse=True)
        if limit is not None:
            records = records[:limit]
        return [r.model_copy(deep=True) for r in records]

    async def get_chain(self, root_id: str) -> list[MemoryRecord]:
        chain = [r for r in self._records.values() if r.root_id == root_id]
        chain.sort(key=lambda r: (r.version, r.created_at))
        return [r.model_copy(deep=True) for r in chain]

    async def get_relations(self, memory_id: str) -> list[MemoryRelation]:
        return [
            rel.model_copy()
            for rel in self._relations
            if rel.source_id == memory_id or rel.target_id == memory_id
        ]

    async def list_user_ids(self) -> list[str]:
        return sorted({r.user_id for r in self._records.values()})

    async def similarity_search(
        self,
        user_id: str,
        embedding: list[float],
        threshold: float,
        limit: int,
        filters: Optional[SearchFilters] = None,
    ) -> list[ScoredMemory]:
        """
        Cosine similarity over a user's latest records.

        Raises:
            InvalidInputError: If the query vector and a stored vector differ
                in dimensionality.
        """
        if not embedding:
            raise InvalidInputError("Query embedding cannot be empty")

        scored: list[ScoredMemory] = []
        for record in self._user_latest(user_id, filters or SearchFilters()):
            if not record.embedding:
                continue
            similarity = cosine_similarity(embedding, record.embedding)
            if similarity >= threshold:
                scored.append(ScoredMemory(memory=record.model_copy(deep=True), score=similarity))

        scored.sort(key=lambda s: s.score, reverse=True)
        return scored[:limit]

    async def lexical_search(
        self,
        user_id: str,
        query: str,
        threshold: float,
        limit: int,
        filters: Optional[SearchFilters] = None,
    ) -> list[ScoredMemory]:
        """Term coverage: share of the query's content terms found in each record."""
        query_terms = set(extract_terms(query))
        if not query_terms:
            return []

        scored: list[ScoredMemory] = []
        for record in self._user_latest(user_id, filters or SearchFilters()):
            doc_terms = set(extract_terms(record.content)) | {t.lower() for t in record.tags}
            coverage = len(query_terms & doc_terms) / len(query_terms)
            if coverage > 0 and coverage >= threshold:
                scored.append(ScoredMemory(memory=record.model_copy(deep=True), score=coverage))

        scored.sort(key=lambda s: (s.score, s.memory.importance), reverse=True)
        return scored[:limit]

    async def ping(self) -> bool:
        return True

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def insert(self, record: MemoryRecord) -> MemoryRecord:
        """Insert a new root record."""
        check_record_invariants(record)
        if record.version != 1 or record.root_id != record.id:
            raise InvariantViolationError(
                "insert() only accepts first versions; use insert_version()",
                {"id": record.id, "version": record.version},
            )

        async with self._lock_roots([record.root_id]):
            if record.id in self._records:
                raise InvariantViolationError("Memory id already exists", {"id": record.id})
            self._records[record.id] = record.model_copy(deep=True)

        return record.model_copy(deep=True)

    async def update(self, memory_id: str, changes: dict[str, Any]) -> MemoryRecord:
        """Apply lifecycle field changes to one record."""
        check_mutable(changes)
        record = self._require(memory_id)

        async with self._lock_roots([record.root_id]):
            record = self._require(memory_id)
            updated = record.model_copy(update={**changes, "updated_at": utcnow()})
            check_record_invariants(updated)
            self._records[memory_id] = updated

        return updated.model_copy(deep=True)

    async def batch_update(self, changes: dict[str, dict[str, Any]]) -> int:
        """
        Apply several record updates atomically.

        Every change set is validated before any is applied.
        """
        if not changes:
            return 0

        now = utcnow()
        staged: dict[str, MemoryRecord] = {}
        for memory_id, fields in changes.items():
            check_mutable(fields)
            updated = self._require(memory_id).model_copy(update={**fields, "updated_at": now})
            check_record_invariants(updated)
            staged[memory_id] = updated

        async with self._lock_roots(r.root_id for r in staged.values()):
            self._records.update(staged)

        return len(staged)

    async def insert_version(
        self,
        existing_id: str,
        record: MemoryRecord,
        relation: MemoryRelation,
    ) -> MemoryRecord:
        """
        Flip ``existing_id`` to not-latest and insert its successor.

        Raises:
            InvariantViolationError: If the existing record is no longer the
                latest of its chain or the successor does not continue it.
        """
        check_record_invariants(record)
        existing = self._require(existing_id)

        async with self._lock_roots([existing.root_id]):
            existing = self._records[existing_id]
            if not existing.is_latest:
                raise InvariantViolationError(
                    "Cannot version a memory that is no longer latest",
                    {"id": existing_id, "root_id": existing.root_id},
                )
            if (
                record.root_id != existing.root_id
                or record.parent_id != existing.id
                or record.version != existing.version + 1
            ):
                raise InvariantViolationError(
                    "New version does not continue the existing chain",
                    {"id": existing_id, "version": existing.version, "new_version": record.version},
                )

            now = utcnow()
            self._records[existing_id] = existing.model_copy(
                update={"is_latest": False, "updated_at": now}
            )
            self._records[record.id] = record.model_copy(deep=True)
            self._relations.append(relation.model_copy())

        return record.model_copy(deep=True)

    async def replace_with_merged(
        self,
        original_ids: list[str],
        merged: MemoryRecord,
        relations: list[MemoryRelation],
    ) -> MemoryRecord:
        """
        Replace several latest records with one merged record.

        The merged record continues the chain of its parent (one of the
        originals). The other originals' chains are folded into that chain,
        so every root still has exactly one latest record. Folded records are
        renumbered after the base chain, oldest first, and the merged record
        takes the next version, keeping the chain strictly increasing.
        """
        check_record_invariants(merged)
        originals = [self._require(memory_id) for memory_id in original_ids]
        base = self._records.get(merged.parent_id or "")
        if base is None or base.id not in original_ids:
            raise InvariantViolationError(
                "Merged memory must continue the chain of one of its originals",
                {"parent_id": merged.parent_id},
            )

        roots = {r.root_id for r in originals}
        async with self._lock_roots(roots):
            originals = [self._records[memory_id] for memory_id in original_ids]
            base = self._records[base.id]
            stale = [r.id for r in originals if not r.is_latest]
            if stale:
                raise InvariantViolationError(
                    "Cannot merge memories that are no longer latest",
                    {"ids": stale},
                )
            if merged.root_id != base.root_id or merged.version != base.version + 1:
                raise InvariantViolationError(
                    "Merged memory does not continue the base chain",
                    {"root_id": merged.root_id, "version": merged.version},
                )

            now = utcnow()
            absorbed_roots = roots - {base.root_id}
            absorbed = sorted(
                (r for r in self._records.values() if r.root_id in absorbed_roots),
                key=lambda r: (r.created_at, r.root_id, r.version),
            )
            renumbered = {r.id: base.version + i for i, r in enumerate(absorbed, start=1)}
            merged = merged.model_copy(update={"version": base.version + len(absorbed) + 1})

            for memory_id, record in list(self._records.items()):
                changes: dict[str, Any] = {}
                if memory_id in renumbered:
                    changes["root_id"] = base.root_id
                    changes["version"] = renumbered[memory_id]
                if memory_id in original_ids:
                    changes["is_latest"] = False
                    changes["updated_at"] = now
                if changes:
                    self._records[memory_id] = record.model_copy(update=changes)

            self._records[merged.id] = merged.model_copy(deep=True)
            self._relations.extend(rel.model_copy() for rel in relations)

        return merged.model_copy(deep=True)

    async def delete_chain(self, root_id: str) -> int:
        """Hard delete every version of a chain and all their relations."""
        async with self._lock_roots([root_id]):
            ids = {memory_id for memory_id, r in self._records.items() if r.root_id == root_id}
            for memory_id in ids:
                del self._records[memory_id]
            self._relations = [
                rel for rel in self._relations
                if rel.source_id not in ids and rel.target_id not in ids
            ]
        return len(ids)

    async def delete_user(self, user_id: str) -> int:
        """Hard delete every record and relation owned by a user."""
        roots = {r.root_id for r in self._records.values() if r.user_id == user_id}
        async with self._lock_roots(roots):
            ids = {memory_id for memory_id, r in self._records.items() if r.user_id == user_id}
            for memory_id in ids:
                del self._records[memory_id]
            self._relations = [
                rel for rel in self._relations
                if rel.source_id not in ids and rel.target_id not in ids
            ]
        return len(ids)

    async def apply_decay(
        self,
        user_id: str,
        daily_rate: float,
        min_importance: float,
        now: Optional[datetime] = None,
    ) -> int:
        """Decay every active record of a user; returns how many changed."""
        now = now or utcnow()
        changes: dict[str, dict[str, Any]] = {}
        for record in self._user_latest(user_id, SearchFilters()):
            owed = decay_importance(record, daily_rate, min_importance, now)
            if owed is not None:
                importance, anchor = owed
                changes[record.id] = {"importance": importance, "last_decayed_at": anchor}
        return await self.batch_update(changes)

    async def increment_access(
        self,
        memory_id: str,
        boost: float,
        max_importance: float,
        now: Optional[datetime] = None,
    ) -> MemoryRecord:
        now = now or utcnow()
        record = self._require(memory_id)
        return await self.update(
            memory_id,
            {
                "access_count": record.access_count + 1,
                "access_velocity": next_access_velocity(record.access_velocity),
                "importance": min(record.importance + boost, max_importance),
                "last_accessed_at": now,
            },
        )

    async def forget_expired(
        self,
        user_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> list[str]:
        now = now or utcnow()
        expired = [
            r.id for r in self._user_latest(user_id, SearchFilters())
            if r.forget_after is not None and r.forget_after <= now
        ]
        await self.batch_update(
            {
                memory_id: {"is_forgotten": True, "forget_reason": reason, "tier": MemoryTier.COLD}
                for memory_id in expired
            }
        )
        return expired
