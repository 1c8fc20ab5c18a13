"""
Memory lifecycle manager.

Owns every mutation of memory records: create (with dedup), versioning,
forgetting, hard deletion, consolidation, tier recomputation, decay and
access tracking. Each mutation keeps the hot cache coherent by invalidating
or incrementally updating the affected user's entry.

Write-path failures (embedding or store) always propagate; nothing is
applied when they do.

Usage:
    manager = MemoryManager(store, vectorizer, hot_cache)
    record = await manager.create("user-1", MemoryCandidate(content="User is VP of Finance"))
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Optional, Union
from uuid import UUID

import structlog

from mnemos.config.settings import Settings, get_settings
from mnemos.core.exceptions import (
    InvalidInputError,
    InvariantViolationError,
    NotFoundError,
)
from mnemos.knowledge.embeddings import Vectorizer, cosine_similarity
from mnemos.knowledge.text import truncate_content
from mnemos.memory.hot_cache import HotCache
from mnemos.memory.store import TieredStore
from mnemos.models.memory import (
    ConsolidationCandidate,
    ConsolidationResult,
    MemoryCandidate,
    MemoryKind,
    MemoryRecord,
    MemoryRelation,
    MemoryStats,
    MemoryTier,
    MemoryUpdate,
    RelationType,
    SearchFilters,
    TierUpdateStats,
    utcnow,
)
from mnemos.monitoring.metrics import MEMORY_DEDUP_HITS, track_memory_operation

logger = structlog.get_logger(__name__)

TTL_FORGET_REASON = "TTL expired"


def validate_memory_id(memory_id: str) -> str:
    """Reject ids that are not UUIDs."""
    try:
        UUID(str(memory_id))
    except ValueError as e:
        raise InvalidInputError("Malformed memory id", {"id": memory_id}) from e
    return memory_id


def _union(first: list[str], *others: list[str]) -> list[str]:
    seen = dict.fromkeys(first)
    for tags in others:
        seen.update(dict.fromkeys(tags))
    return list(seen)


def initial_tier(is_static: bool, kind: MemoryKind) -> MemoryTier:
    if is_static or kind == MemoryKind.PROFILE:
        return MemoryTier.HOT
    return MemoryTier.WARM


class MemoryManager:
    """
    Lifecycle operations over a tiered store and its hot cache.

    Thresholds and rates come from Settings; see the memory lifecycle,
    decay and tier groups there.
    """

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
        # Held from the dedup check through the write it decides on.
        self._user_locks: dict[str, asyncio.Lock] = {}

    def _user_lock(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = self._user_locks[user_id] = asyncio.Lock()
        return lock

    async def _require(self, memory_id: str) -> MemoryRecord:
        validate_memory_id(memory_id)
        record = await self.store.get(memory_id)
        if record is None:
            raise NotFoundError("memory", memory_id)
        return record

    # =========================================================================
    # Create and Version
    # =========================================================================

    async def create(self, user_id: str, candidate: MemoryCandidate) -> MemoryRecord:
        """
        Store a candidate fact, or version its near duplicate.

        Raises:
            InvalidInputError: If the content is blank.
            DependencyTimeoutError / DependencyFailureError: If embedding or
                the store fails. Dedup is never skipped.
        """
        with track_memory_operation("create"):
            content = truncate_content(
                candidate.content.strip(),
                self.settings.max_memory_content_length,
            )
            if not content:
                raise InvalidInputError("Memory content cannot be blank")

            embedding = await self.vectorizer.embed(content)

            async with self._user_lock(user_id):
                duplicates = await self.store.similarity_search(
                    user_id,
                    embedding,
                    threshold=self.settings.dedup_similarity_threshold,
                    limit=1,
                    filters=SearchFilters(),
                )
                if duplicates:
                    existing = duplicates[0]
                    MEMORY_DEDUP_HITS.inc()
                    logger.info(
                        "memory_duplicate_detected",
                        user_id=user_id,
                        existing_id=existing.memory.id,
                        similarity=round(existing.score, 4),
                    )
                    return await self.create_version(
                        existing.memory,
                        MemoryUpdate(
                            content=content,
                            embedding=embedding,
                            tags=candidate.tags,
                            metadata=candidate.metadata,
                            is_static=True if candidate.is_static else None,
                        ),
                    )

                record = MemoryRecord(
                    user_id=user_id,
                    content=content,
                    embedding=embedding,
                    embedding_model=self.vectorizer.model,
                    kind=candidate.kind,
                    is_static=candidate.is_static,
                    tags=list(dict.fromkeys(candidate.tags)),
                    metadata=candidate.metadata,
                    source_chat_id=candidate.source_chat_id,
                    tier=initial_tier(candidate.is_static, candidate.kind),
                    importance=candidate.importance,
                    forget_after=candidate.forget_after,
                )
                record = await self.store.insert(record)
                await self.cache.add(user_id, record)

                logger.info(
                    "memory_created",
                    user_id=user_id,
                    memory_id=record.id,
                    tier=record.tier.value,
                    is_static=record.is_static,
                )
                return record

    async def create_version(
        self,
        existing: Union[MemoryRecord, str],
        update: MemoryUpdate,
    ) -> MemoryRecord:
        """
        Insert the next version of a record and retire the current one.

        Tags are unioned, metadata merged, importance set from the update or
        boosted, and an ``updates`` relation links the new version to the old.
        """
        with track_memory_operation("create_version"):
            if isinstance(existing, str):
                existing = await self._require(existing)
            if not existing.is_latest:
                raise InvariantViolationError(
                    "Cannot version a memory that is no longer latest",
                    {"id": existing.id},
                )
            if existing.is_forgotten:
                raise InvariantViolationError(
                    "Cannot version a forgotten memory",
                    {"id": existing.id},
                )

            content = existing.content
            if update.content is not None:
                content = truncate_content(
                    update.content.strip(),
                    self.settings.max_memory_content_length,
                )
                if not content:
                    raise InvalidInputError("Memory content cannot be blank")

            embedding = update.embedding
            embedding_model = self.vectorizer.model
            if embedding is None:
                if content != existing.content:
                    embedding = await self.vectorizer.embed(content)
                else:
                    embedding = existing.embedding
                    embedding_model = existing.embedding_model

            importance = update.importance
            if importance is None:
                importance = min(
                    self.settings.max_importance,
                    existing.importance + self.settings.version_importance_boost,
                )

            kind = update.kind or existing.kind
            is_static = existing.is_static if update.is_static is None else update.is_static
            tier = MemoryTier.HOT if is_static or kind == MemoryKind.PROFILE else existing.tier

            new_version = MemoryRecord(
                user_id=existing.user_id,
                root_id=existing.root_id,
                parent_id=existing.id,
                version=existing.version + 1,
                content=content,
                embedding=embedding,
                embedding_model=embedding_model,
                kind=kind,
                is_static=is_static,
                tags=_union(existing.tags, update.tags),
                metadata={**existing.metadata, **update.metadata},
                source_chat_id=existing.source_chat_id,
                tier=tier,
                importance=importance,
                access_count=existing.access_count,
                access_velocity=existing.access_velocity,
                last_accessed_at=existing.last_accessed_at,
                last_decayed_at=existing.last_decayed_at,
                forget_after=existing.forget_after,
                source_count=existing.source_count + 1,
            )
            relation = MemoryRelation(
                source_id=new_version.id,
                target_id=existing.id,
                relation_type=RelationType.UPDATES,
                strength=1.0,
            )
            new_version = await self.store.insert_version(existing.id, new_version, relation)
            await self.cache.invalidate(existing.user_id)

            logger.info(
                "memory_version_created",
                user_id=existing.user_id,
                root_id=new_version.root_id,
                memory_id=new_version.id,
                version=new_version.version,
            )
            return new_version

    # =========================================================================
    # Forget and Delete
    # =========================================================================

    async def forget(self, memory_id: str, reason: str = "user_request") -> MemoryRecord:
        """Soft delete: mark forgotten, move to cold, drop from the cache."""
        with track_memory_operation("forget"):
            record = await self._require(memory_id)
            record = await self.store.update(
                memory_id,
                {"is_forgotten": True, "tier": MemoryTier.COLD, "forget_reason": reason},
            )
            await self.cache.remove(record.user_id, memory_id)

            logger.info("memory_forgotten", user_id=record.user_id, memory_id=memory_id, reason=reason)
            return record

    async def delete_by_id(self, memory_id: str) -> int:
        """Hard delete the whole version chain containing ``memory_id``."""
        with track_memory_operation("delete"):
            record = await self._require(memory_id)
            deleted = await self.store.delete_chain(record.root_id)
            await self.cache.invalidate(record.user_id)

            logger.info(
                "memory_chain_deleted",
                user_id=record.user_id,
                root_id=record.root_id,
                deleted=deleted,
            )
            return deleted

    async def delete_all(self, user_id: str) -> int:
        """Hard delete every memory and relation of a user."""
        with track_memory_operation("delete_all"):
            deleted = await self.store.delete_user(user_id)
            await self.cache.invalidate(user_id)
            logger.info("user_memories_deleted", user_id=user_id, deleted=deleted)
            return deleted

    # =========================================================================
    # Consolidation
    # =========================================================================

    def _cluster(
        self,
        records: list[MemoryRecord],
        threshold: float,
    ) -> list[tuple[list[MemoryRecord], float]]:
        """Greedy pairwise clustering; each record joins at most one cluster."""
        clusters: list[tuple[list[MemoryRecord], float]] = []
        clustered: set[str] = set()

        for i, anchor in enumerate(records):
            if anchor.id in clustered:
                continue
            members = [anchor]
            similarities: list[float] = []
            for other in records[i + 1 :]:
                if other.id in clustered:
                    continue
                similarity = cosine_similarity(anchor.embedding, other.embedding)
                if similarity >= threshold:
                    members.append(other)
                    similarities.append(similarity)

            if len(members) >= 2:
                clustered.update(m.id for m in members)
                clusters.append((members, sum(similarities) / len(similarities)))

        return clusters

    def _merge(self, members: list[MemoryRecord], similarity: float) -> MemoryRecord:
        base = max(members, key=lambda m: (m.importance, len(m.content)))
        metadata: dict[str, Any] = {}
        for member in members:
            metadata.update(member.metadata)
        metadata["consolidated_from"] = [m.id for m in members]
        metadata["similarity"] = round(similarity, 4)

        is_static = any(m.is_static for m in members)
        accessed = [m.last_accessed_at for m in members if m.last_accessed_at]

        return MemoryRecord(
            user_id=base.user_id,
            root_id=base.root_id,
            parent_id=base.id,
            version=base.version + 1,
            content=base.content,
            embedding=base.embedding,
            embedding_model=base.embedding_model,
            kind=base.kind,
            is_static=is_static,
            tags=_union(base.tags, *(m.tags for m in members)),
            metadata=metadata,
            source_chat_id=base.source_chat_id,
            tier=MemoryTier.HOT if is_static or base.kind == MemoryKind.PROFILE else base.tier,
            importance=max(m.importance for m in members),
            access_count=sum(m.access_count for m in members),
            access_velocity=max(m.access_velocity for m in members),
            last_accessed_at=max(accessed) if accessed else None,
            last_decayed_at=base.last_decayed_at,
            source_count=sum(m.source_count for m in members),
        )

    async def consolidate(
        self,
        user_id: str,
        similarity_threshold: Optional[float] = None,
        max_batch: Optional[int] = None,
        dry_run: bool = False,
    ) -> ConsolidationResult:
        """
        Merge clusters of near-duplicate active records.

        Only records that survived dedup on write are considered. The merged
        record continues the chain of its base member (highest importance,
        then longest content); the other members' chains are folded into it.
        """
        threshold = similarity_threshold or self.settings.consolidation_similarity_threshold
        batch = max_batch or self.settings.consolidation_max_batch

        with track_memory_operation("consolidate"):
            records = await self.store.list_memories(user_id, SearchFilters(), limit=batch)
            records = [r for r in records if r.embedding]

            result = ConsolidationResult(dry_run=dry_run)
            for members, similarity in self._cluster(records, threshold):
                base = max(members, key=lambda m: (m.importance, len(m.content)))
                result.candidates.append(
                    ConsolidationCandidate(
                        memory_ids=[m.id for m in members],
                        similarity=similarity,
                        merged_content=base.content,
                    )
                )
                if dry_run:
                    continue

                merged = self._merge(members, similarity)
                relations = [
                    MemoryRelation(
                        source_id=merged.id,
                        target_id=member.id,
                        relation_type=RelationType.DERIVES,
                        strength=min(1.0, similarity),
                    )
                    for member in members
                ]
                merged = await self.store.replace_with_merged(
                    [m.id for m in members], merged, relations
                )
                result.merged_ids.append(merged.id)

            if result.merged_ids:
                await self.cache.invalidate(user_id)

            logger.info(
                "memories_consolidated",
                user_id=user_id,
                candidates=len(result.candidates),
                merged=result.consolidated_count,
                dry_run=dry_run,
            )
            return result

    # =========================================================================
    # Tiers, Decay, Access
    # =========================================================================

    def compute_tier(self, record: MemoryRecord, now: datetime) -> MemoryTier:
        s = self.settings
        if record.always_hot:
            return MemoryTier.HOT
        if record.access_velocity >= s.tier_hot_velocity and record.importance >= s.tier_hot_min_importance:
            return MemoryTier.HOT
        last_access = record.last_accessed_at or record.created_at
        inactive_days = (now - last_access).total_seconds() / 86400
        if inactive_days > s.tier_cold_inactive_days or record.access_velocity < s.tier_cold_velocity:
            return MemoryTier.COLD
        return MemoryTier.WARM

    async def update_tiers(self, user_id: str, now: Optional[datetime] = None) -> TierUpdateStats:
        """Recompute the tier of every active record in one batch write."""
        now = now or utcnow()
        with track_memory_operation("update_tiers"):
            stats = TierUpdateStats()
            changes: dict[str, dict[str, Any]] = {}

            for record in await self.store.list_memories(user_id, SearchFilters()):
                tier = self.compute_tier(record, now)
                if tier == record.tier:
                    continue
                changes[record.id] = {"tier": tier}
                if tier == MemoryTier.HOT:
                    stats.promoted_to_hot += 1
                elif tier == MemoryTier.WARM:
                    stats.demoted_to_warm += 1
                else:
                    stats.demoted_to_cold += 1

            if changes:
                await self.store.batch_update(changes)
                await self.cache.invalidate(user_id)

            logger.info(
                "memory_tiers_updated",
                user_id=user_id,
                promoted_to_hot=stats.promoted_to_hot,
                demoted_to_warm=stats.demoted_to_warm,
                demoted_to_cold=stats.demoted_to_cold,
            )
            return stats

    async def apply_decay(self, user_id: str, now: Optional[datetime] = None) -> int:
        """Decay importance for whole days elapsed; safe to call repeatedly."""
        with track_memory_operation("apply_decay"):
            changed = await self.store.apply_decay(
                user_id,
                daily_rate=self.settings.decay_daily_rate,
                min_importance=self.settings.decay_min_importance,
                now=now,
            )
            if changed:
                await self.cache.invalidate(user_id)
            logger.info("memory_decay_applied", user_id=user_id, changed=changed)
            return changed

    async def record_access(self, memory_id: str, now: Optional[datetime] = None) -> MemoryRecord:
        validate_memory_id(memory_id)
        record = await self.store.increment_access(
            memory_id,
            boost=self.settings.access_boost,
            max_importance=self.settings.max_importance,
            now=now,
        )
        await self.cache.update(record.user_id, record)
        return record

    async def process_expired(self, user_id: str, now: Optional[datetime] = None) -> list[str]:
        """Forget records whose ``forget_after`` has passed."""
        with track_memory_operation("process_expired"):
            expired = await self.store.forget_expired(user_id, TTL_FORGET_REASON, now)
            for memory_id in expired:
                await self.cache.remove(user_id, memory_id)
            if expired:
                logger.info("memories_expired", user_id=user_id, count=len(expired))
            return expired

    # =========================================================================
    # Reads
    # =========================================================================

    async def get(self, memory_id: str) -> MemoryRecord:
        return await self._require(memory_id)

    async def list_memories(
        self,
        user_id: str,
        filters: Optional[SearchFilters] = None,
        limit: Optional[int] = None,
    ) -> list[MemoryRecord]:
        return await self.store.list_memories(user_id, filters, limit)

    async def get_history(self, memory_id: str) -> list[MemoryRecord]:
        """Every version in the chain containing ``memory_id``, oldest first."""
        record = await self._require(memory_id)
        return await self.store.get_chain(record.root_id)

    async def get_relations(self, memory_id: str) -> list[MemoryRelation]:
        await self._require(memory_id)
        return await self.store.get_relations(memory_id)

    async def get_stats(self, user_id: str) -> MemoryStats:
        records = await self.store.list_memories(user_id, SearchFilters(include_forgotten=True))
        stats = MemoryStats(total=len(records))
        for record in records:
            setattr(stats, record.tier.value, getattr(stats, record.tier.value) + 1)
            stats.by_kind[record.kind.value] = stats.by_kind.get(record.kind.value, 0) + 1
            stats.static += int(record.is_static)
            stats.forgotten += int(record.is_forgotten)
        if records:
            stats.avg_importance = sum(r.importance for r in records) / len(records)
            stats.avg_access_velocity = sum(r.access_velocity for r in records) / len(records)
        return stats

    async def warm_cache(self, user_id: str) -> list[MemoryRecord]:
        """Load a user's hot and warm records into the hot cache."""
        records = await self.store.list_memories(
            user_id,
            SearchFilters(tiers=[MemoryTier.HOT, MemoryTier.WARM]),
        )
        return await self.cache.load(user_id, records)

    async def list_user_ids(self) -> list[str]:
        return await self.store.list_user_ids()
