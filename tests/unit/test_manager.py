"""Unit tests for the memory lifecycle manager."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from mnemos.core.exceptions import (
    DependencyFailureError,
    InvalidInputError,
    InvariantViolationError,
    NotFoundError,
)
from mnemos.memory.manager import MemoryManager, validate_memory_id
from mnemos.memory.store import InMemoryTieredStore
from mnemos.models.memory import (
    MemoryCandidate,
    MemoryKind,
    MemoryTier,
    MemoryUpdate,
    RelationType,
    SearchFilters,
)

MISSING_ID = "00000000-0000-0000-0000-000000000000"


class TestCreate:
    """Create with dedup on write."""

    @pytest.mark.asyncio
    async def test_create_then_get(self, manager, user_id):
        record = await manager.create(user_id, MemoryCandidate(content="User is VP of Finance"))

        fetched = await manager.get(record.id)

        assert fetched.content == "User is VP of Finance"
        assert fetched.tier == MemoryTier.WARM
        assert fetched.version == 1
        assert fetched.embedding_model == "fake-embed-v1"

    @pytest.mark.asyncio
    async def test_static_and_profile_start_hot(self, manager, user_id):
        static = await manager.create(user_id, MemoryCandidate(content="Lives in Boston", is_static=True))
        profile = await manager.create(
            user_id, MemoryCandidate(content="Speaks French", kind=MemoryKind.PROFILE)
        )

        assert static.tier == MemoryTier.HOT
        assert profile.tier == MemoryTier.HOT

    @pytest.mark.asyncio
    async def test_near_duplicate_creates_version(self, manager, user_id):
        """A second write of the same fact versions the first instead of duplicating it."""
        first = await manager.create(
            user_id, MemoryCandidate(content="User is VP of Finance", tags=["work"], importance=0.5)
        )

        second = await manager.create(
            user_id, MemoryCandidate(content="user is vp of finance.", tags=["role"])
        )

        assert second.version == 2
        assert second.root_id == first.root_id
        assert second.parent_id == first.id
        assert second.tags == ["work", "role"]
        assert second.importance == pytest.approx(0.6)
        assert second.source_count == 2
        assert (await manager.get(first.id)).is_latest is False

        latest = await manager.list_memories(user_id)
        assert [r.id for r in latest] == [second.id]

        relations = await manager.get_relations(first.id)
        assert [r.relation_type for r in relations] == [RelationType.UPDATES]

    @pytest.mark.asyncio
    async def test_distinct_facts_do_not_dedup(self, manager, user_id):
        await manager.create(user_id, MemoryCandidate(content="User is VP of Finance"))
        await manager.create(user_id, MemoryCandidate(content="User enjoys hiking on weekends"))

        assert len(await manager.list_memories(user_id)) == 2

    @pytest.mark.asyncio
    async def test_content_is_truncated(self, manager, user_id):
        record = await manager.create(user_id, MemoryCandidate(content="word " * 200))

        assert len(record.content) <= 500

    @pytest.mark.asyncio
    async def test_blank_content_rejected(self, manager, user_id):
        with pytest.raises(InvalidInputError):
            await manager.create(user_id, MemoryCandidate(content="   "))

    @pytest.mark.asyncio
    async def test_embedding_failure_propagates(self, store, cache, settings, user_id):
        """Nothing is stored when the vectorizer fails."""
        vectorizer = AsyncMock()
        vectorizer.model = "broken"
        vectorizer.embed.side_effect = DependencyFailureError("embeddings", "unavailable")
        manager = MemoryManager(store, vectorizer, cache, settings)

        with pytest.raises(DependencyFailureError):
            await manager.create(user_id, MemoryCandidate(content="User is VP of Finance"))

        assert await store.list_memories(user_id) == []

    @pytest.mark.asyncio
    async def test_store_failure_during_dedup_propagates(self, vectorizer, cache, settings, user_id):
        store = AsyncMock()
        store.similarity_search.side_effect = DependencyFailureError("store", "down")
        manager = MemoryManager(store, vectorizer, cache, settings)

        with pytest.raises(DependencyFailureError):
            await manager.create(user_id, MemoryCandidate(content="User is VP of Finance"))

        store.insert.assert_not_called()

    @pytest.mark.asyncio
    async def test_create_adds_to_loaded_cache(self, manager, cache, user_id):
        await cache.load(user_id, [])

        record = await manager.create(user_id, MemoryCandidate(content="User is VP of Finance"))

        assert [r.id for r in await cache.get(user_id)] == [record.id]

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_share_one_chain(self, vectorizer, cache, settings, user_id):
        """A slow dedup lookup must not let two near duplicates both insert."""

        class SlowSearchStore(InMemoryTieredStore):
            async def similarity_search(self, *args, **kwargs):
                await asyncio.sleep(0.01)
                return await super().similarity_search(*args, **kwargs)

        store = SlowSearchStore()
        manager = MemoryManager(store, vectorizer, cache, settings)

        first, second = await asyncio.gather(
            manager.create(user_id, MemoryCandidate(content="User lives in Berlin")),
            manager.create(user_id, MemoryCandidate(content="user lives in Berlin.")),
        )

        assert first.root_id == second.root_id
        assert len(await manager.list_memories(user_id)) == 1
        history = await manager.get_history(second.id)
        assert [r.version for r in history] == [1, 2]
        assert [r.is_latest for r in history] == [False, True]


class TestVersioning:
    """Explicit version creation."""

    @pytest.mark.asyncio
    async def test_create_version_by_id(self, manager, vectorizer, user_id):
        original = await manager.create(
            user_id, MemoryCandidate(content="User is VP of Finance", metadata={"source": "chat"})
        )
        vectorizer.calls.clear()

        new = await manager.create_version(
            original.id,
            MemoryUpdate(content="User is CFO", importance=0.9, metadata={"confirmed": True}),
        )

        assert new.content == "User is CFO"
        assert new.importance == 0.9
        assert new.metadata == {"source": "chat", "confirmed": True}
        assert vectorizer.calls == ["User is CFO"]

    @pytest.mark.asyncio
    async def test_same_content_reuses_embedding(self, manager, vectorizer, user_id):
        original = await manager.create(user_id, MemoryCandidate(content="User is VP of Finance"))
        vectorizer.calls.clear()

        new = await manager.create_version(original.id, MemoryUpdate(tags=["confirmed"]))

        assert vectorizer.calls == []
        assert new.embedding == original.embedding

    @pytest.mark.asyncio
    async def test_history_lists_all_versions(self, manager, user_id):
        original = await manager.create(user_id, MemoryCandidate(content="v1 fact"))
        v2 = await manager.create_version(original.id, MemoryUpdate(content="v2 fact"))
        await manager.create_version(v2.id, MemoryUpdate(content="v3 fact"))

        history = await manager.get_history(original.id)

        assert [r.content for r in history] == ["v1 fact", "v2 fact", "v3 fact"]

    @pytest.mark.asyncio
    async def test_versioning_invalidates_cache(self, manager, cache, user_id):
        original = await manager.create(user_id, MemoryCandidate(content="User is VP of Finance"))
        await manager.warm_cache(user_id)

        await manager.create_version(original.id, MemoryUpdate(content="User is CFO"))

        assert await cache.get(user_id) is None

    @pytest.mark.asyncio
    async def test_forgotten_memory_cannot_be_versioned(self, manager, user_id):
        record = await manager.create(user_id, MemoryCandidate(content="User is VP of Finance"))
        await manager.forget(record.id)

        with pytest.raises(InvariantViolationError):
            await manager.create_version(record.id, MemoryUpdate(content="User is CFO"))

        history = await manager.get_history(record.id)
        assert len(history) == 1
        assert history[0].is_forgotten is True
        assert await manager.list_memories(user_id) == []


class TestForgetAndDelete:
    """Soft and hard deletes."""

    @pytest.mark.asyncio
    async def test_forget_moves_to_cold(self, manager, cache, user_id):
        record = await manager.create(user_id, MemoryCandidate(content="User is VP of Finance"))
        await manager.warm_cache(user_id)

        forgotten = await manager.forget(record.id, reason="outdated")

        assert forgotten.is_forgotten is True
        assert forgotten.tier == MemoryTier.COLD
        assert forgotten.forget_reason == "outdated"
        assert await cache.get(user_id) == []
        assert await manager.list_memories(user_id) == []

    @pytest.mark.asyncio
    async def test_forget_unknown_id(self, manager):
        with pytest.raises(NotFoundError):
            await manager.forget(MISSING_ID)

    @pytest.mark.asyncio
    async def test_malformed_id_rejected(self, manager):
        with pytest.raises(InvalidInputError):
            await manager.get("not-a-uuid")

    def test_validate_memory_id_accepts_uuid(self):
        assert validate_memory_id(MISSING_ID) == MISSING_ID

    @pytest.mark.asyncio
    async def test_delete_by_id_removes_chain(self, manager, user_id):
        original = await manager.create(user_id, MemoryCandidate(content="v1 fact"))
        v2 = await manager.create_version(original.id, MemoryUpdate(content="v2 fact"))

        assert await manager.delete_by_id(v2.id) == 2

        with pytest.raises(NotFoundError):
            await manager.get(original.id)

    @pytest.mark.asyncio
    async def test_delete_all(self, manager, user_id):
        await manager.create(user_id, MemoryCandidate(content="User is VP of Finance"))
        await manager.create(user_id, MemoryCandidate(content="User enjoys hiking"))

        assert await manager.delete_all(user_id) == 2
        assert await manager.list_memories(user_id) == []


class TestConsolidation:
    """Merging near duplicates that slipped past dedup."""

    @pytest.mark.asyncio
    async def test_consolidate_merges_cluster(self, manager, store, record_factory, user_id):
        a = await store.insert(record_factory("User likes green tea", importance=0.4, tags=["drink"]))
        b = await store.insert(record_factory("user likes GREEN tea!", importance=0.7, tags=["pref"]))
        other = await store.insert(record_factory("User works in Berlin"))

        result = await manager.consolidate(user_id)

        assert len(result.candidates) == 1
        assert set(result.candidates[0].memory_ids) == {a.id, b.id}
        assert len(result.merged_ids) == 1

        merged = await manager.get(result.merged_ids[0])
        assert merged.content == "user likes GREEN tea!"
        assert merged.importance == 0.7
        assert set(merged.tags) == {"drink", "pref"}
        assert merged.source_count == 2

        latest = {r.id for r in await manager.list_memories(user_id)}
        assert latest == {merged.id, other.id}

        relations = await manager.get_relations(merged.id)
        assert {r.relation_type for r in relations} == {RelationType.DERIVES}

    @pytest.mark.asyncio
    async def test_consolidated_chain_versions_increase(self, manager, store, record_factory, user_id):
        await store.insert(record_factory("User likes green tea", importance=0.4))
        await store.insert(record_factory("user likes GREEN tea!", importance=0.7))

        result = await manager.consolidate(user_id)

        merged = await manager.get(result.merged_ids[0])
        chain = await store.get_chain(merged.root_id)
        assert [r.version for r in chain] == [1, 2, 3]
        assert [r.id for r in chain if r.is_latest] == [merged.id]
        assert merged.version == 3

    @pytest.mark.asyncio
    async def test_dry_run_changes_nothing(self, manager, store, record_factory, user_id):
        await store.insert(record_factory("User likes green tea"))
        await store.insert(record_factory("user likes green tea."))

        result = await manager.consolidate(user_id, dry_run=True)

        assert result.dry_run is True
        assert len(result.candidates) == 1
        assert result.merged_ids == []
        assert len(await manager.list_memories(user_id)) == 2


class TestTiersDecayAccess:
    """Background maintenance operations."""

    @pytest.mark.asyncio
    async def test_compute_tier(self, manager, record_factory):
        now = datetime.now(timezone.utc)

        assert manager.compute_tier(record_factory(is_static=True), now) == MemoryTier.HOT
        assert manager.compute_tier(
            record_factory(importance=0.8, access_velocity=0.6), now
        ) == MemoryTier.HOT
        assert manager.compute_tier(
            record_factory(importance=0.3, access_velocity=0.3, last_accessed_at=now), now
        ) == MemoryTier.WARM
        assert manager.compute_tier(record_factory(access_velocity=0.05), now) == MemoryTier.COLD
        assert manager.compute_tier(
            record_factory(access_velocity=0.3, last_accessed_at=now - timedelta(days=45)), now
        ) == MemoryTier.COLD

    @pytest.mark.asyncio
    async def test_update_tiers(self, manager, store, record_factory, user_id):
        now = datetime.now(timezone.utc)
        busy = await store.insert(
            record_factory("busy fact", importance=0.8, access_velocity=0.9, last_accessed_at=now)
        )
        idle = await store.insert(record_factory("idle fact"))
        static = await store.insert(record_factory("static fact", is_static=True, tier=MemoryTier.HOT))

        stats = await manager.update_tiers(user_id, now=now)

        assert stats.promoted_to_hot == 1
        assert stats.demoted_to_cold == 1
        assert stats.changed == 2
        assert (await manager.get(busy.id)).tier == MemoryTier.HOT
        assert (await manager.get(idle.id)).tier == MemoryTier.COLD
        assert (await manager.get(static.id)).tier == MemoryTier.HOT

    @pytest.mark.asyncio
    async def test_apply_decay(self, manager, store, record_factory, user_id):
        now = datetime.now(timezone.utc)
        record = await store.insert(record_factory(created_at=now - timedelta(days=2, hours=2)))

        assert await manager.apply_decay(user_id, now=now) == 1
        assert await manager.apply_decay(user_id, now=now) == 0
        assert (await manager.get(record.id)).importance == pytest.approx(0.5 * 0.99**2)

    @pytest.mark.asyncio
    async def test_record_access_updates_cache(self, manager, cache, user_id):
        record = await manager.create(user_id, MemoryCandidate(content="User is VP of Finance"))
        await manager.warm_cache(user_id)

        accessed = await manager.record_access(record.id)

        assert accessed.access_count == 1
        assert accessed.importance == pytest.approx(0.55)
        cached = await cache.get(user_id)
        assert cached[0].access_count == 1

    @pytest.mark.asyncio
    async def test_process_expired(self, manager, user_id):
        past = datetime.now(timezone.utc) - timedelta(minutes=5)
        record = await manager.create(
            user_id, MemoryCandidate(content="Meeting at noon", forget_after=past)
        )

        expired = await manager.process_expired(user_id)

        assert expired == [record.id]
        forgotten = await manager.get(record.id)
        assert forgotten.is_forgotten is True
        assert forgotten.forget_reason == "TTL expired"


class TestReads:
    """Stats and cache warming."""

    @pytest.mark.asyncio
    async def test_stats(self, manager, user_id):
        await manager.create(user_id, MemoryCandidate(content="User is VP of Finance", is_static=True))
        hiking = await manager.create(user_id, MemoryCandidate(content="User enjoys hiking"))
        await manager.forget(hiking.id)

        stats = await manager.get_stats(user_id)

        assert stats.total == 2
        assert stats.hot == 1
        assert stats.cold == 1
        assert stats.static == 1
        assert stats.forgotten == 1
        assert stats.by_kind == {"semantic": 2}

    @pytest.mark.asyncio
    async def test_warm_cache_skips_cold(self, manager, store, record_factory, user_id):
        await store.insert(record_factory("warm fact"))
        await store.insert(record_factory("cold fact", tier=MemoryTier.COLD))

        loaded = await manager.warm_cache(user_id)

        assert [r.content for r in loaded] == ["warm fact"]

    @pytest.mark.asyncio
    async def test_list_with_filters(self, manager, user_id):
        await manager.create(user_id, MemoryCandidate(content="User is VP of Finance", is_static=True))
        await manager.create(user_id, MemoryCandidate(content="User enjoys hiking"))

        static = await manager.list_memories(user_id, SearchFilters(static_only=True))

        assert [r.content for r in static] == ["User is VP of Finance"]
