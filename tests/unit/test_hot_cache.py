"""Unit tests for the hot cache."""

import pytest

from mnemos.memory.hot_cache import (
    HotCache,
    hot_score,
    qualifies_for_hot_tier,
    select_hot_memories,
)
from mnemos.models.memory import MemoryKind, MemoryTier


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def hot_cache(clock):
    return HotCache(max_per_user=3, global_max=2, ttl_seconds=60, clock=clock)


class TestScoring:
    """Hot score and hot-tier eligibility."""

    def test_hot_score_rewards_velocity(self, record_factory):
        idle = record_factory(importance=0.5)
        busy = record_factory(importance=0.5, access_velocity=1.0)

        assert hot_score(idle) == pytest.approx(0.5)
        assert hot_score(busy) == pytest.approx(1.0)

    def test_select_skips_inactive_and_limits(self, record_factory):
        records = [
            record_factory("a", importance=0.9),
            record_factory("b", importance=0.8, is_forgotten=True, tier=MemoryTier.COLD),
            record_factory("c", importance=0.7),
            record_factory("d", importance=0.1),
        ]

        selected = select_hot_memories(records, limit=2)

        assert [r.content for r in selected] == ["a", "c"]

    def test_static_and_profile_always_qualify(self, record_factory):
        assert qualifies_for_hot_tier(record_factory(is_static=True, importance=0.1))
        assert qualifies_for_hot_tier(record_factory(kind=MemoryKind.PROFILE, importance=0.1))

    def test_dynamic_needs_velocity_and_importance(self, record_factory):
        assert not qualifies_for_hot_tier(record_factory(importance=0.9, access_velocity=0.2))
        assert not qualifies_for_hot_tier(record_factory(importance=0.3, access_velocity=0.9))
        assert qualifies_for_hot_tier(record_factory(importance=0.6, access_velocity=0.6))


class TestLoadAndGet:
    """Reads, misses and expiry."""

    @pytest.mark.asyncio
    async def test_miss_returns_none(self, hot_cache):
        assert await hot_cache.get("nobody") is None
        assert hot_cache.stats()["misses"] == 1

    @pytest.mark.asyncio
    async def test_load_keeps_top_records(self, hot_cache, record_factory, user_id):
        records = [record_factory(str(i), importance=i / 10) for i in range(1, 6)]

        loaded = await hot_cache.load(user_id, records)

        assert [r.content for r in loaded] == ["5", "4", "3"]
        assert [r.content for r in await hot_cache.get(user_id)] == ["5", "4", "3"]
        assert hot_cache.stats()["hits"] == 1

    @pytest.mark.asyncio
    async def test_entry_expires_after_ttl(self, hot_cache, clock, record_factory, user_id):
        await hot_cache.load(user_id, [record_factory()])

        clock.advance(59)
        assert await hot_cache.get(user_id) is not None

        clock.advance(1)
        assert await hot_cache.get(user_id) is None
        assert hot_cache.stats()["evictions"] == 1

    @pytest.mark.asyncio
    async def test_reads_do_not_extend_ttl(self, hot_cache, clock, record_factory, user_id):
        await hot_cache.load(user_id, [record_factory()])

        clock.advance(40)
        await hot_cache.get(user_id)
        clock.advance(30)

        assert await hot_cache.get(user_id) is None

    @pytest.mark.asyncio
    async def test_capacity_evicts_least_recently_read(self, hot_cache, clock, record_factory):
        await hot_cache.load("u1", [record_factory(user_id="u1")])
        clock.advance(1)
        await hot_cache.load("u2", [record_factory(user_id="u2")])
        clock.advance(1)
        await hot_cache.get("u1")
        clock.advance(1)

        await hot_cache.load("u3", [record_factory(user_id="u3")])

        assert await hot_cache.contains("u1")
        assert not await hot_cache.contains("u2")
        assert await hot_cache.contains("u3")

    @pytest.mark.asyncio
    async def test_get_filtered(self, hot_cache, record_factory, user_id):
        await hot_cache.load(
            user_id,
            [
                record_factory("static", importance=0.9, is_static=True),
                record_factory("dynamic", importance=0.8),
                record_factory("weak", importance=0.2, is_static=True),
            ],
        )

        static = await hot_cache.get_filtered(user_id, static_only=True)
        strong = await hot_cache.get_filtered(user_id, min_importance=0.5, limit=1)

        assert [r.content for r in static] == ["static", "weak"]
        assert [r.content for r in strong] == ["static"]
        assert await hot_cache.get_filtered("nobody") is None

    @pytest.mark.asyncio
    async def test_contains_does_not_count_as_read(self, hot_cache, record_factory, user_id):
        await hot_cache.load(user_id, [record_factory()])

        assert await hot_cache.contains(user_id)
        assert hot_cache.stats()["hits"] == 0


class TestIncrementalUpdates:
    """add / update / remove / invalidate."""

    @pytest.mark.asyncio
    async def test_add_is_noop_on_miss(self, hot_cache, record_factory, user_id):
        assert await hot_cache.add(user_id, record_factory()) is False
        assert not await hot_cache.contains(user_id)

    @pytest.mark.asyncio
    async def test_add_replaces_same_chain(self, hot_cache, record_factory, user_id):
        original = record_factory("v1", importance=0.5)
        await hot_cache.load(user_id, [original])
        successor = record_factory(
            "v2", importance=0.6, root_id=original.root_id, parent_id=original.id, version=2
        )

        assert await hot_cache.add(user_id, successor) is True

        cached = await hot_cache.get(user_id)
        assert [r.content for r in cached] == ["v2"]

    @pytest.mark.asyncio
    async def test_add_below_cutoff_is_dropped(self, hot_cache, record_factory, user_id):
        await hot_cache.load(user_id, [record_factory(str(i), importance=0.9) for i in range(3)])

        assert await hot_cache.add(user_id, record_factory("weak", importance=0.1)) is False
        assert len(await hot_cache.get(user_id)) == 3

    @pytest.mark.asyncio
    async def test_update_drops_forgotten_record(self, hot_cache, record_factory, user_id):
        record = record_factory()
        await hot_cache.load(user_id, [record])
        forgotten = record.model_copy(update={"is_forgotten": True, "tier": MemoryTier.COLD})

        assert await hot_cache.update(user_id, forgotten) is True
        assert await hot_cache.get(user_id) == []

    @pytest.mark.asyncio
    async def test_update_reorders(self, hot_cache, record_factory, user_id):
        a = record_factory("a", importance=0.9)
        b = record_factory("b", importance=0.5)
        await hot_cache.load(user_id, [a, b])

        await hot_cache.update(user_id, b.model_copy(update={"access_velocity": 1.0}))

        assert [r.content for r in await hot_cache.get(user_id)] == ["b", "a"]

    @pytest.mark.asyncio
    async def test_remove(self, hot_cache, record_factory, user_id):
        record = record_factory()
        await hot_cache.load(user_id, [record])

        assert await hot_cache.remove(user_id, record.id) is True
        assert await hot_cache.remove(user_id, record.id) is False

    @pytest.mark.asyncio
    async def test_invalidate(self, hot_cache, record_factory, user_id):
        await hot_cache.load(user_id, [record_factory()])

        assert await hot_cache.invalidate(user_id) is True
        assert await hot_cache.invalidate(user_id) is False
        assert await hot_cache.get(user_id) is None

    @pytest.mark.asyncio
    async def test_invalidate_all(self, hot_cache, record_factory):
        await hot_cache.load("u1", [record_factory(user_id="u1")])
        await hot_cache.load("u2", [record_factory(user_id="u2")])

        assert await hot_cache.invalidate_all() == 2
        assert hot_cache.stats()["users"] == 0


class TestSweep:
    """Background expiry."""

    @pytest.mark.asyncio
    async def test_sweep_evicts_expired_only(self, hot_cache, clock, record_factory):
        await hot_cache.load("u1", [record_factory(user_id="u1")])
        clock.advance(30)
        await hot_cache.load("u2", [record_factory(user_id="u2")])
        clock.advance(31)

        assert await hot_cache.sweep() == 1
        assert not await hot_cache.contains("u1")
        assert await hot_cache.contains("u2")

    @pytest.mark.asyncio
    async def test_start_and_stop(self, hot_cache):
        await hot_cache.start()
        assert hot_cache.is_running

        await hot_cache.stop()
        assert not hot_cache.is_running

    @pytest.mark.asyncio
    async def test_stats_shape(self, hot_cache, record_factory, user_id):
        await hot_cache.load(user_id, [record_factory("a"), record_factory("b")])
        await hot_cache.get(user_id)
        await hot_cache.get("nobody")

        stats = hot_cache.stats()

        assert stats["users"] == 1
        assert stats["memories"] == 2
        assert stats["hit_rate"] == pytest.approx(0.5)
