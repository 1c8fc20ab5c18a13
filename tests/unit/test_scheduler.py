"""Unit tests for the maintenance scheduler."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from mnemos.models.memory import MemoryCandidate, MemoryTier, TierUpdateStats
from mnemos.scheduler.maintenance import MaintenanceScheduler


class TestRunNow:
    """Immediate job runs across users."""

    @pytest.mark.asyncio
    async def test_decay_over_all_users(self, manager, store, record_factory, settings):
        now = datetime.now(timezone.utc)
        for user in ("u1", "u2"):
            await store.insert(record_factory(user_id=user, created_at=now - timedelta(days=2)))
        scheduler = MaintenanceScheduler(manager, settings)

        summary = await scheduler.run_now("decay", now=now)

        assert summary["job"] == "decay"
        assert summary["users"] == 2
        assert summary["changed"] == 2
        assert summary["failures"] == 0

    @pytest.mark.asyncio
    async def test_repeat_run_is_idempotent(self, manager, store, record_factory, settings):
        now = datetime.now(timezone.utc)
        await store.insert(record_factory(created_at=now - timedelta(days=2)))
        scheduler = MaintenanceScheduler(manager, settings)

        await scheduler.run_now("decay", now=now)
        summary = await scheduler.run_now("decay", now=now)

        assert summary["changed"] == 0

    @pytest.mark.asyncio
    async def test_tiers_job(self, manager, store, record_factory, settings, user_id):
        record = await store.insert(record_factory())
        scheduler = MaintenanceScheduler(manager, settings)

        summary = await scheduler.run_now("tiers")

        assert summary["changed"] == 1
        assert (await store.get(record.id)).tier == MemoryTier.COLD

    @pytest.mark.asyncio
    async def test_expiry_job(self, manager, settings, user_id):
        past = datetime.now(timezone.utc) - timedelta(hours=1)
        await manager.create(user_id, MemoryCandidate(content="Call at noon", forget_after=past))
        scheduler = MaintenanceScheduler(manager, settings)

        summary = await scheduler.run_now("expiry")

        assert summary["changed"] == 1

    @pytest.mark.asyncio
    async def test_one_user_failure_does_not_stop_others(self, settings):
        manager = MagicMock()
        manager.list_user_ids = AsyncMock(return_value=["u1", "u2", "u3"])
        manager.update_tiers = AsyncMock(
            side_effect=[
                TierUpdateStats(promoted_to_hot=1),
                RuntimeError("store down"),
                TierUpdateStats(demoted_to_cold=2),
            ]
        )
        scheduler = MaintenanceScheduler(manager, settings)

        summary = await scheduler.run_now("tiers")

        assert summary["users"] == 3
        assert summary["changed"] == 3
        assert summary["failures"] == 1

    @pytest.mark.asyncio
    async def test_unknown_job(self, manager, settings):
        with pytest.raises(ValueError):
            await MaintenanceScheduler(manager, settings).run_now("vacuum")


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_registers_jobs(self, manager, settings):
        scheduler = MaintenanceScheduler(manager, settings)

        await scheduler.start()
        try:
            assert scheduler.is_running
            assert sorted(scheduler.job_ids()) == [
                "maintenance_decay",
                "maintenance_expiry",
                "maintenance_tiers",
            ]
        finally:
            await scheduler.stop()

        assert not scheduler.is_running
        assert scheduler.job_ids() == []

    @pytest.mark.asyncio
    async def test_stop_when_not_running(self, manager, settings):
        scheduler = MaintenanceScheduler(manager, settings)

        await scheduler.stop()

        assert not scheduler.is_running
