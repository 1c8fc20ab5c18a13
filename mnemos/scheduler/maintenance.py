"""Background maintenance for the tiered memory store.

Runs three jobs over every user known to the store:
- decay: daily at ``decay_hour_utc``, lowers importance of idle memories
- tiers: every ``tier_update_interval_minutes``, recomputes hot/warm/cold
- expiry: every ``expiry_interval_minutes``, forgets memories past forget_after

Each job is idempotent, so a missed or repeated run is harmless.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Literal, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from mnemos.config.settings import Settings, get_settings
from mnemos.memory.manager import MemoryManager

logger = structlog.get_logger(__name__)

JobName = Literal["decay", "tiers", "expiry"]
JOB_NAMES: tuple[JobName, ...] = ("decay", "tiers", "expiry")


class MaintenanceScheduler:
    """Scheduler for memory maintenance jobs.

    Example:
        scheduler = MaintenanceScheduler(manager)
        await scheduler.start()

        # Trigger immediate run
        summary = await scheduler.run_now("decay")

        await scheduler.stop()
    """

    def __init__(self, manager: MemoryManager, settings: Optional[Settings] = None):
        self.manager = manager
        self.settings = settings or get_settings()
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._is_running = False

        self._jobs: dict[JobName, Callable[[str, datetime], Awaitable[Any]]] = {
            "decay": self._decay_user,
            "tiers": self._tiers_user,
            "expiry": self._expiry_user,
        }

    @property
    def is_running(self) -> bool:
        """Check if the scheduler is currently running."""
        return self._is_running

    def job_ids(self) -> list[str]:
        if not self._scheduler:
            return []
        return [job.id for job in self._scheduler.get_jobs()]

    async def start(self) -> None:
        """Start APScheduler and register the maintenance jobs."""
        if self._is_running:
            logger.warning("scheduler_already_running")
            return

        s = self.settings
        self._scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self._scheduler.add_job(
            self.run_now,
            trigger=CronTrigger(hour=s.decay_hour_utc, minute=0, timezone=timezone.utc),
            id="maintenance_decay",
            args=["decay"],
            name="Mnemos: importance decay",
            replace_existing=True,
            coalesce=True,
        )
        self._scheduler.add_job(
            self.run_now,
            trigger=IntervalTrigger(minutes=s.tier_update_interval_minutes),
            id="maintenance_tiers",
            args=["tiers"],
            name="Mnemos: tier update",
            replace_existing=True,
            coalesce=True,
        )
        self._scheduler.add_job(
            self.run_now,
            trigger=IntervalTrigger(minutes=s.expiry_interval_minutes),
            id="maintenance_expiry",
            args=["expiry"],
            name="Mnemos: expiry",
            replace_existing=True,
            coalesce=True,
        )
        self._scheduler.start()

        self._is_running = True
        logger.info(
            "scheduler_started",
            decay_hour_utc=s.decay_hour_utc,
            tier_interval_minutes=s.tier_update_interval_minutes,
            expiry_interval_minutes=s.expiry_interval_minutes,
        )

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self._is_running:
            logger.warning("scheduler_not_running")
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None

        self._is_running = False
        logger.info("scheduler_stopped")

    async def _decay_user(self, user_id: str, now: datetime) -> int:
        return await self.manager.apply_decay(user_id, now=now)

    async def _tiers_user(self, user_id: str, now: datetime) -> int:
        stats = await self.manager.update_tiers(user_id, now=now)
        return stats.changed

    async def _expiry_user(self, user_id: str, now: datetime) -> int:
        return len(await self.manager.process_expired(user_id, now=now))

    async def run_now(self, job: JobName, now: Optional[datetime] = None) -> dict[str, Any]:
        """Run one maintenance job for every known user.

        A failure for one user is logged and counted; the remaining users
        are still processed.

        Returns:
            Summary with users processed, records changed and failures.

        Raises:
            ValueError: If ``job`` is not a known job name.
        """
        if job not in self._jobs:
            raise ValueError(f"Unknown maintenance job: {job}")

        now = now or datetime.now(timezone.utc)
        start = time.perf_counter()
        handler = self._jobs[job]
        user_ids = await self.manager.list_user_ids()

        changed = 0
        failures = 0
        for user_id in user_ids:
            try:
                changed += await handler(user_id, now)
            except Exception as e:
                failures += 1
                logger.error(
                    "maintenance_job_failed",
                    job=job,
                    user_id=user_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        summary = {
            "job": job,
            "users": len(user_ids),
            "changed": changed,
            "failures": failures,
            "duration_seconds": round(time.perf_counter() - start, 3),
        }
        logger.info("maintenance_job_complete", **summary)
        return summary
