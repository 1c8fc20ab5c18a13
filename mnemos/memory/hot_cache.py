"""
Hot cache: per-user read replicas of the highest-priority memories.

Each cached user holds up to ``max_per_user`` records sorted by
``importance * (1 + access_velocity)``. Entries expire after a TTL (checked
lazily on read and proactively by a background sweep) and, once
``global_max`` users are cached, loading a new user evicts the user whose
entry was least recently read.

The store stays the source of truth: every write path in the lifecycle
manager calls invalidate/add/update/remove, and any entry can be rebuilt
from the store at any time.

Usage:
    cache = HotCache()
    await cache.start()

    await cache.load(user_id, records)
    memories = await cache.get(user_id)  # None on miss or expiry

    await cache.stop()
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

import structlog

from mnemos.models.memory import MemoryRecord
from mnemos.monitoring.metrics import (
    HOT_CACHE_USERS,
    record_cache_eviction,
    record_cache_lookup,
)

logger = structlog.get_logger(__name__)


def hot_score(record: MemoryRecord) -> float:
    """Priority of a record inside the hot cache."""
    return record.importance * (1 + record.access_velocity)


def select_hot_memories(records: list[MemoryRecord], limit: int) -> list[MemoryRecord]:
    """Active records ordered by hot score, most recently updated first on ties."""
    active = [r for r in records if r.is_active]
    active.sort(key=lambda r: (hot_score(r), r.updated_at), reverse=True)
    return active[:limit]


def qualifies_for_hot_tier(
    record: MemoryRecord,
    hot_velocity: float = 0.5,
    hot_min_importance: float = 0.5,
) -> bool:
    """Static and profile records always qualify; others need access and importance."""
    if record.always_hot:
        return True
    return record.access_velocity >= hot_velocity and record.importance >= hot_min_importance


@dataclass
class CacheEntry:
    """One user's cached slice."""

    memories: list[MemoryRecord]
    loaded_at: float
    last_accessed_at: float
    access_count: int = 0


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class HotCache:
    """
    Bounded per-user memory cache with LRU and TTL eviction.

    All access goes through a single asyncio.Lock. The sweep scans at most
    ``global_max`` entries while holding it.
    """

    def __init__(
        self,
        max_per_user: int = 20,
        global_max: int = 1000,
        ttl_seconds: float = 600.0,
        sweep_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_per_user = max_per_user
        self.global_max = global_max
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock

        self._entries: dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()
        self._stats = CacheStats()
        self._task: Optional[asyncio.Task] = None
        self._running = False

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.loaded_at >= self.ttl_seconds

    def _evict(self, user_id: str, reason: str) -> None:
        del self._entries[user_id]
        self._stats.evictions += 1
        record_cache_eviction(reason)
        HOT_CACHE_USERS.set(len(self._entries))
        logger.debug("hot_cache_evicted", user_id=user_id, reason=reason)

    def _live_entry(self, user_id: str) -> Optional[CacheEntry]:
        entry = self._entries.get(user_id)
        if entry is None:
            return None
        if self._is_expired(entry, self._clock()):
            self._evict(user_id, "ttl")
            return None
        return entry

    def _resort(self, entry: CacheEntry) -> None:
        entry.memories = select_hot_memories(entry.memories, self.max_per_user)

    # -------------------------------------------------------------------------
    # Reads and loads
    # -------------------------------------------------------------------------

    async def load(self, user_id: str, records: list[MemoryRecord]) -> list[MemoryRecord]:
        """Cache the top records for a user, replacing any existing entry."""
        async with self._lock:
            if user_id not in self._entries and len(self._entries) >= self.global_max:
                oldest = min(self._entries, key=lambda uid: self._entries[uid].last_accessed_at)
                self._evict(oldest, "capacity")

            now = self._clock()
            memories = select_hot_memories(records, self.max_per_user)
            self._entries[user_id] = CacheEntry(
                memories=memories,
                loaded_at=now,
                last_accessed_at=now,
            )
            HOT_CACHE_USERS.set(len(self._entries))

        logger.debug("hot_cache_loaded", user_id=user_id, count=len(memories))
        return list(memories)

    async def get(self, user_id: str) -> Optional[list[MemoryRecord]]:
        """Cached slice for a user, or None when absent or past its TTL."""
        async with self._lock:
            entry = self._live_entry(user_id)
            if entry is None:
                self._stats.misses += 1
                record_cache_lookup(hit=False)
                return None

            entry.last_accessed_at = self._clock()
            entry.access_count += 1
            self._stats.hits += 1
            record_cache_lookup(hit=True)
            return list(entry.memories)

    async def get_filtered(
        self,
        user_id: str,
        static_only: bool = False,
        min_importance: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> Optional[list[MemoryRecord]]:
        memories = await self.get(user_id)
        if memories is None:
            return None
        if static_only:
            memories = [m for m in memories if m.is_static]
        if min_importance is not None:
            memories = [m for m in memories if m.importance >= min_importance]
        if limit is not None:
            memories = memories[:limit]
        return memories

    async def contains(self, user_id: str) -> bool:
        """Whether a live entry exists, without counting as a read."""
        async with self._lock:
            return self._live_entry(user_id) is not None

    # -------------------------------------------------------------------------
    # Invalidation and incremental updates
    # -------------------------------------------------------------------------

    async def invalidate(self, user_id: str) -> bool:
        async with self._lock:
            if user_id not in self._entries:
                return False
            self._evict(user_id, "invalidate")
            return True

    async def invalidate_all(self) -> int:
        async with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._stats.evictions += count
            record_cache_eviction("invalidate", count)
            HOT_CACHE_USERS.set(0)
        logger.info("hot_cache_cleared", count=count)
        return count

    async def add(self, user_id: str, record: MemoryRecord) -> bool:
        """Insert a record into a cached user's slice. No-op on a miss."""
        if not record.is_active:
            return False
        async with self._lock:
            entry = self._live_entry(user_id)
            if entry is None:
                return False
            entry.memories = [m for m in entry.memories if m.root_id != record.root_id]
            entry.memories.append(record)
            self._resort(entry)
            return any(m.id == record.id for m in entry.memories)

    async def update(self, user_id: str, record: MemoryRecord) -> bool:
        """Replace the cached version of a record's chain, dropping it if inactive."""
        async with self._lock:
            entry = self._live_entry(user_id)
            if entry is None:
                return False
            before = len(entry.memories)
            entry.memories = [
                m for m in entry.memories
                if m.id != record.id and m.root_id != record.root_id
            ]
            found = len(entry.memories) != before
            if record.is_active:
                entry.memories.append(record)
            self._resort(entry)
            return found

    async def remove(self, user_id: str, memory_id: str) -> bool:
        async with self._lock:
            entry = self._live_entry(user_id)
            if entry is None:
                return False
            before = len(entry.memories)
            entry.memories = [m for m in entry.memories if m.id != memory_id]
            return len(entry.memories) != before

    # -------------------------------------------------------------------------
    # Sweep
    # -------------------------------------------------------------------------

    async def sweep(self) -> int:
        """Evict every expired entry; returns the number evicted."""
        async with self._lock:
            now = self._clock()
            expired = [uid for uid, e in self._entries.items() if self._is_expired(e, now)]
            for user_id in expired:
                self._evict(user_id, "ttl")
        if expired:
            logger.info("hot_cache_swept", evicted=len(expired))
        return len(expired)

    async def _sweep_loop(self) -> None:
        logger.info("hot_cache_sweep_started", interval=self.sweep_interval_seconds)
        try:
            while True:
                await asyncio.sleep(self.sweep_interval_seconds)
                await self.sweep()
        except asyncio.CancelledError:
            logger.debug("hot_cache_sweep_cancelled")
        finally:
            self._running = False
            logger.info("hot_cache_sweep_stopped")

    async def start(self) -> None:
        """Start the background sweep."""
        if self._running:
            logger.warning("hot_cache_sweep_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Stop the background sweep."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def stats(self) -> dict[str, float]:
        return {
            "users": len(self._entries),
            "memories": sum(len(e.memories) for e in self._entries.values()),
            "hits": self._stats.hits,
            "misses": self._stats.misses,
            "hit_rate": self._stats.hit_rate,
            "evictions": self._stats.evictions,
        }
