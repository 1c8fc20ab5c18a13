"""Tiered memory store, hot cache, lifecycle manager and hybrid search."""

from mnemos.memory.hot_cache import HotCache, qualifies_for_hot_tier, select_hot_memories
from mnemos.memory.manager import MemoryManager
from mnemos.memory.search import HybridSearch, format_memories_for_prompt, rrf_fuse
from mnemos.memory.store import InMemoryTieredStore, TieredStore

__all__ = [
    "HotCache",
    "HybridSearch",
    "InMemoryTieredStore",
    "MemoryManager",
    "TieredStore",
    "format_memories_for_prompt",
    "qualifies_for_hot_tier",
    "rrf_fuse",
    "select_hot_memories",
]
