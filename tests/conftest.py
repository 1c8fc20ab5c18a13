"""
Pytest Configuration and Shared Fixtures.

This module provides common fixtures for all tests:

- settings: Settings with the in-memory backend and no remote keys
- vectorizer: Deterministic bag-of-words FakeVectorizer
- store / cache / manager / search: Wired memory components
- record_factory: Builds MemoryRecord instances for direct store writes
"""

import hashlib
import math
from typing import Any

import pytest

from mnemos.config.settings import Settings
from mnemos.core.circuit_breaker import reset_all_circuit_breakers
from mnemos.knowledge.text import tokenize
from mnemos.memory.hot_cache import HotCache
from mnemos.memory.manager import MemoryManager
from mnemos.memory.search import HybridSearch
from mnemos.memory.store import InMemoryTieredStore
from mnemos.models.memory import MemoryRecord


class FakeVectorizer:
    """
    Hashed bag-of-words embeddings.

    Texts with the same lowercased token multiset get identical vectors,
    so near-duplicates that differ only in case or punctuation have a
    cosine similarity of exactly 1.0.
    """

    def __init__(self, dimension: int = 1024, model: str = "fake-embed-v1"):
        self._dimension = dimension
        self._model = model
        self.calls: list[str] = []

    @property
    def model(self) -> str:
        return self._model

    @property
    def dimension(self) -> int:
        return self._dimension

    def vector(self, text: str) -> list[float]:
        vec = [0.0] * self._dimension
        for token in tokenize(text):
            index = int(hashlib.sha256(token.encode("utf-8")).hexdigest(), 16) % self._dimension
            vec[index] += 1.0
        norm = math.sqrt(sum(v * v for v in vec))
        if norm == 0:
            vec[0] = 1.0
            return vec
        return [v / norm for v in vec]

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        return self.vector(text)

    async def embed_query(self, text: str) -> list[float]:
        self.calls.append(text)
        return self.vector(text)


@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Circuit breakers are process-global; start every test closed."""
    reset_all_circuit_breakers()
    yield
    reset_all_circuit_breakers()


@pytest.fixture
def settings() -> Settings:
    """Settings for tests: in-memory store, no remote services, no scheduler."""
    return Settings(
        _env_file=None,
        store_backend="memory",
        cohere_api_key=None,
        anthropic_api_key=None,
        scheduler_enabled=False,
        app_env="development",
    )


@pytest.fixture
def user_id() -> str:
    return "user-1"


@pytest.fixture
def vectorizer() -> FakeVectorizer:
    return FakeVectorizer()


@pytest.fixture
def store() -> InMemoryTieredStore:
    return InMemoryTieredStore()


@pytest.fixture
def cache(settings) -> HotCache:
    return HotCache(
        max_per_user=settings.hot_cache_max_per_user,
        global_max=settings.hot_cache_global_max,
        ttl_seconds=settings.hot_cache_ttl_seconds,
        sweep_interval_seconds=settings.hot_cache_sweep_interval_seconds,
    )


@pytest.fixture
def manager(store, vectorizer, cache, settings) -> MemoryManager:
    return MemoryManager(store, vectorizer, cache, settings)


@pytest.fixture
def search(store, vectorizer, cache, settings) -> HybridSearch:
    return HybridSearch(store, vectorizer, cache, settings)


@pytest.fixture
def record_factory(vectorizer, user_id):
    """Build a first-version MemoryRecord with a real fake embedding."""

    def make(content: str = "User is VP of Finance", **overrides: Any) -> MemoryRecord:
        fields: dict[str, Any] = {
            "user_id": user_id,
            "content": content,
            "embedding": vectorizer.vector(content),
            "embedding_model": vectorizer.model,
        }
        fields.update(overrides)
        return MemoryRecord(**fields)

    return make
