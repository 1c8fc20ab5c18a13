"""Unit tests for the dependency container."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from mnemos.config.settings import Settings
from mnemos.core.container import DependencyContainer
from mnemos.core.exceptions import InitializationError
from mnemos.memory.store import InMemoryTieredStore
from mnemos.retrieval.pipeline import AgenticPipeline


@pytest.fixture
def container(settings, vectorizer):
    return DependencyContainer(settings=settings, vectorizer=vectorizer)


class TestWiring:
    """Lazy construction and fallbacks without remote keys."""

    def test_services_are_cached(self, container):
        assert container.manager is container.manager
        assert container.pipeline is container.pipeline
        assert isinstance(container.pipeline, AgenticPipeline)

    def test_memory_backend(self, container):
        assert isinstance(container.store, InMemoryTieredStore)

    def test_shared_store_and_cache(self, container):
        assert container.manager.store is container.search.store
        assert container.manager.cache is container.search.cache

    def test_no_remote_keys_means_local_only(self, container):
        assert container.completion_client is None
        assert container.grader._chain is None
        assert container.refiner._chain is None
        assert container.reranker._chain is None

    def test_remote_scorers_with_keys(self, settings, vectorizer):
        keyed = Settings(
            _env_file=None,
            store_backend="memory",
            cohere_api_key="cohere-key",
            anthropic_api_key="anthropic-key",
            scheduler_enabled=False,
        )
        container = DependencyContainer(settings=keyed, vectorizer=vectorizer)

        assert container.completion_client is not None
        assert container.grader._chain is not None
        assert container.refiner._chain is not None
        assert container.reranker._chain is not None

    def test_vectorizer_without_key_fails(self, settings):
        container = DependencyContainer(settings=settings)

        with pytest.raises(InitializationError):
            _ = container.vectorizer


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_initialize_and_shutdown(self, container):
        await container.initialize()
        try:
            assert container.is_initialized
            assert container.cache.is_running
        finally:
            await container.shutdown()

        assert not container.is_initialized
        assert not container.cache.is_running

    @pytest.mark.asyncio
    async def test_initialize_starts_scheduler_when_enabled(self, settings, vectorizer):
        enabled = settings.model_copy(update={"scheduler_enabled": True})
        container = DependencyContainer(settings=enabled, vectorizer=vectorizer)

        await container.initialize()
        try:
            assert container.scheduler.is_running
        finally:
            await container.shutdown()

        assert not container.scheduler.is_running

    @pytest.mark.asyncio
    async def test_unreachable_store(self, settings, vectorizer):
        store = MagicMock()
        store.name = "broken"
        store.ping = AsyncMock(return_value=False)
        container = DependencyContainer(settings=settings, store=store, vectorizer=vectorizer)

        with pytest.raises(InitializationError):
            await container.initialize()

        assert not container.is_initialized
