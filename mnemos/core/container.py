"""
Dependency Injection Container for Mnemos.

Composition root for the memory system: builds the tiered store, the
vectorizer, the hot cache and every service layered on them, and owns the
lifecycle (start/stop) of the background pieces (hot cache sweep and
maintenance scheduler).

Usage:
    # At application startup
    container = DependencyContainer()
    await container.initialize()

    memory = await container.manager.create(user_id, candidate)
    result = await container.pipeline.retrieve("what does the user do?", user_id)

    # At shutdown
    await container.shutdown()
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

import structlog

from mnemos.config.settings import Settings, get_settings
from mnemos.core.exceptions import InitializationError

if TYPE_CHECKING:
    from mnemos.knowledge.embeddings import Vectorizer
    from mnemos.memory.hot_cache import HotCache
    from mnemos.memory.manager import MemoryManager
    from mnemos.memory.search import HybridSearch
    from mnemos.memory.store import TieredStore
    from mnemos.retrieval.completion import JSONCompletionClient
    from mnemos.retrieval.grader import RelevanceGrader
    from mnemos.retrieval.pipeline import AgenticPipeline
    from mnemos.retrieval.refiner import QueryRefiner
    from mnemos.retrieval.reranker import Reranker
    from mnemos.scheduler.maintenance import MaintenanceScheduler

logger = structlog.get_logger(__name__)


class DependencyContainer:
    """
    Central container for all service dependencies.

    Services are created on first access and cached. Any of the leaf
    dependencies can be passed in explicitly, which is how tests swap in
    fakes.

    Remote scorers are optional: without an Anthropic key the grader and
    refiner run their local heuristics only, and without a Cohere key the
    reranker runs BM25 only. The vectorizer has no local fallback, so a
    Cohere key is required unless a vectorizer is supplied.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        store: Optional["TieredStore"] = None,
        vectorizer: Optional["Vectorizer"] = None,
        completion_client: Optional["JSONCompletionClient"] = None,
    ):
        """
        Initialize the container.

        Args:
            settings: Application settings. Defaults to get_settings().
            store: Tiered store. Defaults to the configured backend.
            vectorizer: Embedding service. Defaults to cached Cohere embeddings.
            completion_client: Remote JSON completion client for grading and
                refinement. Defaults to Anthropic when a key is configured.
        """
        self._settings = settings or get_settings()
        self._store = store
        self._vectorizer = vectorizer
        self._completion_client = completion_client
        self._cache: HotCache | None = None
        self._manager: MemoryManager | None = None
        self._search: HybridSearch | None = None
        self._grader: RelevanceGrader | None = None
        self._refiner: QueryRefiner | None = None
        self._reranker: Reranker | None = None
        self._pipeline: AgenticPipeline | None = None
        self._scheduler: MaintenanceScheduler | None = None
        self._initialized = False

        logger.info("dependency_container_created", store_backend=self._settings.store_backend)

    @property
    def settings(self) -> Settings:
        """Get application settings."""
        return self._settings

    @property
    def store(self) -> "TieredStore":
        """
        Get the tiered store (lazy initialization).

        Raises:
            InitializationError: If the store cannot be created.
        """
        if self._store is None:
            try:
                if self._settings.store_backend == "supabase":
                    from mnemos.memory.supabase_store import SupabaseTieredStore

                    self._store = SupabaseTieredStore(settings=self._settings)
                else:
                    from mnemos.memory.store import InMemoryTieredStore

                    self._store = InMemoryTieredStore()
                logger.info("tiered_store_created", backend=self._store.name)
            except Exception as e:
                logger.error("tiered_store_creation_failed", error=str(e))
                raise InitializationError(
                    "TieredStore",
                    f"Failed to create tiered store: {e}",
                    {"backend": self._settings.store_backend},
                ) from e
        return self._store

    @property
    def vectorizer(self) -> "Vectorizer":
        """
        Get the vectorizer (lazy initialization).

        Raises:
            InitializationError: If the embedding service cannot be created.
        """
        if self._vectorizer is None:
            try:
                from mnemos.knowledge.embeddings import (
                    CachedVectorizer,
                    CohereVectorizer,
                    EmbeddingCache,
                )

                self._vectorizer = CachedVectorizer(
                    CohereVectorizer(settings=self._settings),
                    EmbeddingCache(
                        ttl_seconds=self._settings.embedding_cache_ttl_seconds,
                        max_entries=self._settings.embedding_cache_max_entries,
                    ),
                )
                logger.info("vectorizer_created", model=self._vectorizer.model)
            except Exception as e:
                logger.error("vectorizer_creation_failed", error=str(e))
                raise InitializationError(
                    "Vectorizer",
                    f"Failed to create embeddings service: {e}",
                ) from e
        return self._vectorizer

    @property
    def completion_client(self) -> Optional["JSONCompletionClient"]:
        """Remote completion client, or None when no Anthropic key is configured."""
        if self._completion_client is None and self._settings.anthropic_api_key is not None:
            from mnemos.retrieval.completion import JSONCompletionClient

            self._completion_client = JSONCompletionClient(settings=self._settings)
            logger.info("completion_client_created", model=self._completion_client.model)
        return self._completion_client

    @property
    def cache(self) -> "HotCache":
        """Get the hot cache."""
        if self._cache is None:
            from mnemos.memory.hot_cache import HotCache

            s = self._settings
            self._cache = HotCache(
                max_per_user=s.hot_cache_max_per_user,
                global_max=s.hot_cache_global_max,
                ttl_seconds=s.hot_cache_ttl_seconds,
                sweep_interval_seconds=s.hot_cache_sweep_interval_seconds,
            )
        return self._cache

    @property
    def manager(self) -> "MemoryManager":
        """Get the memory lifecycle manager."""
        if self._manager is None:
            from mnemos.memory.manager import MemoryManager

            self._manager = MemoryManager(self.store, self.vectorizer, self.cache, self._settings)
        return self._manager

    @property
    def search(self) -> "HybridSearch":
        """Get hybrid search."""
        if self._search is None:
            from mnemos.memory.search import HybridSearch

            self._search = HybridSearch(self.store, self.vectorizer, self.cache, self._settings)
        return self._search

    @property
    def grader(self) -> "RelevanceGrader":
        """Get the relevance grader."""
        if self._grader is None:
            from mnemos.retrieval.grader import RelevanceGrader, RemoteRelevanceGrader

            client = self.completion_client
            remote = (
                RemoteRelevanceGrader(client, self._settings.grading_timeout_seconds)
                if client is not None
                else None
            )
            self._grader = RelevanceGrader(remote=remote, settings=self._settings)
        return self._grader

    @property
    def refiner(self) -> "QueryRefiner":
        """Get the query refiner."""
        if self._refiner is None:
            from mnemos.retrieval.refiner import QueryRefiner, RemoteQueryRefiner

            client = self.completion_client
            remote = (
                RemoteQueryRefiner(client, self._settings.refinement_timeout_seconds)
                if client is not None
                else None
            )
            self._refiner = QueryRefiner(remote=remote, settings=self._settings)
        return self._refiner

    @property
    def reranker(self) -> "Reranker":
        """Get the reranker."""
        if self._reranker is None:
            from mnemos.retrieval.reranker import CohereReranker, Reranker

            remote = None
            if self._settings.cohere_api_key is not None:
                remote = CohereReranker(settings=self._settings)
            self._reranker = Reranker(remote=remote)
        return self._reranker

    @property
    def pipeline(self) -> "AgenticPipeline":
        """Get the agentic retrieval pipeline."""
        if self._pipeline is None:
            from mnemos.retrieval.pipeline import AgenticPipeline

            self._pipeline = AgenticPipeline(
                self.search,
                self.grader,
                self.refiner,
                self.reranker,
                self._settings,
            )
        return self._pipeline

    @property
    def scheduler(self) -> "MaintenanceScheduler":
        """Get the maintenance scheduler."""
        if self._scheduler is None:
            from mnemos.scheduler.maintenance import MaintenanceScheduler

            self._scheduler = MaintenanceScheduler(self.manager, self._settings)
        return self._scheduler

    async def initialize(self) -> None:
        """
        Initialize all core services.

        Verifies store connectivity, starts the hot cache sweep and, when
        enabled, the maintenance scheduler.

        Raises:
            InitializationError: If any core service fails to initialize.
        """
        if self._initialized:
            logger.warning("container_already_initialized")
            return

        logger.info("container_initializing")

        try:
            if not await self.store.ping():
                raise InitializationError(
                    "TieredStore",
                    "Tiered store is not reachable",
                    {"backend": self.store.name},
                )
            logger.info("tiered_store_connected", backend=self.store.name)

            # Build eagerly so configuration problems surface at startup
            _ = (self.manager, self.pipeline)

            await self.cache.start()

            if self._settings.scheduler_enabled:
                await self.scheduler.start()

            self._initialized = True
            logger.info("container_initialized")

        except InitializationError:
            raise
        except Exception as e:
            logger.error(
                "container_initialization_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            raise InitializationError(
                "DependencyContainer",
                f"Failed to initialize dependencies: {e}",
            ) from e

    async def shutdown(self) -> None:
        """
        Shutdown all services gracefully.

        Call this at application shutdown.
        """
        logger.info("container_shutting_down")

        if self._scheduler is not None and self._scheduler.is_running:
            try:
                await self._scheduler.stop()
            except Exception as e:
                logger.error("scheduler_shutdown_error", error=str(e))

        if self._cache is not None:
            try:
                await self._cache.stop()
            except Exception as e:
                logger.error("hot_cache_shutdown_error", error=str(e))

        self._initialized = False
        logger.info("container_shutdown_complete")

    @property
    def is_initialized(self) -> bool:
        """Check if container has been initialized."""
        return self._initialized
