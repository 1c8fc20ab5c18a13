"""FastAPI dependency injection providers.

The application lifespan builds one DependencyContainer and registers it
here; route handlers receive its services through these providers.
"""

from typing import Optional

from mnemos.core.container import DependencyContainer
from mnemos.memory.manager import MemoryManager
from mnemos.memory.search import HybridSearch
from mnemos.retrieval.pipeline import AgenticPipeline

_container: Optional[DependencyContainer] = None


def get_container() -> DependencyContainer:
    """
    Get the container registered at startup.

    Raises:
        RuntimeError: If the container has not been registered.
    """
    if _container is None:
        raise RuntimeError(
            "Container not initialized. Ensure the application startup event has run."
        )
    return _container


def set_container(container: DependencyContainer) -> None:
    """Register the application container. Called during startup."""
    global _container
    _container = container


def reset_dependencies() -> None:
    """
    Reset all global dependency instances.

    Useful for testing or application shutdown.
    """
    global _container
    _container = None


def get_manager() -> MemoryManager:
    return get_container().manager


def get_search() -> HybridSearch:
    return get_container().search


def get_pipeline() -> AgenticPipeline:
    return get_container().pipeline
