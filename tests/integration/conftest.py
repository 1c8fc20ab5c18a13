"""Integration fixtures: a fully wired container and an API client.

Everything runs against the in-memory store with the deterministic
FakeVectorizer and no remote keys, so grading, refinement and reranking
all go through their local implementations.
"""

import pytest
from fastapi.testclient import TestClient

from mnemos.api.main import create_app
from mnemos.core.container import DependencyContainer


@pytest.fixture
def container(settings, vectorizer) -> DependencyContainer:
    return DependencyContainer(settings=settings, vectorizer=vectorizer)


@pytest.fixture
def client(container):
    """TestClient with the application lifespan running."""
    with TestClient(create_app(container)) as test_client:
        yield test_client
