"""
Mnemos Test Suite.

- unit/: Per-component tests (store, cache, manager, search, retrieval)
- integration/: Lifecycle flows and API endpoint tests
- conftest.py: Shared fixtures, including a deterministic fake vectorizer

Run tests with: pytest
Run only integration tests: pytest -m integration
"""
