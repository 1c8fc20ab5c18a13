"""
Mnemos - tiered memory store and self-correcting retrieval engine.

This package contains the core modules for the Mnemos system:
- memory: Tiered store backends, hot cache, lifecycle manager, hybrid search
- retrieval: Relevance grading, query refinement, reranking, agentic pipeline
- knowledge: Embedding service with a local content-hash cache
- core: Exceptions, circuit breakers, fallback chains, dependency container
- scheduler: Background maintenance jobs (decay, tiering, expiry)
- api: FastAPI application and endpoints
- config: Pydantic settings and configuration
- models: Data models for memories and pipeline state
"""

__version__ = "0.1.0"
