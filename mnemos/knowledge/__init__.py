"""
Knowledge services for Mnemos.

This module provides the Vectorizer used by hybrid search, duplicate
detection and consolidation:

- CohereVectorizer: Remote Cohere embeddings with retries and timeouts
- EmbeddingCache: TTL and capacity bounded cache keyed by content hash
- CachedVectorizer: Cache-first wrapper around any Vectorizer

Example:
    from mnemos.knowledge import CachedVectorizer, CohereVectorizer

    vectorizer = CachedVectorizer(CohereVectorizer())
    vector = await vectorizer.embed_query("grant writing")
"""

from mnemos.knowledge.embeddings import (
    CachedVectorizer,
    CohereVectorizer,
    EmbeddingCache,
    Vectorizer,
    cosine_similarity,
)

__all__ = [
    "CachedVectorizer",
    "CohereVectorizer",
    "EmbeddingCache",
    "Vectorizer",
    "cosine_similarity",
]
