"""
Vectorizer: Cohere embeddings behind a local content-hash cache.

Provides text embedding generation using Cohere's embed-v3 models with
retries, a circuit breaker, an explicit per-call timeout and a TTL- and
capacity-bounded cache so repeated queries skip the network entirely.

Usage:
    vectorizer = CachedVectorizer(CohereVectorizer(), EmbeddingCache())

    vector = await vectorizer.embed("User is VP of Finance")
    query_vector = await vectorizer.embed_query("what is the user's role?")
"""

from __future__ import annotations

import asyncio
import hashlib
import math
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional, Protocol, Sequence

import cohere
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from mnemos.config.settings import Settings, get_settings
from mnemos.core.circuit_breaker import EMBED_SERVICE, breaker_for
from mnemos.core.exceptions import (
    ConfigurationError,
    DependencyFailureError,
    DependencyTimeoutError,
    InvalidInputError,
    MnemosError,
)

logger = structlog.get_logger(__name__)

# Thread pool for sync Cohere client
_executor = ThreadPoolExecutor(max_workers=4)

INPUT_TYPE_DOCUMENT = "search_document"
INPUT_TYPE_QUERY = "search_query"


# =============================================================================
# Vector Math
# =============================================================================


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity between two vectors.

    Raises:
        InvalidInputError: If the vectors have different dimensionality.
    """
    if len(a) != len(b):
        raise InvalidInputError(
            "Cannot compare vectors of different dimensionality",
            {"left": len(a), "right": len(b)},
        )

    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y

    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


# =============================================================================
# Vectorizer Interface
# =============================================================================


class Vectorizer(Protocol):
    """Protocol for embedding services."""

    @property
    def model(self) -> str: ...

    @property
    def dimension(self) -> int: ...

    async def embed(self, text: str) -> list[float]: ...

    async def embed_query(self, text: str) -> list[float]: ...


def _is_retryable(exception: BaseException) -> bool:
    """Check if exception should trigger retry."""
    if isinstance(exception, DependencyTimeoutError):
        return True
    error_str = str(exception).lower()
    return any(keyword in error_str for keyword in ["rate", "limit", "timeout", "unavailable"])


class CohereVectorizer:
    """
    Cohere embeddings service.

    Dimension is fixed per model identifier; every vector returned is
    checked against it so mixed dimensionalities never reach the store.
    """

    MAX_BATCH_SIZE = 96  # Cohere limit per request

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        dimension: int | None = None,
        timeout: float | None = None,
        settings: Settings | None = None,
    ) -> None:
        """
        Initialize the Cohere vectorizer.

        Args:
            api_key: Cohere API key. Defaults to settings.cohere_api_key.
            model: Embedding model. Defaults to settings.cohere_embedding_model.
            dimension: Embedding dimension. Defaults to settings.cohere_embedding_dimension.
            timeout: Seconds allowed per embedding request.
            settings: Application settings. Defaults to get_settings().
        """
        settings = settings or get_settings()
        if api_key is None and settings.cohere_api_key is not None:
            api_key = settings.cohere_api_key.get_secret_value()
        if not api_key:
            raise ConfigurationError("Cohere API key is not configured", "cohere_api_key")

        self._api_key = api_key
        self._model = model or settings.cohere_embedding_model
        self._dimension = dimension or settings.cohere_embedding_dimension
        self._timeout = timeout or settings.embedding_timeout_seconds
        self._client: cohere.ClientV2 | None = None
        self._breaker = breaker_for(EMBED_SERVICE, settings)

        logger.info(
            "cohere_vectorizer_initialized",
            model=self._model,
            dimension=self._dimension,
        )

    @property
    def model(self) -> str:
        """Get the embedding model name."""
        return self._model

    @property
    def dimension(self) -> int:
        """Get the embedding dimension."""
        return self._dimension

    @property
    def client(self) -> cohere.ClientV2:
        """Get or create the Cohere client."""
        if self._client is None:
            self._client = cohere.ClientV2(api_key=self._api_key)
        return self._client

    def _embed_sync(self, texts: list[str], input_type: str) -> list[list[float]]:
        """Synchronous embedding call."""
        response = self.client.embed(
            model=self._model,
            texts=texts,
            input_type=input_type,
            embedding_types=["float"],
        )
        return response.embeddings.float_

    @retry(
        retry=retry_if_exception(_is_retryable),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        stop=stop_after_attempt(3),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(
            "cohere_retry",
            attempt=retry_state.attempt_number,
            wait=retry_state.next_action.sleep if retry_state.next_action else 0,
        ),
    )
    async def _embed_request(self, texts: list[str], input_type: str) -> list[list[float]]:
        """Make one embedding request bounded by the configured timeout."""
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(_executor, lambda: self._embed_sync(texts, input_type)),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            raise DependencyTimeoutError(
                "cohere_embed",
                f"Embedding request exceeded {self._timeout}s",
                {"batch_size": len(texts)},
            ) from e

    async def _request(self, texts: list[str], input_type: str) -> list[list[float]]:
        """Guarded request translating every failure into the dependency taxonomy."""
        try:
            embeddings = await self._breaker(self._embed_request)(texts, input_type)
        except DependencyTimeoutError:
            raise
        except MnemosError as e:
            raise DependencyFailureError("cohere_embed", e.message, e.details) from e
        except Exception as e:
            raise DependencyFailureError("cohere_embed", str(e)) from e

        for embedding in embeddings:
            if len(embedding) != self._dimension:
                raise DependencyFailureError(
                    "cohere_embed",
                    "Embedding dimension does not match the configured model",
                    {"expected": self._dimension, "actual": len(embedding), "model": self._model},
                )
        return embeddings

    async def embed(self, text: str, input_type: str = INPUT_TYPE_DOCUMENT) -> list[float]:
        """
        Generate embedding for a single text.

        Args:
            text: Text to embed.
            input_type: Either "search_document" (for storing) or
                       "search_query" (for searching).

        Raises:
            InvalidInputError: If text is empty.
            DependencyTimeoutError: If the request exceeded its budget.
            DependencyFailureError: For any other remote failure.
        """
        if not text or not text.strip():
            raise InvalidInputError("Text cannot be empty")

        embeddings = await self._request([text], input_type)
        logger.debug(
            "cohere_embedding_generated",
            text_length=len(text),
            dimension=len(embeddings[0]),
        )
        return embeddings[0]

    async def embed_query(self, text: str) -> list[float]:
        """Generate embedding optimized for searching."""
        return await self.embed(text, input_type=INPUT_TYPE_QUERY)

    async def embed_batch(
        self,
        texts: list[str],
        batch_size: int = 96,
        input_type: str = INPUT_TYPE_DOCUMENT,
    ) -> list[list[float]]:
        """
        Generate embeddings for multiple texts with automatic batching.

        Returns:
            List of embedding vectors in same order as input.
        """
        if not texts:
            return []
        if any(not t or not t.strip() for t in texts):
            raise InvalidInputError("Texts cannot be empty")

        results: list[list[float]] = []
        effective_batch_size = min(batch_size, self.MAX_BATCH_SIZE)

        for i in range(0, len(texts), effective_batch_size):
            batch = texts[i : i + effective_batch_size]
            logger.debug(
                "cohere_embedding_batch_processing",
                batch_num=i // effective_batch_size + 1,
                batch_size=len(batch),
            )
            results.extend(await self._request(batch, input_type))

        logger.info("cohere_embedding_batch_completed", total_texts=len(texts))
        return results


# =============================================================================
# Embedding Cache
# =============================================================================


@dataclass
class _CacheSlot:
    vector: list[float]
    expires_at: float


@dataclass
class EmbeddingCache:
    """
    TTL- and capacity-bounded embedding cache keyed by content hash.

    Least recently used slots are evicted once ``max_entries`` is reached.
    """

    ttl_seconds: float = 3600.0
    max_entries: int = 5000
    _slots: OrderedDict[str, _CacheSlot] = field(default_factory=OrderedDict, init=False)
    _hits: int = field(default=0, init=False)
    _misses: int = field(default=0, init=False)

    @staticmethod
    def key_for(text: str, model: str, input_type: str = INPUT_TYPE_DOCUMENT) -> str:
        """Content hash scoped to the model and input type."""
        digest = hashlib.sha256(f"{model}\x00{input_type}\x00{text}".encode("utf-8"))
        return digest.hexdigest()

    def get(self, key: str) -> Optional[list[float]]:
        slot = self._slots.get(key)
        if slot is None:
            self._misses += 1
            return None
        if slot.expires_at <= time.monotonic():
            del self._slots[key]
            self._misses += 1
            return None
        self._slots.move_to_end(key)
        self._hits += 1
        return slot.vector

    def set(self, key: str, vector: list[float]) -> None:
        self._slots[key] = _CacheSlot(vector=vector, expires_at=time.monotonic() + self.ttl_seconds)
        self._slots.move_to_end(key)
        while len(self._slots) > self.max_entries:
            self._slots.popitem(last=False)

    def clear(self) -> None:
        self._slots.clear()

    def __len__(self) -> int:
        return len(self._slots)

    def stats(self) -> dict[str, float]:
        total = self._hits + self._misses
        return {
            "size": len(self._slots),
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": self._hits / total if total else 0.0,
        }


class CachedVectorizer:
    """Vectorizer that checks an EmbeddingCache before calling the wrapped service."""

    def __init__(self, vectorizer: Vectorizer, cache: EmbeddingCache | None = None) -> None:
        self._vectorizer = vectorizer
        self._cache = cache or EmbeddingCache()

    @property
    def model(self) -> str:
        return self._vectorizer.model

    @property
    def dimension(self) -> int:
        return self._vectorizer.dimension

    @property
    def cache(self) -> EmbeddingCache:
        return self._cache

    async def embed(self, text: str) -> list[float]:
        key = EmbeddingCache.key_for(text, self.model, INPUT_TYPE_DOCUMENT)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        vector = await self._vectorizer.embed(text)
        self._cache.set(key, vector)
        return vector

    async def embed_query(self, text: str) -> list[float]:
        key = EmbeddingCache.key_for(text, self.model, INPUT_TYPE_QUERY)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        vector = await self._vectorizer.embed_query(text)
        self._cache.set(key, vector)
        return vector
