"""
Application Settings.

Centralized configuration using Pydantic Settings with environment variable loading.
Every threshold used by the memory lifecycle, hot cache, hybrid search and the
agentic retrieval pipeline has a default here and can be overridden via env vars.

Production Mode:
    When app_env="production", additional validations apply:
    - debug must be False
    - a persistent store backend must be configured
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # Store Backend
    # -------------------------------------------------------------------------
    store_backend: Literal["memory", "supabase"] = Field(
        default="memory",
        description="Tiered store backend: in-process memory or Supabase/pgvector",
    )
    supabase_url: str | None = Field(default=None, description="Supabase project URL")
    supabase_key: SecretStr | None = Field(
        default=None, description="Supabase service key"
    )

    # -------------------------------------------------------------------------
    # Cohere (Embeddings & Reranking)
    # -------------------------------------------------------------------------
    cohere_api_key: SecretStr | None = Field(
        default=None, description="Cohere API key for embeddings and reranking"
    )
    cohere_embedding_model: str = Field(
        default="embed-english-v3.0",
        description="Cohere embedding model identifier",
    )
    cohere_embedding_dimension: int = Field(
        default=1024,
        description="Embedding dimension for the configured model",
    )
    cohere_rerank_model: str = Field(
        default="rerank-v3.5",
        description="Cohere rerank model used as the remote cross-encoder",
    )

    # -------------------------------------------------------------------------
    # Anthropic (Grader / Refiner)
    # -------------------------------------------------------------------------
    anthropic_api_key: SecretStr | None = Field(
        default=None, description="Anthropic API key for grading and refinement"
    )
    completion_model: str = Field(
        default="claude-3-5-haiku-latest",
        description="Model used for relevance grading and query refinement",
    )

    # -------------------------------------------------------------------------
    # Remote Call Timeouts (seconds)
    # -------------------------------------------------------------------------
    embedding_timeout_seconds: float = Field(
        default=10.0, description="Timeout for a single embedding call"
    )
    store_timeout_seconds: float = Field(
        default=5.0, description="Timeout for a similarity/lexical store round trip"
    )
    grading_timeout_seconds: float = Field(
        default=8.0, description="Timeout for one remote relevance grade"
    )
    refinement_timeout_seconds: float = Field(
        default=10.0, description="Timeout for one remote refinement call"
    )
    rerank_timeout_seconds: float = Field(
        default=8.0, description="Timeout for the remote rerank call"
    )

    # -------------------------------------------------------------------------
    # Remote Scorer Circuit Breakers
    # -------------------------------------------------------------------------
    circuit_failure_threshold: int = Field(
        default=5, ge=1, description="Consecutive failures before a remote service is skipped"
    )
    circuit_recovery_seconds: float = Field(
        default=60.0, gt=0, description="Seconds a tripped service is skipped before a retry"
    )

    # -------------------------------------------------------------------------
    # Memory Lifecycle
    # -------------------------------------------------------------------------
    max_memory_content_length: int = Field(
        default=500, description="Memory content is truncated to this many characters"
    )
    dedup_similarity_threshold: float = Field(
        default=0.9, description="Cosine similarity at which a write updates an existing memory"
    )
    consolidation_similarity_threshold: float = Field(
        default=0.85, description="Cosine similarity for clustering during consolidation"
    )
    consolidation_max_batch: int = Field(
        default=100, description="Maximum records considered per consolidation run"
    )
    version_importance_boost: float = Field(
        default=0.1, description="Importance added to a memory on each new version"
    )

    # Decay
    decay_daily_rate: float = Field(default=0.01, description="Daily importance decay rate")
    decay_min_importance: float = Field(default=0.1, description="Importance floor for decay")
    access_boost: float = Field(default=0.05, description="Importance boost per access")
    max_importance: float = Field(default=1.0, description="Importance ceiling")

    # Tier criteria
    tier_hot_velocity: float = Field(default=0.5, description="Access velocity for hot tier")
    tier_cold_velocity: float = Field(default=0.1, description="Access velocity below which memories go cold")
    tier_cold_inactive_days: int = Field(default=30, description="Days without access before cold tier")
    tier_hot_min_importance: float = Field(default=0.5, description="Minimum importance for hot tier")

    # -------------------------------------------------------------------------
    # Hot Cache
    # -------------------------------------------------------------------------
    hot_cache_max_per_user: int = Field(default=20, description="Cached memories per user")
    hot_cache_global_max: int = Field(default=1000, description="Maximum cached users")
    hot_cache_ttl_seconds: float = Field(default=600.0, description="Cache entry TTL")
    hot_cache_sweep_interval_seconds: float = Field(
        default=60.0, description="Background sweep interval for expired entries"
    )

    # -------------------------------------------------------------------------
    # Embedding Cache
    # -------------------------------------------------------------------------
    embedding_cache_ttl_seconds: float = Field(default=3600.0, description="Embedding cache TTL")
    embedding_cache_max_entries: int = Field(default=5000, description="Embedding cache capacity")

    # -------------------------------------------------------------------------
    # Hybrid Search
    # -------------------------------------------------------------------------
    search_default_limit: int = Field(default=10, description="Default result count")
    search_vector_threshold: float = Field(default=0.5, description="Minimum vector similarity")
    search_lexical_threshold: float = Field(default=0.3, description="Minimum lexical score")
    search_vector_weight: float = Field(default=0.6, description="RRF weight for vector ranks")
    search_lexical_weight: float = Field(default=0.4, description="RRF weight for lexical ranks")
    search_rrf_k: int = Field(default=60, description="Reciprocal rank fusion constant")
    profile_static_limit: int = Field(default=10, description="Static memories in a profile")
    profile_dynamic_limit: int = Field(default=5, description="Dynamic memories in a profile")

    # -------------------------------------------------------------------------
    # Agentic Pipeline
    # -------------------------------------------------------------------------
    pipeline_max_iterations: int = Field(default=3, description="Maximum retrieval iterations")
    pipeline_relevance_threshold: float = Field(
        default=0.7, description="Grade at or above which a candidate counts as relevant"
    )
    pipeline_min_good_results_ratio: float = Field(
        default=0.5, description="Relevant ratio that ends the loop early"
    )
    pipeline_enable_refinement: bool = Field(default=True, description="Refine under-performing queries")
    pipeline_enable_reranking: bool = Field(default=True, description="Rerank the final result set")
    pipeline_retrieval_limit: int = Field(default=10, description="Candidates per iteration")
    pipeline_timeout_seconds: float = Field(default=30.0, description="Overall pipeline budget")
    grading_concurrency: int = Field(default=5, description="Concurrent grading calls")

    # -------------------------------------------------------------------------
    # Scheduler
    # -------------------------------------------------------------------------
    scheduler_enabled: bool = Field(default=True, description="Run background maintenance jobs")
    decay_hour_utc: int = Field(default=3, ge=0, le=23, description="Hour of day for decay runs")
    tier_update_interval_minutes: int = Field(default=60, description="Tier recomputation interval")
    expiry_interval_minutes: int = Field(default=60, description="TTL expiry processing interval")

    # -------------------------------------------------------------------------
    # Application Settings
    # -------------------------------------------------------------------------
    app_env: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Application environment",
    )
    debug: bool = Field(
        default=True,
        description="Enable debug mode",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    api_host: str = Field(default="0.0.0.0", description="HTTP bind host")
    api_port: int = Field(default=8000, description="HTTP bind port")
    cors_allowed_origins: list[str] = Field(
        default=["http://localhost:3000"],
        description="Origins allowed by the CORS middleware",
    )
    cors_allow_credentials: bool = Field(default=True, description="Allow credentialed CORS requests")

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.app_env == "development"

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """Validate production settings and backend configuration."""
        errors = []

        if self.store_backend == "supabase" and not (self.supabase_url and self.supabase_key):
            errors.append("supabase_url and supabase_key are required for the supabase backend")

        if self.consolidation_similarity_threshold > self.dedup_similarity_threshold:
            errors.append(
                "consolidation_similarity_threshold must not exceed dedup_similarity_threshold"
            )

        if self.app_env == "production":
            if self.debug:
                errors.append("debug must be False in production")
            if self.store_backend == "memory":
                errors.append("store_backend cannot be 'memory' in production")

        if errors:
            raise ValueError(f"Configuration errors: {'; '.join(errors)}")

        return self


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload settings if needed.
    """
    return Settings()
