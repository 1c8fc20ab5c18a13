"""Unit tests for application settings."""

import pytest
from pydantic import ValidationError

from mnemos.config.settings import Settings


def make_settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


class TestDefaults:

    def test_lifecycle_defaults(self):
        settings = make_settings()

        assert settings.dedup_similarity_threshold == 0.9
        assert settings.consolidation_similarity_threshold == 0.85
        assert settings.decay_daily_rate == 0.01
        assert settings.decay_min_importance == 0.1
        assert settings.max_memory_content_length == 500

    def test_search_and_pipeline_defaults(self):
        settings = make_settings()

        assert settings.search_vector_weight == 0.6
        assert settings.search_lexical_weight == 0.4
        assert settings.search_rrf_k == 60
        assert settings.pipeline_max_iterations == 3
        assert settings.pipeline_relevance_threshold == 0.7
        assert settings.pipeline_min_good_results_ratio == 0.5

    def test_circuit_breaker_defaults(self):
        settings = make_settings()

        assert settings.circuit_failure_threshold == 5
        assert settings.circuit_recovery_seconds == 60.0

    def test_circuit_threshold_must_be_positive(self):
        with pytest.raises(ValidationError):
            make_settings(circuit_failure_threshold=0)

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("DEDUP_SIMILARITY_THRESHOLD", "0.95")
        monkeypatch.setenv("PIPELINE_MAX_ITERATIONS", "5")

        settings = make_settings()

        assert settings.dedup_similarity_threshold == 0.95
        assert settings.pipeline_max_iterations == 5

    def test_environment_flags(self):
        assert make_settings(app_env="development").is_development
        assert not make_settings(app_env="staging").is_production


class TestValidation:

    def test_supabase_requires_credentials(self):
        with pytest.raises(ValidationError, match="supabase_url"):
            make_settings(store_backend="supabase")

    def test_supabase_with_credentials(self):
        settings = make_settings(
            store_backend="supabase",
            supabase_url="https://example.supabase.co",
            supabase_key="service-key",
        )

        assert settings.supabase_key.get_secret_value() == "service-key"

    def test_consolidation_cannot_exceed_dedup(self):
        with pytest.raises(ValidationError, match="consolidation_similarity_threshold"):
            make_settings(consolidation_similarity_threshold=0.95, dedup_similarity_threshold=0.9)

    def test_production_rejects_debug_and_memory_backend(self):
        with pytest.raises(ValidationError) as exc_info:
            make_settings(app_env="production", debug=True)

        message = str(exc_info.value)
        assert "debug must be False" in message
        assert "store_backend cannot be 'memory'" in message

    def test_valid_production(self):
        settings = make_settings(
            app_env="production",
            debug=False,
            store_backend="supabase",
            supabase_url="https://example.supabase.co",
            supabase_key="service-key",
        )

        assert settings.is_production

    def test_decay_hour_bounds(self):
        with pytest.raises(ValidationError):
            make_settings(decay_hour_utc=24)
