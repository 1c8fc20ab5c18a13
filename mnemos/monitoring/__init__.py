"""
Monitoring and observability for Mnemos.

Provides Prometheus metrics for the memory lifecycle, hot cache,
retrieval pipeline and remote dependency resilience.

Usage:
    from mnemos.monitoring import track_memory_operation, get_metrics_app

    with track_memory_operation("create"):
        await manager.create(user_id, candidate)
"""

from mnemos.monitoring.metrics import (
    CIRCUIT_BREAKER_STATE,
    FALLBACK_ACTIVATIONS,
    HOT_CACHE_REQUESTS,
    MEMORY_OPERATIONS,
    PIPELINE_COMPLETIONS,
    get_metrics_app,
    record_cache_eviction,
    record_cache_lookup,
    record_circuit_breaker_failure,
    record_fallback,
    record_pipeline_completion,
    track_memory_operation,
    track_store_operation,
    update_circuit_breaker_state,
)

__all__ = [
    # Prometheus metrics
    "CIRCUIT_BREAKER_STATE",
    "FALLBACK_ACTIVATIONS",
    "HOT_CACHE_REQUESTS",
    "MEMORY_OPERATIONS",
    "PIPELINE_COMPLETIONS",
    # Context managers
    "track_memory_operation",
    "track_store_operation",
    # Helper functions
    "record_cache_eviction",
    "record_cache_lookup",
    "record_circuit_breaker_failure",
    "record_fallback",
    "record_pipeline_completion",
    "update_circuit_breaker_state",
    "get_metrics_app",
]
