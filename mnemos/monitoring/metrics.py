"""
Prometheus metrics for Mnemos observability.

Covers the write path (memory operations), the hot cache, the agentic
retrieval pipeline and the resilience layer (fallbacks, circuit breakers).

Usage:
    from mnemos.monitoring.metrics import track_memory_operation

    with track_memory_operation("create"):
        await manager.create(user_id, candidate)
"""

import time
from contextlib import contextmanager
from typing import Generator

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.applications import Starlette
from starlette.responses import Response
from starlette.routing import Route


# =============================================================================
# Metric Definitions
# =============================================================================

# Memory lifecycle metrics
MEMORY_OPERATIONS = Counter(
    "mnemos_memory_operations_total",
    "Total memory lifecycle operations",
    ["operation", "status"],
)

MEMORY_OPERATION_LATENCY = Histogram(
    "mnemos_memory_operation_latency_seconds",
    "Latency of memory lifecycle operations",
    ["operation"],
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

MEMORY_DEDUP_HITS = Counter(
    "mnemos_memory_dedup_hits_total",
    "Writes that matched an existing memory and produced a new version",
)

# Store metrics
STORE_OPERATIONS = Counter(
    "mnemos_store_operations_total",
    "Total tiered store operations",
    ["store", "operation", "status"],
)

STORE_LATENCY = Histogram(
    "mnemos_store_latency_seconds",
    "Latency of tiered store operations",
    ["store", "operation"],
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 5.0],
)

# Hot cache metrics
HOT_CACHE_REQUESTS = Counter(
    "mnemos_hot_cache_requests_total",
    "Hot cache lookups",
    ["result"],
)

HOT_CACHE_EVICTIONS = Counter(
    "mnemos_hot_cache_evictions_total",
    "Hot cache evictions",
    ["reason"],
)

HOT_CACHE_USERS = Gauge(
    "mnemos_hot_cache_users",
    "Number of users currently resident in the hot cache",
)

# Retrieval pipeline metrics
PIPELINE_DURATION = Histogram(
    "mnemos_pipeline_duration_seconds",
    "Duration of agentic retrieval calls",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
)

PIPELINE_COMPLETIONS = Counter(
    "mnemos_pipeline_completions_total",
    "Agentic retrieval completions by reason",
    ["reason"],
)

PIPELINE_ITERATIONS = Histogram(
    "mnemos_pipeline_iterations",
    "Iterations used per agentic retrieval call",
    buckets=[1, 2, 3, 4, 5, 10],
)

# Resilience metrics
FALLBACK_ACTIVATIONS = Counter(
    "mnemos_fallback_activations_total",
    "Times a local fallback replaced a failing remote implementation",
    ["component", "error_type"],
)

CIRCUIT_BREAKER_STATE = Gauge(
    "mnemos_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=half_open, 2=open)",
    ["service"],
)

CIRCUIT_BREAKER_FAILURES = Counter(
    "mnemos_circuit_breaker_failures_total",
    "Total failures recorded by circuit breakers",
    ["service"],
)


# =============================================================================
# Tracking Context Managers
# =============================================================================


@contextmanager
def track_memory_operation(operation: str) -> Generator[None, None, None]:
    """
    Context manager to track memory lifecycle operation duration and status.

    Usage:
        with track_memory_operation("consolidate"):
            await manager.consolidate(user_id)
    """
    start_time = time.perf_counter()
    status = "success"
    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        duration = time.perf_counter() - start_time
        MEMORY_OPERATION_LATENCY.labels(operation=operation).observe(duration)
        MEMORY_OPERATIONS.labels(operation=operation, status=status).inc()


@contextmanager
def track_store_operation(
    store: str,
    operation: str,
) -> Generator[None, None, None]:
    """
    Context manager to track tiered store operations.

    Usage:
        with track_store_operation("supabase", "similarity_search"):
            rows = await store.similarity_search(...)
    """
    start_time = time.perf_counter()
    status = "success"
    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        duration = time.perf_counter() - start_time
        STORE_OPERATIONS.labels(store=store, operation=operation, status=status).inc()
        STORE_LATENCY.labels(store=store, operation=operation).observe(duration)


def record_pipeline_completion(reason: str, iterations: int, duration: float) -> None:
    """Record the outcome of one agentic retrieval call."""
    PIPELINE_COMPLETIONS.labels(reason=reason).inc()
    PIPELINE_ITERATIONS.observe(iterations)
    PIPELINE_DURATION.observe(duration)


def record_fallback(component: str, error_type: str) -> None:
    """Record that a component fell back to its secondary implementation."""
    FALLBACK_ACTIVATIONS.labels(component=component, error_type=error_type).inc()


def record_cache_lookup(hit: bool) -> None:
    """Record a hot cache hit or miss."""
    HOT_CACHE_REQUESTS.labels(result="hit" if hit else "miss").inc()


def record_cache_eviction(reason: str, count: int = 1) -> None:
    """Record hot cache evictions ("ttl", "capacity" or "invalidate")."""
    if count > 0:
        HOT_CACHE_EVICTIONS.labels(reason=reason).inc(count)


def update_circuit_breaker_state(service: str, state: str) -> None:
    """
    Update circuit breaker state gauge.

    Args:
        service: Service name
        state: Circuit state ("closed", "half_open", "open")
    """
    state_map = {"closed": 0, "half_open": 1, "open": 2}
    CIRCUIT_BREAKER_STATE.labels(service=service).set(state_map.get(state, 0))


def record_circuit_breaker_failure(service: str) -> None:
    """Record a circuit breaker failure."""
    CIRCUIT_BREAKER_FAILURES.labels(service=service).inc()


# =============================================================================
# Metrics Endpoint
# =============================================================================


async def metrics_endpoint(request) -> Response:
    """Prometheus metrics endpoint handler."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )


def get_metrics_app() -> Starlette:
    """
    Get a Starlette app for serving metrics.

    Mounted at /metrics by the API:
        app.mount("/metrics", get_metrics_app())
    """
    return Starlette(
        routes=[
            Route("/", metrics_endpoint),
        ]
    )
