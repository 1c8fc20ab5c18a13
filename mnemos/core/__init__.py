"""
Core infrastructure modules for Mnemos.

Provides common utilities used across the application:
- exceptions: Standardized exception hierarchy
- circuit_breaker: Fail-fast breakers for Cohere and Anthropic calls
- fallback: Remote-to-local fallback chains
- container: Composition root with service lifecycle
"""

from mnemos.core.exceptions import (
    MnemosError,
    RetryableError,
    PermanentError,
    InitializationError,
    NotFoundError,
    InvalidInputError,
    InvariantViolationError,
    DependencyError,
    DependencyTimeoutError,
    DependencyFailureError,
    ConfigurationError,
    CircuitBreakerOpenError,
)

from mnemos.core.circuit_breaker import (
    CircuitBreaker,
    CircuitState,
    EMBED_SERVICE,
    RERANK_SERVICE,
    COMPLETION_SERVICE,
    breaker_for,
    get_circuit_breaker,
    get_all_circuit_breakers,
    open_circuits,
    reset_all_circuit_breakers,
)

from mnemos.core.fallback import FallbackChain, with_fallback

from mnemos.core.container import DependencyContainer

__all__ = [
    # Exceptions
    "MnemosError",
    "RetryableError",
    "PermanentError",
    "InitializationError",
    "NotFoundError",
    "InvalidInputError",
    "InvariantViolationError",
    "DependencyError",
    "DependencyTimeoutError",
    "DependencyFailureError",
    "ConfigurationError",
    "CircuitBreakerOpenError",
    # Circuit Breaker
    "CircuitBreaker",
    "CircuitState",
    "EMBED_SERVICE",
    "RERANK_SERVICE",
    "COMPLETION_SERVICE",
    "breaker_for",
    "get_circuit_breaker",
    "get_all_circuit_breakers",
    "open_circuits",
    "reset_all_circuit_breakers",
    # Fallback
    "FallbackChain",
    "with_fallback",
    # Dependency Container
    "DependencyContainer",
]
