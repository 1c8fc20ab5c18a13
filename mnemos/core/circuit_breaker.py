"""
Circuit breakers for the remote scorers and the embedding service.

Each remote dependency (Cohere embeddings, Cohere rerank, the Anthropic
grader/refiner) gets one process-wide breaker. Once a service trips, the
read path stops waiting on its timeouts and the fallback chains drop
straight to the local heuristics until the recovery window passes. The
write path has no local fallback, so a tripped embedding breaker surfaces
as CircuitBreakerOpenError (HTTP 503).

States:
- CLOSED: calls go to the remote service
- OPEN: calls fail fast; heuristics answer instead
- HALF_OPEN: recovery window elapsed, trial calls allowed

Usage:
    breaker = breaker_for(RERANK_SERVICE, settings)

    @breaker
    async def score(query, documents):
        ...
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

import structlog

from mnemos.config.settings import Settings, get_settings
from mnemos.core.exceptions import CircuitBreakerOpenError
from mnemos.monitoring.metrics import (
    record_circuit_breaker_failure,
    update_circuit_breaker_state,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

EMBED_SERVICE = "cohere_embed"
RERANK_SERVICE = "cohere_rerank"
COMPLETION_SERVICE = "anthropic"


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    """
    Breaker guarding one remote service.

    Args:
        name: Service name, one of the *_SERVICE constants in production
        failure_threshold: Consecutive failures that trip the breaker
        recovery_timeout: Seconds before trial calls are let through
        success_threshold: Trial successes needed to close again
    """

    name: str
    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    success_threshold: int = 2

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_count: int = field(default=0, init=False)
    _success_count: int = field(default=0, init=False)
    _last_failure_time: Optional[float] = field(default=None, init=False)
    _last_error: Optional[str] = field(default=None, init=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)

    def _transition(self, state: CircuitState, event: str, **context: Any) -> None:
        self._state = state
        update_circuit_breaker_state(self.name, state.value)
        logger.info(event, service=self.name, **context)

    @property
    def state(self) -> CircuitState:
        """Current state; an expired OPEN window moves to HALF_OPEN on read."""
        if self._state == CircuitState.OPEN and self._last_failure_time:
            if time.time() - self._last_failure_time >= self.recovery_timeout:
                self._success_count = 0
                self._transition(CircuitState.HALF_OPEN, "remote_service_trial")
        return self._state

    @property
    def is_closed(self) -> bool:
        return self.state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def can_execute(self) -> bool:
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def time_until_recovery(self) -> float:
        """Seconds until trial calls are allowed (0 unless OPEN)."""
        if self._state != CircuitState.OPEN or not self._last_failure_time:
            return 0.0
        elapsed = time.time() - self._last_failure_time
        return max(0.0, self.recovery_timeout - elapsed)

    def describe(self) -> dict[str, Any]:
        """State summary for the health endpoint."""
        return {
            "state": self.state.value,
            "failures": self._failure_count,
            "retry_in_seconds": round(self.time_until_recovery(), 1),
            "last_error": self._last_error,
        }

    async def record_success(self) -> None:
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.success_threshold:
                    self._failure_count = 0
                    self._success_count = 0
                    self._last_error = None
                    self._transition(CircuitState.CLOSED, "remote_service_recovered")
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    async def record_failure(self, error: Optional[BaseException] = None) -> None:
        async with self._lock:
            self._failure_count += 1
            self._last_failure_time = time.time()
            if error is not None:
                self._last_error = type(error).__name__
            record_circuit_breaker_failure(self.name)

            if self._state == CircuitState.HALF_OPEN:
                self._transition(
                    CircuitState.OPEN,
                    "remote_service_still_failing",
                    error=self._last_error,
                )
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.failure_threshold
            ):
                self._transition(
                    CircuitState.OPEN,
                    "remote_service_tripped",
                    failure_count=self._failure_count,
                    recovery_timeout=self.recovery_timeout,
                    error=self._last_error,
                )

    def reset(self) -> None:
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time = None
        self._last_error = None
        self._state = CircuitState.CLOSED
        update_circuit_breaker_state(self.name, CircuitState.CLOSED.value)

    def __call__(self, func: Callable[..., T]) -> Callable[..., T]:
        """Wrap a remote call; an open breaker fails fast without calling it."""

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            if not self.can_execute():
                raise CircuitBreakerOpenError(self.name, self.time_until_recovery())

            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                await self.record_failure(e)
                raise
            await self.record_success()
            return result

        return wrapper


# =============================================================================
# Process-wide Registry
# =============================================================================


_circuit_breakers: dict[str, CircuitBreaker] = {}


def get_circuit_breaker(
    name: str,
    failure_threshold: int = 5,
    recovery_timeout: float = 60.0,
) -> CircuitBreaker:
    """
    Get or create the breaker for a service.

    The first caller's thresholds win; later calls return the same instance
    so every client of a service shares its failure count.
    """
    if name not in _circuit_breakers:
        _circuit_breakers[name] = CircuitBreaker(
            name=name,
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
        )
    return _circuit_breakers[name]


def breaker_for(service: str, settings: Optional[Settings] = None) -> CircuitBreaker:
    """Breaker for a remote service, with thresholds from settings."""
    settings = settings or get_settings()
    return get_circuit_breaker(
        service,
        failure_threshold=settings.circuit_failure_threshold,
        recovery_timeout=settings.circuit_recovery_seconds,
    )


def get_all_circuit_breakers() -> dict[str, CircuitBreaker]:
    return _circuit_breakers.copy()


def open_circuits() -> list[str]:
    """Names of services currently failing fast, sorted."""
    return sorted(name for name, b in _circuit_breakers.items() if b.state == CircuitState.OPEN)


def reset_all_circuit_breakers() -> None:
    for breaker in _circuit_breakers.values():
        breaker.reset()
