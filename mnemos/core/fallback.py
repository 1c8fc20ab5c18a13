"""
Fallback chains for remote-dependent components.

The grader, refiner and reranker each have a remote implementation and a
local heuristic implementation of the same interface. A fallback chain
calls the primary and, when it raises, logs the failure and calls the
secondary with the same arguments. Business logic never contains the
try/except itself.

Usage:
    chain = FallbackChain("reranker", primary=CohereReranker(), secondary=BM25Reranker())
    scores = await chain.call("score", query, documents)

    # Or as a decorator on a single coroutine function
    @with_fallback("grader", secondary=heuristic_grade)
    async def remote_grade(query, document):
        ...
"""

import asyncio
from dataclasses import dataclass
from functools import wraps
from typing import Any, Awaitable, Callable, Generic, TypeVar

import structlog

from mnemos.monitoring.metrics import record_fallback

logger = structlog.get_logger(__name__)

T = TypeVar("T")
P = TypeVar("P")


def with_fallback(
    component: str,
    secondary: Callable[..., Awaitable[T]],
    fallback_on: tuple[type[BaseException], ...] = (Exception,),
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """
    Decorate an async callable so failures fall through to ``secondary``.

    Cancellation is never treated as a failure and always propagates.

    Args:
        component: Name used in logs and metrics.
        secondary: Callable invoked with the same arguments on failure.
        fallback_on: Exception types that trigger the fallback.
    """

    def decorator(primary: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(primary)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            try:
                return await primary(*args, **kwargs)
            except asyncio.CancelledError:
                raise
            except fallback_on as e:
                logger.warning(
                    "fallback_activated",
                    component=component,
                    primary=getattr(primary, "__qualname__", repr(primary)),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                record_fallback(component, type(e).__name__)
                return await secondary(*args, **kwargs)

        return wrapper

    return decorator


@dataclass
class FallbackChain(Generic[P]):
    """
    Pair of implementations of one interface, primary first.

    Args:
        component: Name used in logs and metrics.
        primary: Preferred (usually remote) implementation.
        secondary: Local implementation used when the primary fails.
    """

    component: str
    primary: P
    secondary: P
    fallback_on: tuple[type[BaseException], ...] = (Exception,)

    async def call(self, method: str, *args: Any, **kwargs: Any) -> Any:
        """Invoke ``method`` on the primary, falling back to the secondary."""
        guarded = with_fallback(
            self.component,
            getattr(self.secondary, method),
            self.fallback_on,
        )(getattr(self.primary, method))
        return await guarded(*args, **kwargs)
