"""Mnemos API - Main FastAPI Application.

This module provides the HTTP surface for the memory system.
It includes:
- CORS middleware configuration
- Health check endpoints
- Memory lifecycle and per-user endpoints
- Hybrid search and agentic retrieval endpoints
- Prometheus metrics at /metrics
- Container startup/shutdown (hot cache sweep, maintenance scheduler)

Usage:
    # Run with uvicorn
    uvicorn mnemos.api.main:app --reload

    # Or run directly
    python -m mnemos.api.main
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mnemos import __version__
from mnemos.api.dependencies import reset_dependencies, set_container
from mnemos.api.models import ErrorResponse, ValidationErrorDetail, ValidationErrorResponse
from mnemos.api.routes.health import router as health_router, set_server_start_time
from mnemos.api.routes.memories import router as memories_router
from mnemos.api.routes.retrieval import router as retrieval_router
from mnemos.config.settings import get_settings
from mnemos.core.container import DependencyContainer
from mnemos.core.exceptions import (
    CircuitBreakerOpenError,
    DependencyError,
    InvalidInputError,
    InvariantViolationError,
    MnemosError,
    NotFoundError,
)
from mnemos.monitoring.metrics import get_metrics_app

logger = structlog.get_logger(__name__)

# API metadata for OpenAPI documentation
API_TITLE = "Mnemos API"
API_DESCRIPTION = """
## Tiered Memory and Self-Correcting Retrieval

Mnemos stores facts about users as versioned memories and retrieves them
with an iterative retrieve, grade and refine loop.

### Features

- **Versioned Memories**: near-duplicate facts become new versions of one chain
- **Hot/Warm/Cold Tiers**: access-driven tiering with importance decay
- **Hybrid Search**: vector and lexical search fused with reciprocal rank fusion
- **Agentic Retrieval**: relevance grading, query refinement and reranking
- **Graceful Degradation**: local heuristics take over when remote scorers fail
"""

OPENAPI_TAGS = [
    {"name": "Health", "description": "System health and status endpoints"},
    {"name": "Memories", "description": "Store, version, forget and delete memories"},
    {"name": "Retrieval", "description": "Hybrid search and agentic retrieval"},
]


# =============================================================================
# Exception Handlers
# =============================================================================


def _error_response(
    request: Request,
    status_code: int,
    error: str,
    exc: MnemosError,
) -> JSONResponse:
    response = ErrorResponse(
        error=error,
        message=exc.message,
        detail=exc.details or None,
        path=request.url.path,
        timestamp=datetime.now(timezone.utc),
    )
    return JSONResponse(status_code=status_code, content=response.model_dump(mode="json"))


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle Pydantic validation errors with detailed response."""
    errors = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"])
        errors.append(ValidationErrorDetail(
            field=field,
            message=error["msg"],
            value=error.get("input"),
        ))

    response = ValidationErrorResponse(
        errors=errors,
        timestamp=datetime.now(timezone.utc),
    )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=response.model_dump(mode="json"),
    )


async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return _error_response(request, status.HTTP_404_NOT_FOUND, "not_found", exc)


async def invalid_input_handler(request: Request, exc: InvalidInputError) -> JSONResponse:
    return _error_response(request, status.HTTP_422_UNPROCESSABLE_ENTITY, "invalid_input", exc)


async def invariant_violation_handler(
    request: Request, exc: InvariantViolationError
) -> JSONResponse:
    logger.error("invariant_violation", path=request.url.path, error=exc.message)
    return _error_response(request, status.HTTP_409_CONFLICT, "invariant_violation", exc)


async def dependency_error_handler(request: Request, exc: MnemosError) -> JSONResponse:
    """Remote dependency failed with no local fallback (store or vectorizer)."""
    logger.warning(
        "dependency_unavailable",
        path=request.url.path,
        error=exc.message,
        error_type=type(exc).__name__,
    )
    return _error_response(
        request, status.HTTP_503_SERVICE_UNAVAILABLE, "dependency_unavailable", exc
    )


async def generic_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        error_type=type(exc).__name__,
    )

    response = ErrorResponse(
        error="internal_server_error",
        message="An unexpected error occurred",
        detail=str(exc) if get_settings().debug else None,
        path=request.url.path,
        timestamp=datetime.now(timezone.utc),
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=response.model_dump(mode="json"),
    )


# =============================================================================
# Application Factory
# =============================================================================


def create_app(container: Optional[DependencyContainer] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        container: Pre-built dependency container. When omitted, one is
            created from settings at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        Application lifespan manager.

        Handles startup and shutdown events:
        - Startup: Initialize the container (store, hot cache, scheduler)
        - Shutdown: Stop background services, reset dependencies
        """
        logger.info("application_starting")
        set_server_start_time()

        active = container or DependencyContainer()
        await active.initialize()
        set_container(active)

        logger.info("application_started", backend=active.store.name)

        yield

        logger.info("application_stopping")
        try:
            await active.shutdown()
        except Exception as e:
            logger.error("container_shutdown_error", error=str(e))

        reset_dependencies()
        logger.info("application_stopped")

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        openapi_tags=OPENAPI_TAGS,
    )

    # Configure CORS middleware (from settings)
    settings = container.settings if container else get_settings()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "Accept"],
    )

    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(NotFoundError, not_found_handler)
    app.add_exception_handler(InvalidInputError, invalid_input_handler)
    app.add_exception_handler(InvariantViolationError, invariant_violation_handler)
    app.add_exception_handler(DependencyError, dependency_error_handler)
    app.add_exception_handler(CircuitBreakerOpenError, dependency_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    @app.get("/", include_in_schema=False)
    async def root() -> dict:
        """Root endpoint - points at documentation."""
        return {
            "name": API_TITLE,
            "version": __version__,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    app.include_router(health_router)
    app.include_router(memories_router)
    app.include_router(retrieval_router)

    app.mount("/metrics", get_metrics_app())

    return app


app = create_app()


# =============================================================================
# Development Server
# =============================================================================


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "mnemos.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.is_development,
        log_level=settings.log_level.lower(),
    )
