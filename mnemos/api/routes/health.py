"""Health check endpoints for the Mnemos API.

Provides system health status including the tiered store, the hot cache
sweep, the maintenance scheduler and remote-service circuit breakers.
"""

from datetime import datetime, timezone
import time
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException

from mnemos import __version__
from mnemos.api.dependencies import get_container
from mnemos.api.models import HealthCheckResponse, HealthStatus
from mnemos.core.circuit_breaker import open_circuits
from mnemos.core.container import DependencyContainer

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["Health"])

# Track server start time for uptime calculation
_server_start_time: Optional[float] = None


def set_server_start_time() -> None:
    """Set the server start time. Called on application startup."""
    global _server_start_time
    _server_start_time = time.time()


def get_uptime_seconds() -> Optional[float]:
    """Get server uptime in seconds."""
    if _server_start_time is None:
        return None
    return time.time() - _server_start_time


async def check_store_health(container: DependencyContainer) -> HealthStatus:
    """Check tiered store connectivity."""
    start_time = time.time()
    try:
        reachable = await container.store.ping()
        latency = (time.time() - start_time) * 1000
        if not reachable:
            return HealthStatus(
                status="unhealthy",
                latency_ms=round(latency, 2),
                message=f"{container.store.name} store is not reachable",
            )
        return HealthStatus(
            status="healthy",
            latency_ms=round(latency, 2),
            message=f"Connected to {container.store.name} store",
        )
    except Exception as e:
        latency = (time.time() - start_time) * 1000
        logger.error("store_health_check_failed", error=str(e))
        return HealthStatus(
            status="unhealthy",
            latency_ms=round(latency, 2),
            message=f"Store check failed: {str(e)[:100]}",
        )


def check_hot_cache_health(container: DependencyContainer) -> HealthStatus:
    """Check the hot cache sweep."""
    stats = container.cache.stats()
    if container.cache.is_running:
        return HealthStatus(
            status="healthy",
            message=f"Sweep running, {int(stats['users'])} users cached",
        )
    return HealthStatus(status="degraded", message="Hot cache sweep is not running")


def check_scheduler_health(container: DependencyContainer) -> HealthStatus:
    """Check scheduler status."""
    if not container.settings.scheduler_enabled:
        return HealthStatus(status="healthy", message="Scheduler disabled")
    if container.scheduler.is_running:
        return HealthStatus(status="healthy", message="Scheduler is running")
    return HealthStatus(status="degraded", message="Scheduler is not running")


def check_remote_services() -> HealthStatus:
    """Report remote services whose circuit breaker is open."""
    tripped = open_circuits()
    if tripped:
        return HealthStatus(
            status="degraded",
            message=f"Circuit open: {', '.join(tripped)}",
        )
    return HealthStatus(status="healthy", message="All circuits closed")


@router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health Check",
    description="Check the health status of the API and its dependencies.",
)
async def health_check(
    container: DependencyContainer = Depends(get_container),
) -> HealthCheckResponse:
    """
    Perform a health check of all system components.

    Returns the status of:
    - Tiered store
    - Hot cache sweep
    - Scheduler (APScheduler)
    - Remote scoring services (circuit breakers)
    """
    services = {
        "store": await check_store_health(container),
        "hot_cache": check_hot_cache_health(container),
        "scheduler": check_scheduler_health(container),
        "remote_services": check_remote_services(),
    }

    # Determine overall status
    statuses = [s.status for s in services.values()]
    if all(s == "healthy" for s in statuses):
        overall_status = "healthy"
    elif any(s == "unhealthy" for s in statuses):
        overall_status = "unhealthy"
    else:
        overall_status = "degraded"

    return HealthCheckResponse(
        status=overall_status,
        version=__version__,
        timestamp=datetime.now(timezone.utc),
        services=services,
        uptime_seconds=get_uptime_seconds(),
    )


@router.get(
    "/health/live",
    summary="Liveness Check",
    description="Simple liveness check for container orchestration.",
)
async def liveness() -> dict:
    """Returns 200 if the service is alive."""
    return {"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get(
    "/health/ready",
    summary="Readiness Check",
    description="Check if the service is ready to accept traffic.",
)
async def readiness(
    container: DependencyContainer = Depends(get_container),
) -> dict:
    """Returns 200 only if the tiered store is reachable."""
    store_status = await check_store_health(container)

    if store_status.status == "unhealthy":
        raise HTTPException(
            status_code=503,
            detail="Service not ready: tiered store unavailable",
        )

    return {"status": "ready", "timestamp": datetime.now(timezone.utc).isoformat()}
