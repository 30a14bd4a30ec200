"""
Health check routes.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import Response

from taskq import __version__
from taskq.api.dependencies import MetricsDep, SettingsDep, StoreDep
from taskq.types.api import HealthResponse
from taskq.types.task import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


async def _store_healthy(store) -> bool:
    try:
        await store.stats()
    except Exception as e:
        logger.warning(f"Queue store health check failed: {e}")
        return False
    return True


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health of the API and queue store.",
)
async def health_check(store: StoreDep, settings: SettingsDep) -> HealthResponse:
    """
    Perform a health check.

    Checks queue store connectivity and returns service status.
    """
    store_status = "healthy" if await _store_healthy(store) else "unhealthy"

    return HealthResponse(
        status="healthy" if store_status == "healthy" else "degraded",
        version=__version__,
        store=f"{settings.store_backend}:{store_status}",
        timestamp=utcnow(),
    )


@router.get(
    "/ready",
    summary="Readiness check",
    description="Check if the service is ready to receive traffic.",
)
async def readiness_check(store: StoreDep) -> dict:
    """Kubernetes readiness check endpoint."""
    return {"ready": await _store_healthy(store)}


@router.get(
    "/live",
    summary="Liveness check",
    description="Check if the service is alive.",
)
async def liveness_check() -> dict:
    """Kubernetes liveness check endpoint."""
    return {"alive": True}


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics.",
)
async def metrics(metrics_collector: MetricsDep) -> Response:
    return Response(
        content=metrics_collector.get_metrics(),
        media_type=metrics_collector.get_content_type(),
    )
