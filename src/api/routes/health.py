"""
Health check routes.
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import Response

from src import __version__
from src.api.dependencies import get_link
from src.broker.connection import Link
from src.observability.metrics import get_metrics
from src.types.api import HealthResponse

router = APIRouter(tags=["Health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health of the API and broker connection.",
)
async def health_check(link: Link = Depends(get_link)) -> HealthResponse:
    """
    Perform a health check.

    Checks broker connectivity and returns service status.

    Args:
        link: Broker link.

    Returns:
        HealthResponse with service status.
    """
    broker_status = "healthy" if await link.ping() else "unhealthy"

    return HealthResponse(
        status="healthy" if broker_status == "healthy" else "degraded",
        version=__version__,
        broker=broker_status,
        timestamp=datetime.now(timezone.utc),
    )


@router.get(
    "/ready",
    summary="Readiness check",
    description="Check if the service is ready to receive traffic.",
)
async def readiness_check(link: Link = Depends(get_link)) -> dict:
    """
    Kubernetes readiness probe endpoint.

    Args:
        link: Broker link.

    Returns:
        Ready status.
    """
    return {"ready": await link.ping()}


@router.get(
    "/live",
    summary="Liveness check",
    description="Check if the service is alive.",
)
async def liveness_check() -> dict:
    """Kubernetes liveness probe endpoint."""
    return {"alive": True}


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics.",
)
async def metrics() -> Response:
    """
    Expose Prometheus metrics.

    Returns:
        Prometheus-formatted metrics.
    """
    metrics_collector = get_metrics()
    return Response(
        content=metrics_collector.get_metrics(),
        media_type=metrics_collector.get_content_type(),
    )
