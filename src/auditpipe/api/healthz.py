"""
Health check endpoints.

- /healthz: Liveness probe (always 200 if service alive)
- /readyz: Readiness probe (full component report, 503 when critical)
"""

from typing import Any, Dict

import structlog
from fastapi import APIRouter, Request, Response, status

from .. import __version__
from ..models.events import utc_now

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get(
    "/healthz",
    status_code=200,
    summary="Liveness probe",
)
async def liveness_check() -> Dict[str, Any]:
    """Liveness probe - always returns 200 if service is alive."""
    return {
        "status": "alive",
        "timestamp": utc_now().isoformat(),
        "service": "auditpipe",
        "version": __version__,
    }


@router.get(
    "/readyz",
    summary="Readiness probe",
    description="""
    Readiness probe endpoint.

    Runs every component check (broker, database, queue, worker, capture)
    and returns the health payload. Degraded components still report 200;
    a critical overall status returns 503 Service Unavailable.
    """,
)
async def readiness_check(request: Request, response: Response) -> Dict[str, Any]:
    pipeline = getattr(request.app.state, "pipeline", None)

    if not pipeline:
        logger.warning("Health checker not initialized")
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {
            "status": "critical",
            "reason": "pipeline_not_initialized",
            "timestamp": utc_now().isoformat(),
        }

    try:
        health = await pipeline.health.check_all()
    except Exception as e:
        logger.error(
            "Readiness check failed",
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {
            "status": "critical",
            "reason": "health_check_error",
            "error": str(e),
            "timestamp": utc_now().isoformat(),
        }

    response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE if health.is_critical else status.HTTP_200_OK
    return health.to_dict()
