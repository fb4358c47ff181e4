"""
Prometheus metrics endpoint.

Exposes the pipeline's metrics registry in Prometheus text format.
"""

import structlog
from fastapi import APIRouter, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="""
    Prometheus metrics endpoint in standard text format.

    **Key Metrics:**
    - audit_events_total{event_type,risk_level} - Events emitted
    - audit_capture_events_total{stage,http_method,risk_level} - Capture events
    - audit_events_processed_total{event_type,status} - Job attempts
    - audit_queue_size{queue_name} - Waiting jobs per lane
    - audit_error_rate, audit_throughput_per_minute - Rolling figures
    - audit_dead_letters_total{priority,retryable} - Dead letters
    """,
)
async def get_metrics(request: Request) -> Response:
    """Return the pipeline metrics in Prometheus text format."""
    pipeline = getattr(request.app.state, "pipeline", None)

    if not pipeline:
        logger.warning("Metrics collector not initialized")
        return Response(
            content="# Metrics collector not initialized\n",
            media_type=CONTENT_TYPE_LATEST,
        )

    try:
        metrics_data = pipeline.metrics.export()
        logger.debug("Metrics scraped successfully", size_bytes=len(metrics_data))
        return Response(content=metrics_data, media_type=CONTENT_TYPE_LATEST)

    except Exception as e:
        logger.error(
            "Failed to generate metrics",
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        error_metrics = f"""# HELP audit_metrics_error Metrics generation errors
# TYPE audit_metrics_error counter
audit_metrics_error{{error="{type(e).__name__}"}} 1
"""
        return Response(content=error_metrics, media_type=CONTENT_TYPE_LATEST)
