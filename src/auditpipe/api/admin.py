"""
Admin API endpoints.

Dead-letter management, retention cleanup and pipeline status. Every
route requires the admin bearer token.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from ..core.auth import authenticate_admin_token
from ..core.pipeline import AuditPipeline
from ..models import (
    DeadLetterActionResponse,
    DeadLetterListResponse,
    DeadLetterStatus,
    PipelineStatusResponse,
    RetentionCleanupResponse,
)

logger = structlog.get_logger(__name__)

router = APIRouter()


def get_pipeline(request: Request) -> AuditPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Audit pipeline not available",
        )
    return pipeline


@router.get(
    "/v1/admin/dead-letters",
    response_model=DeadLetterListResponse,
    summary="List dead-letter records",
)
async def list_dead_letters(
    status_filter: Optional[DeadLetterStatus] = Query(default=None, alias="status"),
    pipeline: AuditPipeline = Depends(get_pipeline),
    admin_token: str = Depends(authenticate_admin_token),
) -> DeadLetterListResponse:
    """List dead letters, newest failure first, optionally filtered by ``status``."""
    records = await pipeline.dead_letter.list_records(status_filter)
    logger.debug("Dead letters listed", count=len(records), status=status_filter.value if status_filter else None)
    return DeadLetterListResponse(count=len(records), records=[record.to_wire() for record in records])


@router.post(
    "/v1/admin/dead-letters/{record_id}/retry",
    response_model=DeadLetterActionResponse,
    responses={
        401: {"description": "Unauthorized - admin token required"},
        404: {"description": "Dead-letter record not found"},
        409: {"description": "Record already resolved or ignored"},
    },
    summary="Resubmit a dead letter now",
)
async def retry_dead_letter(
    record_id: str,
    pipeline: AuditPipeline = Depends(get_pipeline),
    admin_token: str = Depends(authenticate_admin_token),
) -> DeadLetterActionResponse:
    record = await pipeline.dead_letter.retry_now(record_id)
    pipeline.consumer.notify()
    logger.info("Dead letter resubmitted by operator", dead_letter_id=record_id, retry_count=record.retry_count)
    return DeadLetterActionResponse(
        id=record.id,
        status=record.status.value,
        message=f"Resubmitted on lane '{pipeline.settings.dead_letter.resubmit_lane}'",
    )


@router.post(
    "/v1/admin/dead-letters/{record_id}/resolve",
    response_model=DeadLetterActionResponse,
    summary="Mark a dead letter as resolved",
)
async def resolve_dead_letter(
    record_id: str,
    pipeline: AuditPipeline = Depends(get_pipeline),
    admin_token: str = Depends(authenticate_admin_token),
) -> DeadLetterActionResponse:
    record = await pipeline.dead_letter.resolve(record_id)
    return DeadLetterActionResponse(id=record.id, status=record.status.value, message="Dead letter resolved")


@router.post(
    "/v1/admin/dead-letters/{record_id}/ignore",
    response_model=DeadLetterActionResponse,
    summary="Mark a dead letter as ignored",
)
async def ignore_dead_letter(
    record_id: str,
    pipeline: AuditPipeline = Depends(get_pipeline),
    admin_token: str = Depends(authenticate_admin_token),
) -> DeadLetterActionResponse:
    record = await pipeline.dead_letter.ignore(record_id)
    return DeadLetterActionResponse(id=record.id, status=record.status.value, message="Dead letter ignored")


@router.post(
    "/v1/admin/retention/cleanup",
    response_model=RetentionCleanupResponse,
    summary="Delete expired audit records",
)
async def cleanup_retention(
    pipeline: AuditPipeline = Depends(get_pipeline),
    admin_token: str = Depends(authenticate_admin_token),
) -> RetentionCleanupResponse:
    removed = await pipeline.cleanup_retention()
    logger.info("Retention cleanup requested", removed=removed, admin_token=admin_token[:8] + "...")
    return RetentionCleanupResponse(removed=removed)


@router.get(
    "/v1/admin/status",
    response_model=PipelineStatusResponse,
    summary="Pipeline status",
)
async def get_admin_status(
    pipeline: AuditPipeline = Depends(get_pipeline),
    admin_token: str = Depends(authenticate_admin_token),
) -> PipelineStatusResponse:
    """Queue counts, storage statistics, dead letters by status and last health."""
    return PipelineStatusResponse(**await pipeline.status())
