"""
Admin API data models.

Contains Pydantic models for dead-letter management and retention.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class DeadLetterListResponse(BaseModel):
    """Response model for dead-letter listings."""

    count: int = Field(..., description="Number of records returned")
    records: List[Dict[str, Any]] = Field(..., description="Dead-letter records in wire form")


class DeadLetterActionResponse(BaseModel):
    """Response model for retry, resolve and ignore."""

    id: str = Field(..., description="Dead-letter record id")
    status: str = Field(..., description="Status after the action")
    message: str = Field(..., description="Outcome description")


class RetentionCleanupResponse(BaseModel):
    removed: int = Field(..., description="Expired audit records removed")


class PipelineStatusResponse(BaseModel):
    """Response model for pipeline status."""

    queue: Dict[str, Dict[str, int]] = Field(..., description="Per-lane job counts")
    storage: Dict[str, Any] = Field(..., description="Audit store statistics")
    dead_letters: Dict[str, int] = Field(..., description="Dead letters by status")
    health: Optional[str] = Field(default=None, description="Last computed overall health")


class ErrorResponse(BaseModel):
    """Standard error response model."""

    error: str = Field(..., description="Error code")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(default=None, description="Additional error details")
