"""
Persisted audit rows, dead-letter records and queue jobs.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import Field

from .events import RiskLevel, WireModel, utc_now


class OperationType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    READ = "read"
    ACCESS = "access"
    EXPORT = "export"


class PersistedAuditRecord(WireModel):
    """
    Normalised audit row written by the worker.

    Large JSON fields may hold a compression envelope instead of the
    original value.
    """

    id: str
    event_id: str
    event_type: str
    operation_type: OperationType
    entity_name: str
    entity_id: Optional[str] = None
    user_id: Optional[str] = None
    previous_data: Optional[Any] = None
    new_data: Optional[Any] = None
    description: str = ""
    risk_level: RiskLevel
    lgpd_relevant: bool = False
    metadata: Any = Field(default_factory=dict)
    request_context: Optional[Any] = None
    correlation_id: Optional[str] = None
    signature: Optional[str] = None
    timestamp: datetime
    created_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime


class DeadLetterStatus(str, Enum):
    PENDING = "pending"
    RETRY_SCHEDULED = "retry_scheduled"
    RESOLVED = "resolved"
    IGNORED = "ignored"

    @property
    def terminal(self) -> bool:
        return self in (DeadLetterStatus.RESOLVED, DeadLetterStatus.IGNORED)


class DeadLetterPriority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class DeadLetterRecord(WireModel):
    """A job that exhausted its retries or failed permanently."""

    id: str
    original_job_id: str
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    entity_name: Optional[str] = None
    entity_id: Optional[str] = None
    user_id: Optional[str] = None
    original_payload: Dict[str, Any]
    failure_reason: str
    error_type: str
    stack_trace: Optional[str] = None
    attempts_made: int
    max_attempts: int
    priority: DeadLetterPriority
    retryable: bool
    status: DeadLetterStatus = DeadLetterStatus.PENDING
    first_failed_at: datetime = Field(default_factory=utc_now)
    last_failed_at: datetime = Field(default_factory=utc_now)
    retry_at: Optional[datetime] = None
    retry_count: int = 0


class JobConfig(WireModel):
    """Per-job processing options carried in the queue payload."""

    compress: Optional[bool] = None
    sign: Optional[bool] = None
    priority: Optional[int] = None
    delay: Optional[int] = Field(default=None, description="Delay in milliseconds before the job is ready")
    attempts: Optional[int] = None


class QueueJob(WireModel):
    """
    Unit of work owned by the queue.

    ``data`` is the JSON payload ``{event, config?}``; the event stays in
    wire form until the worker validates it.
    """

    id: str
    lane: str
    data: Dict[str, Any]
    priority: int = 0
    attempts_made: int = 0
    max_attempts: int = 1
    available_at: float = 0.0
    enqueued_at: float = 0.0
    sequence: int = 0
    last_error: Optional[str] = None

    @property
    def event(self) -> Dict[str, Any]:
        return self.data.get("event") or {}

    @property
    def config(self) -> JobConfig:
        return JobConfig.model_validate(self.data.get("config") or {})
