"""
Pydantic data models package.

Contains all data validation models for:
- Audit events and their variants
- Persisted audit rows and dead-letter records
- Queue jobs
- Admin API requests and responses
"""

from .events import (
    AuditEvent,
    BaseAuditEvent,
    EntityAuditEvent,
    EventType,
    OperationAuditEvent,
    OperationError,
    RequestContext,
    RiskLevel,
    SecurityAuditEvent,
    SensitiveDataAuditEvent,
    SystemAuditEvent,
    parse_event,
)
from .records import (
    DeadLetterPriority,
    DeadLetterRecord,
    DeadLetterStatus,
    JobConfig,
    OperationType,
    PersistedAuditRecord,
    QueueJob,
)
from .admin import (
    DeadLetterActionResponse,
    DeadLetterListResponse,
    ErrorResponse,
    PipelineStatusResponse,
    RetentionCleanupResponse,
)

__all__ = [
    # Event models
    "AuditEvent",
    "BaseAuditEvent",
    "EntityAuditEvent",
    "EventType",
    "OperationAuditEvent",
    "OperationError",
    "RequestContext",
    "RiskLevel",
    "SecurityAuditEvent",
    "SensitiveDataAuditEvent",
    "SystemAuditEvent",
    "parse_event",

    # Record models
    "DeadLetterPriority",
    "DeadLetterRecord",
    "DeadLetterStatus",
    "JobConfig",
    "OperationType",
    "PersistedAuditRecord",
    "QueueJob",

    # Admin models
    "DeadLetterActionResponse",
    "DeadLetterListResponse",
    "ErrorResponse",
    "PipelineStatusResponse",
    "RetentionCleanupResponse",
]
