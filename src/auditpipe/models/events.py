"""
Audit event data models.

AuditEvent is a closed union discriminated by ``eventType``. Each variant
owns a fixed set of event types. Wire form uses camelCase keys; Python
attributes are snake_case.

- lgpdRelevant events must carry riskLevel HIGH or CRITICAL
- SensitiveData events are always lgpdRelevant
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union, get_args

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic.alias_generators import to_camel


class RiskLevel(str, Enum):
    """Risk levels, ordered from least to most severe."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _RISK_ORDER[self]


_RISK_ORDER = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}


class EventType(str, Enum):
    """All audit event types understood by the pipeline."""

    ENTITY_CREATED = "ENTITY_CREATED"
    ENTITY_UPDATED = "ENTITY_UPDATED"
    ENTITY_DELETED = "ENTITY_DELETED"
    ENTITY_ACCESSED = "ENTITY_ACCESSED"

    OPERATION_START = "OPERATION_START"
    OPERATION_SUCCESS = "OPERATION_SUCCESS"
    OPERATION_ERROR = "OPERATION_ERROR"

    SENSITIVE_DATA_ACCESSED = "SENSITIVE_DATA_ACCESSED"
    SENSITIVE_DATA_EXPORTED = "SENSITIVE_DATA_EXPORTED"

    SECURITY_INCIDENT = "SECURITY_INCIDENT"
    FAILED_LOGIN = "FAILED_LOGIN"
    USER_LOGIN = "USER_LOGIN"
    USER_LOGOUT = "USER_LOGOUT"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    PERMISSION_CHANGED = "PERMISSION_CHANGED"
    DATA_BREACH = "DATA_BREACH"

    SYSTEM_ERROR = "SYSTEM_ERROR"
    SYSTEM_WARNING = "SYSTEM_WARNING"
    SYSTEM_INFO = "SYSTEM_INFO"
    SYSTEM_FAILURE = "SYSTEM_FAILURE"


class WireModel(BaseModel):
    """Base for models exchanged in camelCase."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class RequestContext(WireModel):
    """Where the audited request came from."""

    ip: str = "unknown"
    user_agent: str = "unknown"
    session_id: Optional[str] = None
    endpoint: Optional[str] = None
    method: Optional[str] = None


def _new_event_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BaseAuditEvent(WireModel):
    """Fields shared by every audit event variant."""

    event_id: str = Field(default_factory=_new_event_id)
    entity_name: str = Field(min_length=1)
    entity_id: Optional[str] = None
    user_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)
    risk_level: RiskLevel = RiskLevel.LOW
    lgpd_relevant: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)
    correlation_id: Optional[str] = None
    request_context: Optional[RequestContext] = None

    @field_validator("timestamp")
    def ensure_timezone(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @model_validator(mode="after")
    def check_lgpd_risk(self) -> "BaseAuditEvent":
        if self.lgpd_relevant and self.risk_level not in (RiskLevel.HIGH, RiskLevel.CRITICAL):
            raise ValueError(
                f"LGPD relevant events require risk level HIGH or CRITICAL, got {self.risk_level.value}"
            )
        return self


class EntityAuditEvent(BaseAuditEvent):
    """Create, update, delete or read of a business entity."""

    event_type: Literal[
        "ENTITY_CREATED",
        "ENTITY_UPDATED",
        "ENTITY_DELETED",
        "ENTITY_ACCESSED",
    ]
    previous_data: Optional[Dict[str, Any]] = None
    new_data: Optional[Dict[str, Any]] = None
    changed_fields: List[str] = Field(default_factory=list)
    sensitive_fields_changed: List[str] = Field(default_factory=list)


class OperationError(WireModel):
    message: str
    status: int = 500
    type: str = "Error"


class OperationAuditEvent(BaseAuditEvent):
    """Lifecycle of a request handled by the host application."""

    event_type: Literal[
        "OPERATION_START",
        "OPERATION_SUCCESS",
        "OPERATION_ERROR",
    ]
    controller: Optional[str] = None
    method: Optional[str] = None
    http_method: str
    operation: str
    duration: Optional[float] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    body: Optional[Any] = None
    error: Optional[OperationError] = None


class SensitiveDataAuditEvent(BaseAuditEvent):
    """Access to or export of personal data."""

    event_type: Literal[
        "SENSITIVE_DATA_ACCESSED",
        "SENSITIVE_DATA_EXPORTED",
    ]
    risk_level: RiskLevel = RiskLevel.HIGH
    lgpd_relevant: bool = True
    sensitive_fields: List[str] = Field(default_factory=list)
    legal_basis: Optional[str] = None
    purpose: Optional[str] = None

    @model_validator(mode="after")
    def check_always_lgpd(self) -> "SensitiveDataAuditEvent":
        if not self.lgpd_relevant:
            raise ValueError("Sensitive data events are always LGPD relevant")
        return self


class SecurityAuditEvent(BaseAuditEvent):
    """Authentication and security incidents."""

    event_type: Literal[
        "SECURITY_INCIDENT",
        "FAILED_LOGIN",
        "USER_LOGIN",
        "USER_LOGOUT",
        "PASSWORD_CHANGED",
        "PERMISSION_CHANGED",
        "DATA_BREACH",
    ]
    outcome: Optional[str] = None
    reason: Optional[str] = None


class SystemAuditEvent(BaseAuditEvent):
    event_type: Literal[
        "SYSTEM_ERROR",
        "SYSTEM_WARNING",
        "SYSTEM_INFO",
        "SYSTEM_FAILURE",
    ]
    component: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


AuditEvent = Annotated[
    Union[
        EntityAuditEvent,
        OperationAuditEvent,
        SensitiveDataAuditEvent,
        SecurityAuditEvent,
        SystemAuditEvent,
    ],
    Field(discriminator="event_type"),
]

_event_adapter: TypeAdapter = TypeAdapter(AuditEvent)


def parse_event(data: Dict[str, Any]) -> BaseAuditEvent:
    """Build the matching event variant from its wire form."""
    return _event_adapter.validate_python(data)


SECURITY_EVENT_TYPES = frozenset(
    get_args(SecurityAuditEvent.model_fields["event_type"].annotation)
)
