"""
Audit and dead-letter storage.

The relational schema lives with the host application; the pipeline
only depends on these interfaces. The in-memory stores are the
reference implementations used by default and in tests.
"""

from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple

import structlog

from ..models.events import utc_now
from ..models.records import DeadLetterRecord, DeadLetterStatus, PersistedAuditRecord

logger = structlog.get_logger(__name__)


class AuditStore(Protocol):
    async def save(self, record: PersistedAuditRecord) -> Tuple[PersistedAuditRecord, bool]:
        """Persist ``record`` unless its event id exists; returns (row, created)."""
        ...

    async def get_by_event_id(self, event_id: str) -> Optional[PersistedAuditRecord]:
        ...

    async def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        ...

    async def ping(self) -> bool:
        ...

    async def stats(self) -> Dict[str, Any]:
        ...


class DeadLetterStore(Protocol):
    async def save(self, record: DeadLetterRecord) -> DeadLetterRecord:
        ...

    async def get(self, record_id: str) -> Optional[DeadLetterRecord]:
        ...

    async def list(self, status: Optional[DeadLetterStatus] = None) -> List[DeadLetterRecord]:
        ...

    async def count_by_status(self) -> Dict[str, int]:
        ...


class InMemoryAuditStore:
    """Idempotent in-memory audit table keyed by event id."""

    def __init__(self) -> None:
        self._records: Dict[str, PersistedAuditRecord] = {}

    async def save(self, record: PersistedAuditRecord) -> Tuple[PersistedAuditRecord, bool]:
        existing = self._records.get(record.event_id)
        if existing is not None:
            logger.debug("Audit record already persisted", event_id=record.event_id)
            return existing, False
        self._records[record.event_id] = record
        return record, True

    async def get_by_event_id(self, event_id: str) -> Optional[PersistedAuditRecord]:
        return self._records.get(event_id)

    async def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        """Remove records whose retention has expired."""
        now = now or utc_now()
        expired = [event_id for event_id, record in self._records.items() if record.expires_at <= now]
        for event_id in expired:
            del self._records[event_id]
        if expired:
            logger.info("Expired audit records removed", removed=len(expired))
        return len(expired)

    async def ping(self) -> bool:
        return True

    async def stats(self) -> Dict[str, Any]:
        risk = Counter(record.risk_level.value for record in self._records.values())
        return {
            "total": len(self._records),
            "lgpd": sum(1 for record in self._records.values() if record.lgpd_relevant),
            "byRiskLevel": dict(risk),
        }

    def all(self) -> List[PersistedAuditRecord]:
        return list(self._records.values())

    def __len__(self) -> int:
        return len(self._records)


class InMemoryDeadLetterStore:
    def __init__(self) -> None:
        self._records: Dict[str, DeadLetterRecord] = {}

    async def save(self, record: DeadLetterRecord) -> DeadLetterRecord:
        self._records[record.id] = record
        return record

    async def get(self, record_id: str) -> Optional[DeadLetterRecord]:
        return self._records.get(record_id)

    async def list(self, status: Optional[DeadLetterStatus] = None) -> List[DeadLetterRecord]:
        records = [r for r in self._records.values() if status is None or r.status == status]
        return sorted(records, key=lambda r: r.last_failed_at, reverse=True)

    async def count_by_status(self) -> Dict[str, int]:
        return dict(Counter(record.status.value for record in self._records.values()))

    def __len__(self) -> int:
        return len(self._records)
