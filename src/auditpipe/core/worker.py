"""
Audit job worker.

Each claimed job moves through

    received -> validated -> enriched -> compressed? -> signed?
             -> persisted -> post-processed -> acknowledged

Validation failures are permanent. Compression and signing failures
degrade to flagged fallbacks instead of failing the job. Persistence is
idempotent by event id.
"""

import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import structlog
from pydantic import TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from ..config import WorkerSettings
from ..models.events import (
    SECURITY_EVENT_TYPES,
    BaseAuditEvent,
    EntityAuditEvent,
    EventType,
    OperationAuditEvent,
    RiskLevel,
    SecurityAuditEvent,
    SensitiveDataAuditEvent,
    SystemAuditEvent,
    parse_event,
    utc_now,
)
from ..models.records import DeadLetterStatus, OperationType, PersistedAuditRecord, QueueJob
from .compression import compress_value, decompress_value, is_envelope, maybe_compress
from .exceptions import AuditPipelineException, CompressionError, EventValidationError, StorageError
from .metrics import MetricsCollector
from .notifications import CRITICAL_EVENT, LGPD_EVENT, RECORD_CREATED, Notifier
from .signing import Signer, checksum_signature
from .storage import AuditStore, DeadLetterStore

logger = structlog.get_logger(__name__)

_datetime_adapter: TypeAdapter = TypeAdapter(datetime)

COMPRESSIBLE_FIELDS = ("previous_data", "new_data", "request_context", "metadata")

_OPERATION_TYPES = {
    EventType.ENTITY_CREATED: OperationType.CREATE,
    EventType.ENTITY_UPDATED: OperationType.UPDATE,
    EventType.ENTITY_DELETED: OperationType.DELETE,
    EventType.ENTITY_ACCESSED: OperationType.READ,
    EventType.SENSITIVE_DATA_ACCESSED: OperationType.ACCESS,
    EventType.SENSITIVE_DATA_EXPORTED: OperationType.EXPORT,
}


def validate_payload(event: Dict[str, Any]) -> None:
    """Reject events missing the fields every record needs."""
    missing = [name for name in ("eventType", "entityName") if not event.get(name)]
    if missing:
        raise EventValidationError(
            f"Missing required event fields: {', '.join(missing)}",
            details={"missing": missing, "eventId": event.get("eventId")},
        )

    timestamp = event.get("timestamp")
    if timestamp is not None:
        try:
            _datetime_adapter.validate_python(timestamp)
        except ValidationError as e:
            raise EventValidationError(
                "Event timestamp is not a valid date",
                details={"timestamp": str(timestamp)},
            ) from e


def enrich_payload(event: Dict[str, Any]) -> Dict[str, Any]:
    """Fill optional fields with their defaults."""
    enriched = dict(event)
    event_type = enriched.get("eventType")
    sensitive = event_type in (EventType.SENSITIVE_DATA_ACCESSED.value, EventType.SENSITIVE_DATA_EXPORTED.value)

    enriched.setdefault("eventId", str(uuid.uuid4()))
    if enriched.get("lgpdRelevant") is None:
        enriched["lgpdRelevant"] = sensitive
    if not enriched.get("riskLevel"):
        enriched["riskLevel"] = RiskLevel.HIGH.value if enriched["lgpdRelevant"] else RiskLevel.LOW.value
    if enriched.get("timestamp") is None:
        enriched["timestamp"] = utc_now().isoformat()
    if enriched.get("metadata") is None:
        enriched["metadata"] = {}
    return enriched


def describe(event: BaseAuditEvent) -> str:
    description = f"{event.event_type} on {event.entity_name}"
    if event.entity_id:
        description += f" (ID: {event.entity_id})"
    if event.user_id:
        description += f" by user {event.user_id}"
    return description


def operation_type_for(event: BaseAuditEvent) -> OperationType:
    if isinstance(event, OperationAuditEvent):
        try:
            return OperationType(event.operation)
        except ValueError:
            return OperationType.ACCESS
    return _OPERATION_TYPES.get(EventType(event.event_type), OperationType.ACCESS)


def _variant_metadata(event: BaseAuditEvent) -> Dict[str, Any]:
    """Fields specific to one event variant, kept in the record metadata."""
    if isinstance(event, EntityAuditEvent):
        fields = ("changed_fields", "sensitive_fields_changed")
    elif isinstance(event, OperationAuditEvent):
        fields = ("controller", "method", "http_method", "operation", "duration", "params", "body", "error")
    elif isinstance(event, SensitiveDataAuditEvent):
        fields = ("sensitive_fields", "legal_basis", "purpose")
    elif isinstance(event, SecurityAuditEvent):
        fields = ("outcome", "reason")
    elif isinstance(event, SystemAuditEvent):
        fields = ("component", "details")
    else:
        raise TypeError(f"Unhandled audit event variant {type(event).__name__}")

    wire = event.to_wire()
    extra = {}
    for name in fields:
        key = to_camel(name)
        value = wire.get(key)
        if value not in (None, [], {}):
            extra[key] = value
    return extra


class AuditWorker:
    """
    Turns queue jobs into persisted audit records.

    Handles:
    - Payload validation and enrichment
    - Field compression and record signing with fallbacks
    - Idempotent persistence
    - Post-processing notifications
    """

    def __init__(
        self,
        settings: WorkerSettings,
        store: AuditStore,
        signer: Optional[Signer],
        notifier: Notifier,
        metrics: MetricsCollector,
        dead_letter_store: Optional[DeadLetterStore] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.signer = signer
        self.notifier = notifier
        self.metrics = metrics
        self.dead_letter_store = dead_letter_store

    async def process(self, job: QueueJob) -> PersistedAuditRecord:
        started = time.perf_counter()
        payload = job.event
        event_type = str(payload.get("eventType") or "unknown")
        stage = "validate"

        try:
            validate_payload(payload)
            stage_started = self._stage_done(event_type, stage, started)

            stage = "enrich"
            event = self._build_event(payload)
            record = self._normalize(event)
            stage_started = self._stage_done(event_type, stage, stage_started)

            config = job.config
            compress = config.compress if config.compress is not None else self.settings.compress_by_default
            if compress:
                stage = "compress"
                self._compress(record)
                stage_started = self._stage_done(event_type, stage, stage_started)

            sign = config.sign
            if sign is None:
                sign = event.risk_level == RiskLevel.CRITICAL or event.lgpd_relevant
            if sign:
                stage = "sign"
                self._sign(record)
                stage_started = self._stage_done(event_type, stage, stage_started)

            stage = "persist"
            stored, created = await self._persist(record)
            stage_started = self._stage_done(event_type, stage, stage_started)

            stage = "post_process"
            if created:
                await self._post_process(stored)
            await self._resolve_dead_letter(job)
            self._stage_done(event_type, stage, stage_started)

        except Exception as e:
            self.metrics.record_stage_failure(stage, event_type)
            self.metrics.record_processed(event_type, "failed", time.perf_counter() - started)
            logger.error(
                "Audit job failed",
                job_id=job.id,
                event_type=event_type,
                entity_name=payload.get("entityName"),
                stage=stage,
                attempt=job.attempts_made + 1,
                error=str(e),
            )
            raise

        self.metrics.record_processed(event_type, "success", time.perf_counter() - started)
        if stored.risk_level == RiskLevel.CRITICAL:
            logger.warning("Critical audit event processed", event_type=event_type, record_id=stored.id)
        else:
            logger.debug("Audit job processed", job_id=job.id, record_id=stored.id, created=created)
        return stored

    def _stage_done(self, event_type: str, stage: str, since: float) -> float:
        now = time.perf_counter()
        self.metrics.record_stage(event_type, stage, now - since)
        return now

    def _build_event(self, payload: Dict[str, Any]) -> BaseAuditEvent:
        enriched = enrich_payload(payload)
        try:
            return parse_event(enriched)
        except ValidationError as e:
            raise EventValidationError(
                "Audit event failed validation",
                details={"errors": e.errors(include_url=False, include_context=False)},
            ) from e

    def _retention_days(self, event: BaseAuditEvent) -> int:
        if event.lgpd_relevant or isinstance(event, SensitiveDataAuditEvent):
            return self.settings.retention_legal_days
        if event.event_type in SECURITY_EVENT_TYPES:
            return self.settings.retention_security_days
        return self.settings.retention_default_days

    def _normalize(self, event: BaseAuditEvent) -> PersistedAuditRecord:
        metadata = {**event.metadata, **_variant_metadata(event)}
        previous_data = new_data = None
        if isinstance(event, EntityAuditEvent):
            previous_data = event.previous_data
            new_data = event.new_data

        return PersistedAuditRecord(
            id=str(uuid.uuid4()),
            event_id=event.event_id,
            event_type=event.event_type,
            operation_type=operation_type_for(event),
            entity_name=event.entity_name,
            entity_id=event.entity_id,
            user_id=event.user_id,
            previous_data=previous_data,
            new_data=new_data,
            description=describe(event),
            risk_level=event.risk_level,
            lgpd_relevant=event.lgpd_relevant,
            metadata=metadata,
            request_context=event.request_context.to_wire() if event.request_context else None,
            correlation_id=event.correlation_id,
            timestamp=event.timestamp,
            expires_at=event.timestamp + timedelta(days=self._retention_days(event)),
        )

    def _compress(self, record: PersistedAuditRecord) -> None:
        threshold = self.settings.compression_threshold_bytes
        errors = []
        for name in COMPRESSIBLE_FIELDS:
            if name == "metadata" and errors:
                break
            try:
                value, _ = maybe_compress(getattr(record, name), threshold)
                setattr(record, name, value)
            except CompressionError as e:
                errors.append(f"{name}: {e.message}")

        if errors:
            self.metrics.record_enrichment_fallback("compression")
            logger.warning("Compression failed, storing uncompressed", event_id=record.event_id, errors=errors)
            self._flag_metadata(record, "_compression_error", "; ".join(errors))

    def _sign(self, record: PersistedAuditRecord) -> None:
        try:
            if self.signer is None:
                raise RuntimeError("No signer configured")
            record.signature = self.signer.sign(record.to_wire())
            return
        except Exception as e:
            logger.warning("Signing failed, using checksum fallback", event_id=record.event_id, error=str(e))

        self.metrics.record_enrichment_fallback("signature")
        self._flag_metadata(record, "_signature_fallback", True)
        record.signature = checksum_signature(record.to_wire())

    def _flag_metadata(self, record: PersistedAuditRecord, key: str, value: Any) -> None:
        if is_envelope(record.metadata):
            metadata = decompress_value(record.metadata)
            metadata[key] = value
            record.metadata = compress_value(metadata)
        else:
            record.metadata = {**(record.metadata or {}), key: value}

    async def _persist(self, record: PersistedAuditRecord):
        try:
            return await self.store.save(record)
        except AuditPipelineException:
            raise
        except Exception as e:
            raise StorageError("Failed to persist audit record", details={"error": str(e)}) from e

    async def _post_process(self, record: PersistedAuditRecord) -> None:
        payload = {
            "recordId": record.id,
            "eventId": record.event_id,
            "eventType": record.event_type,
            "entityName": record.entity_name,
            "entityId": record.entity_id,
            "userId": record.user_id,
            "riskLevel": record.risk_level.value,
            "lgpdRelevant": record.lgpd_relevant,
            "timestamp": record.timestamp.isoformat(),
        }
        await self.notifier.publish(RECORD_CREATED, payload)
        if record.risk_level == RiskLevel.CRITICAL:
            await self.notifier.publish(CRITICAL_EVENT, payload)
        if record.lgpd_relevant:
            await self.notifier.publish(LGPD_EVENT, payload)

    async def _resolve_dead_letter(self, job: QueueJob) -> None:
        dead_letter_id = job.data.get("deadLetterId")
        if not dead_letter_id or self.dead_letter_store is None:
            return
        record = await self.dead_letter_store.get(dead_letter_id)
        if record is None or record.status.terminal:
            return
        record.status = DeadLetterStatus.RESOLVED
        await self.dead_letter_store.save(record)
        logger.info("Dead letter resolved by resubmission", dead_letter_id=dead_letter_id, job_id=job.id)
