"""
Dead-letter handling for finalised audit jobs.

A job that exhausted its attempts, or failed permanently, becomes a
DeadLetterRecord. Operators are alerted on ``audit.deadletter.alert``
and retryable records are resubmitted on the batch lane after a delay
that depends on their priority. When the dead-letter store itself fails
the record goes to a local JSONL file; when that fails too the event is
logged as unrecoverable.
"""

import asyncio
import json
import re
import traceback
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import aiohttp
import structlog
from aiofiles import open as aio_open
from pydantic import ValidationError

from ..config import DeadLetterSettings
from ..models.events import utc_now
from ..models.records import (
    DeadLetterPriority,
    DeadLetterRecord,
    DeadLetterStatus,
    JobConfig,
    QueueJob,
)
from .exceptions import (
    AuditPipelineException,
    DeadLetterError,
    InvalidStateError,
    NotFoundError,
)
from .metrics import MetricsCollector
from .notifications import DEAD_LETTER_ALERT, Notifier
from .queue import AuditQueue
from .storage import DeadLetterStore

logger = structlog.get_logger(__name__)

FALLBACK_FILENAME = "dead-letters.jsonl"

CRITICAL_EVENTS = frozenset({"SECURITY_INCIDENT", "PAYMENT_FRAUD", "DATA_BREACH", "SYSTEM_FAILURE"})
HIGH_PRIORITY_EVENTS = frozenset({"PAYMENT_PROCESSED", "USER_REGISTRATION", "DOCUMENT_UPLOAD", "FAILED_LOGIN"})
MEDIUM_PRIORITY_EVENTS = frozenset({"USER_LOGIN", "USER_LOGOUT", "PROFILE_UPDATE"})

ALERT_CHANNELS = {
    DeadLetterPriority.CRITICAL: ["pagerduty", "slack", "email"],
    DeadLetterPriority.HIGH: ["slack", "email"],
    DeadLetterPriority.MEDIUM: ["email"],
    DeadLetterPriority.LOW: ["log"],
}

RETRYABLE_HTTP_CODES = frozenset({408, 429, 500, 502, 503, 504})
_STATUS_CODE_PATTERN = re.compile(r"status code (\d+)")


def _retryable_status(status: int) -> bool:
    return status in RETRYABLE_HTTP_CODES or status >= 500


def is_retryable(error: BaseException) -> bool:
    """
    Decide whether a failure may succeed if the job runs again.

    Malformed data never recovers; connectivity, timeouts and server
    side HTTP statuses do. Unknown errors are treated as retryable.
    """
    if isinstance(error, AuditPipelineException):
        return error.retryable

    if isinstance(error, (ValidationError, TypeError, ValueError, KeyError, SyntaxError, AttributeError)):
        return False

    if isinstance(error, aiohttp.ClientResponseError):
        return _retryable_status(error.status)

    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError, OSError, aiohttp.ClientError)):
        return True

    status = getattr(error, "status_code", None)
    if isinstance(status, int):
        return _retryable_status(status)

    match = _STATUS_CODE_PATTERN.search(str(error))
    if match:
        return _retryable_status(int(match.group(1)))

    return True


def priority_for(event_type: Optional[str]) -> DeadLetterPriority:
    if event_type in CRITICAL_EVENTS:
        return DeadLetterPriority.CRITICAL
    if event_type in HIGH_PRIORITY_EVENTS:
        return DeadLetterPriority.HIGH
    if event_type in MEDIUM_PRIORITY_EVENTS:
        return DeadLetterPriority.MEDIUM
    return DeadLetterPriority.LOW


class DeadLetterHandler:
    """
    Receives finalised jobs from the queue consumer.

    Handles:
    - Retryability and priority classification
    - Persistence with local file fallback
    - Operator alerts by priority
    - Delayed resubmission and operator actions
    """

    def __init__(
        self,
        settings: DeadLetterSettings,
        store: DeadLetterStore,
        queue: AuditQueue,
        notifier: Notifier,
        metrics: MetricsCollector,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.store = store
        self.queue = queue
        self.notifier = notifier
        self.metrics = metrics
        self._clock = clock
        self.fallback_file = Path(settings.fallback_path) / FALLBACK_FILENAME

    async def handle(self, job: QueueJob, error: BaseException) -> Optional[DeadLetterRecord]:
        """
        Dead-letter a finalised job.

        Never raises; returns None when the record could only be saved
        to the local fallback file or not at all.
        """
        record = await self._build_record(job, error)
        self.metrics.record_dead_letter(record.priority.value, record.retryable)

        logger.error(
            "Moving job to dead letter",
            job_id=job.id,
            dead_letter_id=record.id,
            event_type=record.event_type,
            attempts_made=record.attempts_made,
            retryable=record.retryable,
            priority=record.priority.value,
            error=record.failure_reason,
        )

        try:
            await self._persist(record)
        except DeadLetterError as e:
            await self._write_fallback(record, e)
            return None

        await self._alert(record)

        if record.retryable and record.retry_count < self.settings.max_resubmissions:
            await self._schedule_resubmission(record)

        return record

    async def _build_record(self, job: QueueJob, error: BaseException) -> DeadLetterRecord:
        event = job.event
        now = self._clock()
        retryable = is_retryable(error)
        stack_trace = "".join(traceback.format_exception(type(error), error, error.__traceback__))

        existing_id = job.data.get("deadLetterId")
        if existing_id:
            existing = await self._safe_get(existing_id)
            if existing is not None:
                existing.failure_reason = str(error)
                existing.error_type = type(error).__name__
                existing.stack_trace = stack_trace
                existing.attempts_made += job.attempts_made
                existing.retryable = retryable
                existing.status = DeadLetterStatus.PENDING
                existing.last_failed_at = now
                existing.retry_at = None
                return existing

        return DeadLetterRecord(
            id=f"dlq_{uuid.uuid4().hex}",
            original_job_id=job.id,
            event_id=event.get("eventId"),
            event_type=event.get("eventType"),
            entity_name=event.get("entityName"),
            entity_id=event.get("entityId"),
            user_id=event.get("userId"),
            original_payload=job.data,
            failure_reason=str(error),
            error_type=type(error).__name__,
            stack_trace=stack_trace,
            attempts_made=job.attempts_made,
            max_attempts=job.max_attempts,
            priority=priority_for(event.get("eventType")),
            retryable=retryable,
            first_failed_at=now,
            last_failed_at=now,
        )

    async def _safe_get(self, record_id: str) -> Optional[DeadLetterRecord]:
        try:
            return await self.store.get(record_id)
        except Exception as e:
            logger.error("Failed to load dead letter record", dead_letter_id=record_id, error=str(e))
            return None

    async def _persist(self, record: DeadLetterRecord) -> None:
        try:
            await self.store.save(record)
        except Exception as e:
            raise DeadLetterError(
                "Failed to persist dead letter record",
                details={"deadLetterId": record.id, "error": str(e)},
            ) from e

    async def _write_fallback(self, record: DeadLetterRecord, persist_error: DeadLetterError) -> None:
        line = json.dumps(
            {
                "record": record.to_wire(),
                "persistError": persist_error.details.get("error", persist_error.message),
                "savedAt": self._clock().isoformat(),
            },
            default=str,
        )
        try:
            self.fallback_file.parent.mkdir(parents=True, exist_ok=True)
            async with aio_open(self.fallback_file, "a", encoding="utf-8") as f:
                await f.write(line + "\n")
            logger.error(
                "Dead letter record saved to local file",
                path=str(self.fallback_file),
                dead_letter_id=record.id,
                job_id=record.original_job_id,
            )
        except OSError as e:
            logger.critical(
                "Unrecoverable audit event, dead letter could not be saved",
                job_id=record.original_job_id,
                event_id=record.event_id,
                event_type=record.event_type,
                original_error=record.failure_reason,
                persist_error=persist_error.message,
                file_error=str(e),
                payload=record.original_payload,
            )

    async def _alert(self, record: DeadLetterRecord) -> None:
        channels = ALERT_CHANNELS[record.priority]
        notification = {
            "type": "DEAD_LETTER_QUEUE_ALERT",
            "severity": record.priority.value,
            "channels": channels,
            "title": f"Audit job failed: {record.event_type}",
            "message": (
                f"Job {record.original_job_id} failed after {record.attempts_made} "
                f"attempts and was moved to the dead letter queue."
            ),
            "details": {
                "deadLetterId": record.id,
                "eventId": record.event_id,
                "eventType": record.event_type,
                "entityName": record.entity_name,
                "failureReason": record.failure_reason,
                "retryable": record.retryable,
                "timestamp": record.last_failed_at.isoformat(),
            },
            "actions": ["retry", "investigate", "ignore"] if record.retryable else ["investigate", "ignore"],
        }
        log = logger.warning if channels == ["log"] else logger.error
        log("Dead letter alert", channels=channels, dead_letter_id=record.id, severity=record.priority.value)
        await self.notifier.publish(DEAD_LETTER_ALERT, notification)

    def retry_delay(self, priority: DeadLetterPriority) -> timedelta:
        delays = self.settings.retry_delay_seconds
        seconds = delays.get(priority.value, delays.get("medium", 3600))
        return timedelta(seconds=seconds)

    async def _schedule_resubmission(self, record: DeadLetterRecord, delay: Optional[timedelta] = None) -> bool:
        delay = self.retry_delay(record.priority) if delay is None else delay
        event = record.original_payload.get("event") or {}
        config = JobConfig.model_validate(record.original_payload.get("config") or {})
        config.delay = int(delay.total_seconds() * 1000)
        config.priority = None
        config.attempts = None
        retry_number = record.retry_count + 1
        job_id = f"{record.event_id or record.original_job_id}:retry:{retry_number}"

        try:
            await self.queue.add(
                event,
                lane=self.settings.resubmit_lane,
                config=config,
                job_id=job_id,
                context={"deadLetterId": record.id},
            )
        except Exception as e:
            logger.error("Failed to schedule dead letter resubmission", dead_letter_id=record.id, error=str(e))
            return False

        record.retry_count = retry_number
        record.retry_at = self._clock() + delay
        record.status = DeadLetterStatus.RETRY_SCHEDULED
        try:
            await self._persist(record)
        except DeadLetterError as e:
            logger.error("Failed to update dead letter after resubmission", dead_letter_id=record.id, error=e.message)

        logger.warning(
            "Scheduled dead letter resubmission",
            dead_letter_id=record.id,
            job_id=job_id,
            retry_at=record.retry_at.isoformat(),
            lane=self.settings.resubmit_lane,
        )
        return True

    async def list_records(self, status: Optional[DeadLetterStatus] = None) -> List[DeadLetterRecord]:
        return await self.store.list(status)

    async def get(self, record_id: str) -> DeadLetterRecord:
        record = await self.store.get(record_id)
        if record is None:
            raise NotFoundError(f"Dead letter record {record_id} not found", details={"id": record_id})
        return record

    async def retry_now(self, record_id: str) -> DeadLetterRecord:
        """Resubmit a record immediately, regardless of retryability."""
        record = await self.get(record_id)
        if record.status.terminal:
            raise InvalidStateError(
                f"Dead letter record {record_id} is {record.status.value}",
                details={"id": record_id, "status": record.status.value},
            )
        if not await self._schedule_resubmission(record, delay=timedelta(0)):
            raise InvalidStateError("Resubmission could not be queued", details={"id": record_id})
        return record

    async def resolve(self, record_id: str) -> DeadLetterRecord:
        return await self._finish(record_id, DeadLetterStatus.RESOLVED)

    async def ignore(self, record_id: str) -> DeadLetterRecord:
        return await self._finish(record_id, DeadLetterStatus.IGNORED)

    async def _finish(self, record_id: str, status: DeadLetterStatus) -> DeadLetterRecord:
        record = await self.get(record_id)
        if record.status.terminal and record.status != status:
            raise InvalidStateError(
                f"Dead letter record {record_id} is already {record.status.value}",
                details={"id": record_id, "status": record.status.value},
            )
        record.status = status
        await self.store.save(record)
        logger.info("Dead letter record closed", dead_letter_id=record_id, status=status.value)
        return record

    async def replay_fallback_file(self) -> int:
        """
        Move records from the local fallback file into the store.

        Lines that still cannot be stored are kept in the file.

        Returns:
            Number of records restored
        """
        if not self.fallback_file.exists():
            return 0

        async with aio_open(self.fallback_file, "r", encoding="utf-8") as f:
            lines = [line for line in (await f.read()).splitlines() if line.strip()]

        restored = 0
        remaining = []
        for line in lines:
            try:
                record = DeadLetterRecord.model_validate(json.loads(line)["record"])
            except (ValueError, KeyError, ValidationError) as e:
                logger.error("Skipping unreadable fallback line", error=str(e))
                remaining.append(line)
                continue
            try:
                await self._persist(record)
                restored += 1
            except DeadLetterError:
                remaining.append(line)

        async with aio_open(self.fallback_file, "w", encoding="utf-8") as f:
            await f.write("".join(line + "\n" for line in remaining))

        logger.info("Fallback dead letters replayed", restored=restored, remaining=len(remaining))
        return restored
