"""
Priority-laned durable queue.

Jobs live in memory for claiming and in the journal for durability.
Within a lane, higher job priority is claimed first, then arrival order.
Across lanes, the lane with the highest priority that has a ready job
wins. Retries happen in place: the same job is rescheduled with
exponential backoff plus jitter until its attempts are exhausted.
"""

import heapq
import random
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple

import structlog

from ..config import LaneSettings, QueueSettings
from ..models.records import JobConfig, QueueJob
from .exceptions import QueueUnavailableError
from .journal import QueueJournal
from .metrics import MetricsCollector

logger = structlog.get_logger(__name__)


class Lane:
    """Ready and delayed jobs of one lane."""

    def __init__(self, name: str, settings: LaneSettings) -> None:
        self.name = name
        self.settings = settings
        # (-job priority, sequence, job id)
        self.ready: List[Tuple[int, int, str]] = []
        # (available_at, sequence, job id)
        self.delayed: List[Tuple[float, int, str]] = []
        self.completed: Deque[Dict[str, Any]] = deque(maxlen=max(settings.retention_on_complete, 1))
        self.failed: Deque[Dict[str, Any]] = deque(maxlen=max(settings.retention_on_fail, 1))
        self.active = 0

    def push(self, job: QueueJob, now: float) -> None:
        if job.available_at > now:
            heapq.heappush(self.delayed, (job.available_at, job.sequence, job.id))
        else:
            heapq.heappush(self.ready, (-job.priority, job.sequence, job.id))

    def promote(self, now: float, jobs: Dict[str, QueueJob]) -> None:
        """Move delayed jobs whose time has come onto the ready heap."""
        while self.delayed and self.delayed[0][0] <= now:
            _, _, job_id = heapq.heappop(self.delayed)
            job = jobs.get(job_id)
            if job is not None:
                heapq.heappush(self.ready, (-job.priority, job.sequence, job.id))

    @property
    def waiting(self) -> int:
        return len(self.ready) + len(self.delayed)


class AuditQueue:
    """
    Durable queue with named lanes.

    Handles:
    - Journal replay and compaction on open
    - Priority ordering within and across lanes
    - In-place retries with backoff
    - Completed and failed job summaries per lane
    """

    def __init__(
        self,
        settings: QueueSettings,
        journal: Optional[QueueJournal] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.settings = settings
        self.journal = journal if journal is not None else QueueJournal(settings.journal_path)
        self.metrics = metrics
        self._clock = clock
        self._rng = rng or random.Random()
        self.lanes: Dict[str, Lane] = {
            name: Lane(name, lane_settings) for name, lane_settings in settings.lanes.items()
        }
        self._lane_order = sorted(self.lanes, key=lambda name: self.lanes[name].settings.priority, reverse=True)
        # Every job owned by the queue, waiting or claimed
        self._jobs: Dict[str, QueueJob] = {}
        self._claimed: Dict[str, QueueJob] = {}
        self._sequence = 0
        # Records appended since the journal was last rewritten
        self._journal_records = 0
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self) -> int:
        """
        Replay the journal and accept work.

        Jobs that were claimed when the process stopped are restored as
        waiting, so delivery is at least once.

        Returns:
            Number of jobs restored
        """
        self.journal.ensure_directory()
        restored = self.journal.replay()
        now = self._clock()

        for data in sorted(restored.values(), key=lambda job: job.get("sequence", 0)):
            job = QueueJob.model_validate(data)
            lane = self.lanes.get(job.lane)
            if lane is None:
                logger.warning("Restored job for unknown lane, moving to default", job_id=job.id, lane=job.lane)
                job.lane = "default"
                lane = self.lanes["default"]
            self._jobs[job.id] = job
            self._sequence = max(self._sequence, job.sequence)
            lane.push(job, now)

        if self.settings.compact_on_open:
            await self.journal.compact(job.to_wire() for job in self._jobs.values())
            self._journal_records = len(self._jobs)
        else:
            self._journal_records = len(restored)

        self._open = True
        self._refresh_sizes()
        logger.info("Audit queue opened", restored_jobs=len(restored), journal=str(self.journal.path))
        return len(restored)

    async def close(self) -> None:
        self._open = False
        logger.info("Audit queue closed", pending_jobs=len(self._jobs))

    def _ensure_open(self) -> None:
        if not self._open:
            raise QueueUnavailableError("Queue is not open")

    def lane_settings(self, lane: str) -> LaneSettings:
        return self.lanes[lane].settings

    async def add(
        self,
        event: Dict[str, Any],
        lane: str = "default",
        config: Optional[JobConfig] = None,
        job_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> QueueJob:
        """
        Enqueue one event in wire form.

        The job id defaults to the event id; adding an id the queue
        already owns returns the existing job. ``context`` is merged into
        the job payload next to the event.
        """
        self._ensure_open()
        if lane not in self.lanes:
            raise ValueError(f"Unknown queue lane '{lane}'")

        job_id = job_id or event.get("eventId")
        if not job_id:
            raise ValueError("Queue jobs need an id or an event with eventId")

        existing = self._jobs.get(job_id)
        if existing is not None:
            logger.debug("Job already queued", job_id=job_id, lane=existing.lane)
            return existing

        lane_settings = self.lanes[lane].settings
        config = config or JobConfig()
        now = self._clock()
        self._sequence += 1

        data: Dict[str, Any] = dict(context or {})
        data["event"] = event
        config_wire = config.to_wire()
        if config_wire:
            data["config"] = config_wire

        job = QueueJob(
            id=job_id,
            lane=lane,
            data=data,
            priority=config.priority if config.priority is not None else lane_settings.priority,
            max_attempts=config.attempts or lane_settings.attempts,
            available_at=now + (config.delay or 0) / 1000.0,
            enqueued_at=now,
            sequence=self._sequence,
        )

        await self.journal.put(job.to_wire())
        self._journal_records += 1
        self._jobs[job.id] = job
        self.lanes[lane].push(job, now)
        self._refresh_sizes(lane)

        logger.debug("Job enqueued", job_id=job.id, lane=lane, priority=job.priority)
        return job

    async def add_bulk(
        self,
        events: Iterable[Dict[str, Any]],
        lane: str = "batch",
        config: Optional[JobConfig] = None,
    ) -> List[QueueJob]:
        return [await self.add(event, lane=lane, config=config) for event in events]

    def claim(self, lanes: Optional[Iterable[str]] = None) -> Optional[QueueJob]:
        """
        Claim the next ready job from the given lanes.

        Args:
            lanes: Candidate lanes; all lanes when omitted

        Returns:
            The claimed job, or None when nothing is ready
        """
        if not self._open:
            return None

        allowed = set(lanes) if lanes is not None else None
        now = self._clock()

        for name in self._lane_order:
            if allowed is not None and name not in allowed:
                continue
            lane = self.lanes[name]
            lane.promote(now, self._jobs)
            while lane.ready:
                _, _, job_id = heapq.heappop(lane.ready)
                job = self._jobs.get(job_id)
                if job is None or job_id in self._claimed:
                    continue
                self._claimed[job_id] = job
                lane.active += 1
                if self.metrics:
                    self.metrics.record_queue_wait(name, now - job.available_at)
                self._refresh_sizes(name)
                return job
        return None

    async def complete(self, job: QueueJob) -> None:
        """
        Remove a successfully processed job.

        The job leaves memory even when the journal delete fails; it is
        then redelivered after a restart.
        """
        try:
            await self.journal.delete(job.id)
            self._journal_records += 1
        finally:
            self._release(job)
            self._jobs.pop(job.id, None)
            self.lanes[job.lane].completed.append(
                {"id": job.id, "attemptsMade": job.attempts_made + 1, "finishedAt": self._clock()}
            )
        await self._maybe_compact()

    async def fail(self, job: QueueJob, error: str, retryable: bool = True) -> bool:
        """
        Record a failed attempt.

        Retryable failures with attempts left are rescheduled in place.
        A retry is kept in memory when the journal write fails. A
        finalised job always leaves the queue; a journal error is raised
        after that so the caller still dead-letters it.

        Returns:
            True when the job is finalised and leaves the queue
        """
        job.attempts_made += 1
        job.last_error = error
        lane = self.lanes[job.lane]
        self._release(job)

        if retryable and job.attempts_made < job.max_attempts:
            delay = self.backoff_delay(lane.settings, job.attempts_made)
            now = self._clock()
            job.available_at = now + delay
            lane.push(job, now)
            self._refresh_sizes(job.lane)
            try:
                await self.journal.put(job.to_wire())
                self._journal_records += 1
            except QueueUnavailableError as e:
                logger.error(
                    "Retry not journaled, kept in memory",
                    job_id=job.id,
                    lane=job.lane,
                    attempt=job.attempts_made,
                    error=e.message,
                )
            else:
                await self._maybe_compact()
            logger.info(
                "Job scheduled for retry",
                job_id=job.id,
                lane=job.lane,
                attempt=job.attempts_made,
                max_attempts=job.max_attempts,
                delay_seconds=round(delay, 3),
            )
            return False

        try:
            await self.journal.delete(job.id)
            self._journal_records += 1
        finally:
            self._jobs.pop(job.id, None)
            lane.failed.append(
                {"id": job.id, "attemptsMade": job.attempts_made, "error": error, "failedAt": self._clock()}
            )
        await self._maybe_compact()
        logger.warning(
            "Job finalised after failure",
            job_id=job.id,
            lane=job.lane,
            attempts_made=job.attempts_made,
            retryable=retryable,
        )
        return True

    def backoff_delay(self, lane: LaneSettings, attempts_made: int) -> float:
        """Seconds to wait before the next attempt, jitter included."""
        base = lane.backoff_delay_ms / 1000.0
        if lane.backoff_type == "exponential":
            delay = base * (2 ** max(attempts_made - 1, 0))
        else:
            delay = base
        jitter = self._rng.uniform(0, delay * self.settings.backoff_jitter_ratio)
        return delay + jitter

    async def _maybe_compact(self) -> None:
        """Rewrite the journal once superseded records pass the threshold."""
        threshold = self.settings.compact_threshold
        if not threshold or self._journal_records - len(self._jobs) < threshold:
            return
        try:
            await self.journal.compact(job.to_wire() for job in self._jobs.values())
        except QueueUnavailableError as e:
            logger.error("Journal compaction failed, will retry", error=e.message)
            return
        self._journal_records = len(self._jobs)
        logger.debug("Journal compacted", live_jobs=len(self._jobs), size_bytes=self.journal.size_bytes())

    def _release(self, job: QueueJob) -> None:
        if self._claimed.pop(job.id, None) is not None:
            self.lanes[job.lane].active -= 1

    def _refresh_sizes(self, lane: Optional[str] = None) -> None:
        if not self.metrics:
            return
        names = [lane] if lane else list(self.lanes)
        for name in names:
            self.metrics.set_queue_size(name, self.lanes[name].waiting)

    def depth(self, lane: Optional[str] = None) -> int:
        """Jobs waiting (ready or delayed) in one lane or all lanes."""
        if lane is not None:
            return self.lanes[lane].waiting
        return sum(l.waiting for l in self.lanes.values())

    def counts(self) -> Dict[str, Dict[str, int]]:
        now = self._clock()
        result = {}
        for name, lane in self.lanes.items():
            lane.promote(now, self._jobs)
            result[name] = {
                "waiting": len(lane.ready),
                "delayed": len(lane.delayed),
                "active": lane.active,
                "completed": len(lane.completed),
                "failed": len(lane.failed),
            }
        return result

    def next_ready_in(self, lanes: Optional[Iterable[str]] = None) -> Optional[float]:
        """
        Seconds until a job becomes claimable.

        Returns:
            0 when a job is ready now, None when the lanes are empty
        """
        allowed = set(lanes) if lanes is not None else None
        now = self._clock()
        earliest: Optional[float] = None
        for name, lane in self.lanes.items():
            if allowed is not None and name not in allowed:
                continue
            lane.promote(now, self._jobs)
            if lane.ready:
                return 0.0
            if lane.delayed:
                wait = max(lane.delayed[0][0] - now, 0.0)
                earliest = wait if earliest is None else min(earliest, wait)
        return earliest

    def get(self, job_id: str) -> Optional[QueueJob]:
        return self._jobs.get(job_id)

    def ping(self) -> bool:
        return self._open and self.journal.ping()

    @property
    def in_flight(self) -> int:
        return len(self._claimed)
