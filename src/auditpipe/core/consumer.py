"""
Background consumer for the audit queue.

Claims ready jobs while their lane has a free slot, runs them through
the worker and settles the outcome with the queue. A job that the
queue finalises after a failure is handed to the dead-letter handler
once.
"""

import asyncio
import time
from typing import Dict, List, Optional, Set

import structlog

from ..models.records import QueueJob
from .deadletter import DeadLetterHandler, is_retryable
from .metrics import MetricsCollector
from .queue import AuditQueue
from .worker import AuditWorker

logger = structlog.get_logger(__name__)


class QueueConsumer:
    """
    Runs queued jobs with per-lane concurrency.

    Features:
    - Lane slots sized to the lane concurrency
    - Retry and finalisation through the queue
    - Dead-letter handoff for finalised jobs
    - Graceful stop waiting for in-flight jobs
    """

    def __init__(
        self,
        queue: AuditQueue,
        worker: AuditWorker,
        dead_letter: DeadLetterHandler,
        metrics: MetricsCollector,
        poll_interval: float = 0.5,
    ) -> None:
        self.queue = queue
        self.worker = worker
        self.dead_letter = dead_letter
        self.metrics = metrics
        self.poll_interval = poll_interval
        self._task: Optional[asyncio.Task[None]] = None
        self._running = False
        self._wakeup = asyncio.Event()
        self._in_flight: Set["asyncio.Task[None]"] = set()
        self._processed = 0
        self._failed = 0
        self.last_activity: Optional[float] = None

    async def start(self) -> None:
        """Start the claim loop."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Queue consumer started", poll_interval=self.poll_interval)

    async def stop(self) -> None:
        """Stop claiming and wait for jobs already running."""
        if not self._running:
            return

        self._running = False
        self._wakeup.set()

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

        logger.info("Queue consumer stopped", processed=self._processed, failed=self._failed)

    def notify(self) -> None:
        """Wake the claim loop early, e.g. after an enqueue."""
        self._wakeup.set()

    def _free_lanes(self) -> List[str]:
        return [
            name for name, lane in self.queue.lanes.items()
            if lane.active < lane.settings.concurrency
        ]

    def _claim_next(self) -> Optional[QueueJob]:
        lanes = self._free_lanes()
        if not lanes:
            return None
        return self.queue.claim(lanes)

    async def _run_loop(self) -> None:
        """Main claim loop."""
        while self._running:
            try:
                started = 0
                while True:
                    job = self._claim_next()
                    if job is None:
                        break
                    task = asyncio.create_task(self._run_job(job))
                    self._in_flight.add(task)
                    task.add_done_callback(self._on_done)
                    started += 1

                if started:
                    continue

                wait = self.queue.next_ready_in(self._free_lanes())
                timeout = self.poll_interval if wait is None else min(max(wait, 0.01), self.poll_interval)
                self._wakeup.clear()
                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    pass

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Consumer loop error", error=str(e))
                await asyncio.sleep(self.poll_interval)

    def _on_done(self, task: "asyncio.Task[None]") -> None:
        self._in_flight.discard(task)
        self._wakeup.set()

    async def _run_job(self, job: QueueJob) -> None:
        """Process one claimed job and settle it with the queue."""
        started = time.perf_counter()
        try:
            await self.worker.process(job)
        except Exception as e:
            self._failed += 1
            await self._handle_failure(job, e)
        else:
            self._processed += 1
            try:
                await self.queue.complete(job)
            except Exception as e:
                logger.error("Failed to complete job", job_id=job.id, lane=job.lane, error=str(e))
        finally:
            self.last_activity = time.time()
            logger.debug(
                "Job attempt finished",
                job_id=job.id,
                lane=job.lane,
                duration_ms=round((time.perf_counter() - started) * 1000, 3),
            )

    async def _handle_failure(self, job: QueueJob, error: Exception) -> None:
        retryable = is_retryable(error)
        logger.warning(
            "Job attempt failed",
            job_id=job.id,
            lane=job.lane,
            attempt=job.attempts_made + 1,
            retryable=retryable,
            error=str(error),
        )
        try:
            finalised = await self.queue.fail(job, str(error), retryable=retryable)
        except Exception as e:
            logger.error("Failed to record job failure", job_id=job.id, error=str(e))
            # A job the queue no longer owns would otherwise be lost
            finalised = self.queue.get(job.id) is None

        if not finalised:
            return

        try:
            await self.dead_letter.handle(job, error)
        except Exception as e:
            logger.critical(
                "Dead-letter handoff failed, job lost",
                job_id=job.id,
                lane=job.lane,
                error=str(e),
                exc_info=True,
            )

    async def run_until_idle(self, max_delay: float = 0.0) -> int:
        """
        Process jobs in the foreground until nothing is claimable.

        Delayed jobs are waited for only when they become ready within
        ``max_delay`` seconds.

        Returns:
            Number of job attempts run
        """
        attempts = 0
        while True:
            batch: List[QueueJob] = []
            while True:
                job = self._claim_next()
                if job is None:
                    break
                batch.append(job)

            if batch:
                await asyncio.gather(*(self._run_job(job) for job in batch))
                attempts += len(batch)
                continue

            if self._in_flight:
                await asyncio.gather(*list(self._in_flight), return_exceptions=True)
                continue

            wait = self.queue.next_ready_in()
            if wait is None or wait > max_delay:
                return attempts
            await asyncio.sleep(wait)

    @property
    def is_running(self) -> bool:
        return self._running

    def stats(self) -> Dict[str, int]:
        return {
            "processed": self._processed,
            "failed": self._failed,
            "inFlight": self.queue.in_flight,
        }
