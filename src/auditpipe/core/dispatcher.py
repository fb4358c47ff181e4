"""
Event dispatcher with synchronous and asynchronous delivery.

The synchronous path runs registered listeners inline and must stay
within a few milliseconds. The asynchronous path submits the event to a
queue lane chosen from its risk and LGPD flags. Neither path lets a
failure reach the caller.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Set

import structlog

from ..models.events import BaseAuditEvent, RiskLevel
from ..models.records import JobConfig, QueueJob
from .metrics import MetricsCollector
from .queue import AuditQueue

logger = structlog.get_logger(__name__)

Listener = Callable[[BaseAuditEvent], None]


def select_lane(event: BaseAuditEvent) -> str:
    if event.risk_level == RiskLevel.CRITICAL:
        return "critical"
    if event.lgpd_relevant:
        return "sensitive"
    return "default"


@dataclass
class _Registration:
    listener: Listener
    event_types: Optional[Set[str]]
    name: str


class EventDispatcher:
    """
    Fans audit events out to in-process listeners and the queue.

    Features:
    - Listener registration filtered by event type
    - Budget warning for slow synchronous listeners
    - Lane selection for queued delivery
    - Tracked background submissions drained at shutdown
    """

    def __init__(
        self,
        queue: AuditQueue,
        metrics: MetricsCollector,
        sync_budget_ms: float = 5.0,
    ) -> None:
        self.queue = queue
        self.metrics = metrics
        self.sync_budget_ms = sync_budget_ms
        self._listeners: List[_Registration] = []
        self._pending: Set["asyncio.Task[Optional[QueueJob]]"] = set()

    def register_listener(
        self,
        listener: Listener,
        event_types: Optional[Iterable[str]] = None,
    ) -> None:
        name = getattr(listener, "__qualname__", type(listener).__name__)
        types = {str(t.value) if hasattr(t, "value") else str(t) for t in event_types} if event_types else None
        self._listeners.append(_Registration(listener, types, name))
        logger.debug("Listener registered", listener=name, event_types=sorted(types) if types else "all")

    def dispatch_sync(self, event: BaseAuditEvent) -> None:
        """Invoke matching listeners inline; listener errors are logged."""
        started = time.perf_counter()
        for registration in self._listeners:
            if registration.event_types is not None and event.event_type not in registration.event_types:
                continue
            try:
                registration.listener(event)
            except Exception as e:
                self.metrics.record_listener_error(registration.name)
                logger.error(
                    "Audit listener failed",
                    listener=registration.name,
                    event_type=event.event_type,
                    event_id=event.event_id,
                    error=str(e),
                )

        elapsed_ms = (time.perf_counter() - started) * 1000
        if elapsed_ms > self.sync_budget_ms:
            logger.warning(
                "Synchronous dispatch exceeded budget",
                event_type=event.event_type,
                elapsed_ms=round(elapsed_ms, 3),
                budget_ms=self.sync_budget_ms,
            )

    async def dispatch_async(
        self,
        event: BaseAuditEvent,
        config: Optional[JobConfig] = None,
    ) -> Optional[QueueJob]:
        """
        Submit ``event`` to its lane.

        Returns:
            The queued job, or None when the queue refused it
        """
        lane = select_lane(event)
        try:
            return await self.queue.add(event.to_wire(), lane=lane, config=config)
        except Exception as e:
            logger.error(
                "Failed to enqueue audit event",
                event_id=event.event_id,
                event_type=event.event_type,
                lane=lane,
                error=str(e),
            )
            return None

    async def dispatch_batch(
        self,
        events: Iterable[BaseAuditEvent],
        config: Optional[JobConfig] = None,
    ) -> List[QueueJob]:
        """Submit events to the batch lane; failures are logged per event."""
        jobs = []
        for event in events:
            try:
                jobs.append(await self.queue.add(event.to_wire(), lane="batch", config=config))
            except Exception as e:
                logger.error(
                    "Failed to enqueue batch audit event",
                    event_id=event.event_id,
                    event_type=event.event_type,
                    error=str(e),
                )
        return jobs

    def emit(self, event: BaseAuditEvent, config: Optional[JobConfig] = None) -> None:
        """Run the synchronous path now and the queued path in the background."""
        self.metrics.record_event(event.event_type, event.risk_level.value)
        self.dispatch_sync(event)

        task = asyncio.get_running_loop().create_task(self.dispatch_async(event, config))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for background submissions still in flight."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._pending)
