"""
Audit pipeline assembly.

Wires the capture path (dedup, dispatcher, capture) to the processing
path (queue, consumer, worker, dead-letter handler) around one metrics
collector and one notifier, and owns their background lifecycle.
"""

import asyncio
from typing import Any, Dict, Optional

import structlog

from ..config import Settings
from ..models.events import BaseAuditEvent
from ..models.records import JobConfig, QueueJob
from .capture import AuditCapture
from .classifier import DEFAULT_ROUTE_TABLE, RouteTable
from .consumer import QueueConsumer
from .deadletter import ALERT_CHANNELS, DeadLetterHandler
from .dedup import DedupCache
from .dispatcher import EventDispatcher
from .health import HealthChecker
from .journal import QueueJournal
from .metrics import MetricsCollector
from .notifications import DEAD_LETTER_ALERT, HEALTH_CRITICAL, Notifier, WebhookSink
from .queue import AuditQueue
from .signing import Ed25519Signer, Signer
from .storage import AuditStore, DeadLetterStore, InMemoryAuditStore, InMemoryDeadLetterStore
from .worker import AuditWorker

logger = structlog.get_logger(__name__)


class AuditPipeline:
    """
    Owns every pipeline component.

    Stores and the signer can be injected; otherwise in-memory stores
    and an Ed25519 signer built from settings are used.
    """

    def __init__(
        self,
        settings: Settings,
        store: Optional[AuditStore] = None,
        dead_letter_store: Optional[DeadLetterStore] = None,
        signer: Optional[Signer] = None,
        route_table: RouteTable = DEFAULT_ROUTE_TABLE,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self.settings = settings
        self.metrics = metrics if metrics is not None else MetricsCollector()
        self.notifier = Notifier()

        self.webhook: Optional[WebhookSink] = None
        if settings.dead_letter.alert_webhook_url:
            self.webhook = WebhookSink(
                settings.dead_letter.alert_webhook_url,
                settings.dead_letter.alert_timeout_seconds,
            )
            self.notifier.subscribe(DEAD_LETTER_ALERT, self.webhook)
            self.notifier.subscribe(HEALTH_CRITICAL, self.webhook)

        self.store = store if store is not None else InMemoryAuditStore()
        self.dead_letter_store = dead_letter_store if dead_letter_store is not None else InMemoryDeadLetterStore()
        self.signer = signer if signer is not None else Ed25519Signer(
            settings.worker.signing_private_key,
            settings.worker.signing_key_id,
        )

        self.queue = AuditQueue(
            settings.queue,
            journal=QueueJournal(settings.queue.journal_path),
            metrics=self.metrics,
        )
        self.worker = AuditWorker(
            settings.worker,
            self.store,
            self.signer,
            self.notifier,
            self.metrics,
            dead_letter_store=self.dead_letter_store,
        )
        self.dead_letter = DeadLetterHandler(
            settings.dead_letter,
            self.dead_letter_store,
            self.queue,
            self.notifier,
            self.metrics,
        )
        self.consumer = QueueConsumer(
            self.queue,
            self.worker,
            self.dead_letter,
            self.metrics,
            poll_interval=settings.queue.poll_interval_seconds,
        )

        self.dispatcher = EventDispatcher(
            self.queue,
            self.metrics,
            sync_budget_ms=settings.capture.sync_budget_ms,
        )
        self.dedup: Optional[DedupCache] = None
        if settings.dedup.enabled:
            self.dedup = DedupCache(settings.dedup.ttl_seconds, settings.dedup.max_entries)
        self.capture = AuditCapture(
            self.dispatcher,
            self.dedup,
            self.metrics,
            settings=settings.capture,
            route_table=route_table,
        )

        self.health = HealthChecker(
            settings.health,
            self.queue,
            self.store,
            self.metrics,
            self.notifier,
            consumer=self.consumer,
        )
        self._sweep_task: Optional[asyncio.Task[None]] = None
        self._started = False

    async def open(self) -> int:
        """Open the queue and restore dead letters saved to the fallback file."""
        restored = await self.queue.open()
        replayed = await self.dead_letter.replay_fallback_file()
        logger.info(
            "Audit pipeline opened",
            restored_jobs=restored,
            replayed_dead_letters=replayed,
            alert_channels={p.value: c for p, c in ALERT_CHANNELS.items()},
        )
        return restored

    async def start(self, background: bool = True) -> None:
        """
        Open the pipeline and start background services.

        Args:
            background: Start the consumer, health and sweep loops
        """
        if self._started:
            return

        await self.open()
        if self.webhook:
            await self.webhook.start()

        if background:
            await self.consumer.start()
            await self.health.start()
            if self.dedup is not None:
                self._sweep_task = asyncio.create_task(self._sweep_loop())

        self._started = True
        logger.info("Audit pipeline started", background=background)

    async def stop(self) -> None:
        """Flush pending submissions, stop background services and close the queue."""
        if not self._started:
            return

        await self.dispatcher.drain()

        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        await self.health.stop()
        await self.consumer.stop()
        await self.queue.close()

        if self.webhook:
            await self.webhook.stop()

        self._started = False
        logger.info("Audit pipeline stopped")

    async def _sweep_loop(self) -> None:
        interval = max(self.settings.dedup.ttl_seconds, 1.0)
        while True:
            try:
                await asyncio.sleep(interval)
                if self.dedup is not None:
                    self.dedup.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Dedup sweep failed", error=str(e))

    def emit(self, event: BaseAuditEvent, config: Optional[JobConfig] = None) -> None:
        """Emit a domain event through the dispatcher."""
        self.dispatcher.emit(event, config)
        self.consumer.notify()

    async def submit(self, event: BaseAuditEvent, config: Optional[JobConfig] = None) -> Optional[QueueJob]:
        """Queue a domain event and return its job."""
        job = await self.dispatcher.dispatch_async(event, config)
        self.consumer.notify()
        return job

    async def flush(self, max_delay: float = 0.0) -> int:
        """Submit pending events and process the queue until idle."""
        await self.dispatcher.drain()
        return await self.consumer.run_until_idle(max_delay=max_delay)

    async def cleanup_retention(self) -> int:
        """Delete audit records whose retention has expired."""
        return await self.store.cleanup_expired()

    async def status(self) -> Dict[str, Any]:
        return {
            "queue": self.queue.counts(),
            "storage": await self.store.stats(),
            "dead_letters": await self.dead_letter_store.count_by_status(),
            "health": self.health.current.status if self.health.current else None,
        }
