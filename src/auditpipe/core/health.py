"""
Health checker for the audit pipeline.

Checks five components:
- broker: queue journal reachable, graded by response time
- database: audit store reachable, graded by response time
- queue: waiting plus in-flight jobs against size thresholds
- worker: processing error rate in the rolling window
- capture: events captured recently

Each component is healthy, degraded or critical and the overall status
is the worst of them.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog

from ..config import HealthSettings
from ..models.events import utc_now
from .metrics import MetricsCollector
from .notifications import HEALTH_CHECKED, HEALTH_CRITICAL, Notifier
from .queue import AuditQueue
from .storage import AuditStore

logger = structlog.get_logger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"
CRITICAL = "critical"

_SEVERITY = {HEALTHY: 0, DEGRADED: 1, CRITICAL: 2}

COMPONENTS = ("broker", "database", "queue", "worker", "capture")


@dataclass
class ComponentHealth:
    """Individual component check result."""
    status: str
    message: str
    last_check: datetime
    response_time_ms: Optional[float] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "status": self.status,
            "message": self.message,
            "lastCheck": self.last_check.isoformat(),
            "details": self.details,
        }
        if self.response_time_ms is not None:
            data["responseTime"] = self.response_time_ms
        return data


@dataclass
class SystemHealth:
    """Overall health status."""
    status: str
    timestamp: datetime
    components: Dict[str, ComponentHealth]
    metrics: Dict[str, float]
    alerts: List[str]

    @property
    def is_critical(self) -> bool:
        return self.status == CRITICAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
            "components": {name: check.to_dict() for name, check in self.components.items()},
            "metrics": dict(self.metrics),
            "alerts": list(self.alerts),
        }


def worst(statuses: List[str]) -> str:
    if not statuses:
        return HEALTHY
    return max(statuses, key=lambda status: _SEVERITY[status])


class HealthChecker:
    """
    Periodic health checks for the pipeline components.

    Every check publishes ``audit.health.checked``; a check that finds a
    critical condition also publishes ``audit.health.critical``.
    """

    def __init__(
        self,
        settings: HealthSettings,
        queue: AuditQueue,
        store: AuditStore,
        metrics: MetricsCollector,
        notifier: Notifier,
        consumer: Any = None,
    ) -> None:
        self.settings = settings
        self.queue = queue
        self.store = store
        self.metrics = metrics
        self.notifier = notifier
        self.consumer = consumer
        self._task: Optional[asyncio.Task[None]] = None
        self._running = False
        self.current: Optional[SystemHealth] = None

    async def start(self) -> None:
        """Start the periodic check loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Health checker started", interval_seconds=self.settings.check_interval_seconds)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Health checker stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.check_all()
                await asyncio.sleep(self.settings.check_interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Health check loop error", error=str(e))
                await asyncio.sleep(self.settings.check_interval_seconds)

    async def check_all(self) -> SystemHealth:
        """Run every component check and publish the result."""
        started = time.perf_counter()

        results = await asyncio.gather(
            self._check_broker(),
            self._check_database(),
            self._check_queue(),
            self._check_worker(),
            self._check_capture(),
            return_exceptions=True,
        )

        components: Dict[str, ComponentHealth] = {}
        for name, result in zip(COMPONENTS, results):
            if isinstance(result, BaseException):
                components[name] = ComponentHealth(
                    status=CRITICAL,
                    message=f"{name} check failed: {result}",
                    last_check=utc_now(),
                    details={"error": str(result), "error_type": type(result).__name__},
                )
            else:
                components[name] = result

        response_times = [c.response_time_ms for c in components.values() if c.response_time_ms is not None]
        metrics = {
            "errorRate": self.metrics.error_rate(),
            "throughput": self.metrics.throughput_per_minute(),
            "queueSize": float(self.queue.depth() + self.queue.in_flight),
            "averageLatency": sum(response_times) / len(response_times) if response_times else 0.0,
        }

        alerts, metric_critical = self._alerts(components, metrics)
        health = SystemHealth(
            status=worst([c.status for c in components.values()]),
            timestamp=utc_now(),
            components=components,
            metrics=metrics,
            alerts=alerts,
        )
        self.current = health

        duration_ms = round((time.perf_counter() - started) * 1000, 3)
        await self.notifier.publish(HEALTH_CHECKED, {"health": health.to_dict(), "duration": duration_ms})

        if health.is_critical or metric_critical:
            logger.error("Audit pipeline health critical", status=health.status, alerts=alerts)
            await self.notifier.publish(HEALTH_CRITICAL, {"alerts": alerts, "health": health.to_dict()})
        else:
            logger.debug("Health check completed", status=health.status, duration_ms=duration_ms)

        return health

    def _grade_response_time(self, elapsed_ms: float) -> str:
        if elapsed_ms > self.settings.response_time_critical_ms:
            return CRITICAL
        if elapsed_ms > self.settings.response_time_warning_ms:
            return DEGRADED
        return HEALTHY

    async def _check_broker(self) -> ComponentHealth:
        started = time.perf_counter()
        reachable = self.queue.ping()
        elapsed_ms = round((time.perf_counter() - started) * 1000, 3)

        if not reachable:
            return ComponentHealth(
                status=CRITICAL,
                message="Queue journal unreachable",
                last_check=utc_now(),
                response_time_ms=elapsed_ms,
                details={"open": self.queue.is_open, "connectionStatus": "disconnected"},
            )

        return ComponentHealth(
            status=self._grade_response_time(elapsed_ms),
            message=f"Queue journal responding in {elapsed_ms}ms",
            last_check=utc_now(),
            response_time_ms=elapsed_ms,
            details={
                "journalBytes": self.queue.journal.size_bytes(),
                "connectionStatus": "connected",
            },
        )

    async def _check_database(self) -> ComponentHealth:
        started = time.perf_counter()
        try:
            reachable = await self.store.ping()
            stats = await self.store.stats() if reachable else {}
        except Exception as e:
            return ComponentHealth(
                status=CRITICAL,
                message=f"Audit store unreachable: {e}",
                last_check=utc_now(),
                response_time_ms=round((time.perf_counter() - started) * 1000, 3),
                details={"error": str(e), "connectionStatus": "disconnected"},
            )
        elapsed_ms = round((time.perf_counter() - started) * 1000, 3)

        if not reachable:
            return ComponentHealth(
                status=CRITICAL,
                message="Audit store unreachable",
                last_check=utc_now(),
                response_time_ms=elapsed_ms,
                details={"connectionStatus": "disconnected"},
            )

        return ComponentHealth(
            status=self._grade_response_time(elapsed_ms),
            message=f"Audit store responding in {elapsed_ms}ms",
            last_check=utc_now(),
            response_time_ms=elapsed_ms,
            details={"stats": stats, "connectionStatus": "connected"},
        )

    async def _check_queue(self) -> ComponentHealth:
        size = self.queue.depth() + self.queue.in_flight
        counts = self.queue.counts()

        if size > self.settings.queue_size_critical:
            status = CRITICAL
            message = f"Queue critical: {size} pending jobs (limit {self.settings.queue_size_critical})"
        elif size > self.settings.queue_size_warning:
            status = DEGRADED
            message = f"Queue under heavy load: {size} pending jobs"
        else:
            status = HEALTHY
            message = f"Queue operational with {size} pending jobs"

        return ComponentHealth(
            status=status,
            message=message,
            last_check=utc_now(),
            details={"queueSize": size, "lanes": counts},
        )

    async def _check_worker(self) -> ComponentHealth:
        error_rate = self.metrics.error_rate()
        details: Dict[str, Any] = {
            "errorRate": error_rate,
            "throughputPerMinute": self.metrics.throughput_per_minute(),
            "averageProcessingMs": round(self.metrics.average_latency_ms(), 3),
            "lastProcessedAt": self.metrics.last_processed_at,
        }
        if self.consumer is not None:
            details["running"] = self.consumer.is_running
            details.update(self.consumer.stats())

        if error_rate > self.settings.error_rate_critical:
            status = CRITICAL
            message = f"Critical error rate: {error_rate * 100:.2f}%"
        elif error_rate > self.settings.error_rate_warning:
            status = DEGRADED
            message = f"Elevated error rate: {error_rate * 100:.2f}%"
        elif self.consumer is not None and not self.consumer.is_running:
            status = DEGRADED
            message = "Queue consumer is not running"
        else:
            status = HEALTHY
            message = "Worker processing normally"

        return ComponentHealth(status=status, message=message, last_check=utc_now(), details=details)

    async def _check_capture(self) -> ComponentHealth:
        window = self.settings.capture_window_seconds
        recent = self.metrics.captured_since(window)

        if recent == 0:
            status = DEGRADED
            message = f"No events captured in the last {window} seconds"
        else:
            status = HEALTHY
            message = "Capturing events normally"

        return ComponentHealth(
            status=status,
            message=message,
            last_check=utc_now(),
            details={"recentEvents": recent, "windowSeconds": window},
        )

    def _alerts(self, components: Dict[str, ComponentHealth], metrics: Dict[str, float]):
        """Alert strings and whether any metric crossed a critical threshold."""
        alerts = []
        for name, check in components.items():
            if check.status == CRITICAL:
                alerts.append(f"CRITICAL: {name} - {check.message}")
            elif check.status == DEGRADED:
                alerts.append(f"WARNING: {name} - {check.message}")

        critical = False
        error_rate = metrics["errorRate"]
        if error_rate > self.settings.error_rate_critical:
            alerts.append(f"CRITICAL: error rate very high ({error_rate * 100:.2f}%)")
            critical = True
        elif error_rate > self.settings.error_rate_warning:
            alerts.append(f"WARNING: error rate elevated ({error_rate * 100:.2f}%)")

        queue_size = metrics["queueSize"]
        if queue_size > self.settings.queue_size_critical:
            alerts.append(f"CRITICAL: queue overloaded ({int(queue_size)} jobs)")
            critical = True
        elif queue_size > self.settings.queue_size_warning:
            alerts.append(f"WARNING: queue under heavy load ({int(queue_size)} jobs)")

        throughput = metrics["throughput"]
        if throughput < self.settings.min_throughput_per_minute:
            alerts.append(f"WARNING: low throughput ({throughput:g} events/min)")

        return alerts, critical
