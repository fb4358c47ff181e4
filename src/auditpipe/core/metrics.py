"""
Prometheus metrics collection.

One collector per pipeline, backed by a private CollectorRegistry and
passed by reference to every stage. Rolling in-memory windows back the
error rate, throughput and liveness figures used by the health checker.
"""

import threading
import time
from collections import deque
from typing import Callable, Deque, Optional, Tuple

import structlog
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info, generate_latest

logger = structlog.get_logger(__name__)

WINDOW_SECONDS = 300


class MetricsCollector:
    """
    Centralized metrics collection for the audit pipeline.

    Keep metrics simple, use in-memory counters, let Prometheus handle
    storage.
    """

    def __init__(
        self,
        registry: Optional[CollectorRegistry] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.registry = registry or CollectorRegistry()
        self._clock = clock
        self._lock = threading.Lock()

        # (timestamp, succeeded, duration_seconds)
        self._processed: Deque[Tuple[float, bool, float]] = deque()
        self._captured: Deque[float] = deque()
        self.last_processed_at: Optional[float] = None

        self.service_info = Info(
            "audit_pipeline",
            "Audit pipeline information",
            registry=self.registry,
        )
        self.service_info.info({"version": "0.1.0", "service": "auditpipe"})

        # Capture and dispatch
        self.events_total = Counter(
            "audit_events_total",
            "Audit events emitted",
            ["event_type", "risk_level"],
            registry=self.registry,
        )
        self.capture_events_total = Counter(
            "audit_capture_events_total",
            "Events produced at the request boundary",
            ["stage", "http_method", "risk_level"],
            registry=self.registry,
        )
        self.dedup_hits_total = Counter(
            "audit_dedup_hits_total",
            "Requests skipped as duplicates",
            registry=self.registry,
        )
        self.listener_errors_total = Counter(
            "audit_listener_errors_total",
            "Synchronous listener failures",
            ["listener"],
            registry=self.registry,
        )

        # Worker processing
        self.events_processed_total = Counter(
            "audit_events_processed_total",
            "Queue jobs processed by outcome",
            ["event_type", "status"],
            registry=self.registry,
        )
        self.stage_failures_total = Counter(
            "audit_stage_failures_total",
            "Worker stage failures",
            ["stage", "event_type"],
            registry=self.registry,
        )
        self.processing_duration = Histogram(
            "audit_processing_duration_seconds",
            "Worker stage duration in seconds",
            ["event_type", "stage"],
            buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
            registry=self.registry,
        )
        self.enrichment_fallbacks_total = Counter(
            "audit_enrichment_fallbacks_total",
            "Compression or signing fallbacks",
            ["kind"],
            registry=self.registry,
        )

        # Queue
        self.queue_wait = Histogram(
            "audit_queue_wait_seconds",
            "Time between enqueue and claim",
            ["queue_name"],
            buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0],
            registry=self.registry,
        )
        self.queue_size = Gauge(
            "audit_queue_size",
            "Jobs waiting per lane",
            ["queue_name"],
            registry=self.registry,
        )
        self.dead_letters_total = Counter(
            "audit_dead_letters_total",
            "Jobs handed to the dead-letter handler",
            ["priority", "retryable"],
            registry=self.registry,
        )

        # Derived
        self.error_rate_gauge = Gauge(
            "audit_error_rate",
            "Share of failed jobs in the rolling window",
            registry=self.registry,
        )
        self.throughput_gauge = Gauge(
            "audit_throughput_per_minute",
            "Jobs processed in the last minute",
            registry=self.registry,
        )

    def record_event(self, event_type: str, risk_level: str) -> None:
        self.events_total.labels(event_type=event_type, risk_level=risk_level).inc()

    def record_capture(self, stage: str, http_method: str, risk_level: str) -> None:
        """Record an event produced by the capture interceptor."""
        self.capture_events_total.labels(
            stage=stage,
            http_method=http_method,
            risk_level=risk_level,
        ).inc()
        with self._lock:
            self._captured.append(self._clock())

    def record_dedup_hit(self) -> None:
        self.dedup_hits_total.inc()

    def record_listener_error(self, listener: str) -> None:
        self.listener_errors_total.labels(listener=listener).inc()

    def record_processed(self, event_type: str, status: str, duration_seconds: float) -> None:
        """Record a finished job attempt; status is ``success`` or ``failed``."""
        self.events_processed_total.labels(event_type=event_type, status=status).inc()
        now = self._clock()
        with self._lock:
            self._processed.append((now, status == "success", duration_seconds))
            self.last_processed_at = now
            self._trim(now)

    def record_stage(self, event_type: str, stage: str, duration_seconds: float) -> None:
        self.processing_duration.labels(event_type=event_type, stage=stage).observe(duration_seconds)

    def record_stage_failure(self, stage: str, event_type: str) -> None:
        self.stage_failures_total.labels(stage=stage, event_type=event_type).inc()

    def record_enrichment_fallback(self, kind: str) -> None:
        self.enrichment_fallbacks_total.labels(kind=kind).inc()

    def record_queue_wait(self, lane: str, seconds: float) -> None:
        self.queue_wait.labels(queue_name=lane).observe(max(seconds, 0.0))

    def set_queue_size(self, lane: str, size: int) -> None:
        self.queue_size.labels(queue_name=lane).set(size)

    def record_dead_letter(self, priority: str, retryable: bool) -> None:
        self.dead_letters_total.labels(priority=priority, retryable=str(retryable).lower()).inc()

    def _trim(self, now: float) -> None:
        cutoff = now - WINDOW_SECONDS
        while self._processed and self._processed[0][0] < cutoff:
            self._processed.popleft()
        while self._captured and self._captured[0] < cutoff:
            self._captured.popleft()

    def error_rate(self) -> float:
        """Failed share of job attempts in the rolling window."""
        with self._lock:
            self._trim(self._clock())
            total = len(self._processed)
            if total == 0:
                return 0.0
            failed = sum(1 for _, ok, _ in self._processed if not ok)
        rate = failed / total
        self.error_rate_gauge.set(rate)
        return rate

    def throughput_per_minute(self) -> float:
        now = self._clock()
        with self._lock:
            count = sum(1 for ts, _, _ in self._processed if ts >= now - 60)
        self.throughput_gauge.set(count)
        return float(count)

    def average_latency_ms(self) -> float:
        with self._lock:
            self._trim(self._clock())
            if not self._processed:
                return 0.0
            total = sum(duration for _, _, duration in self._processed)
            return total / len(self._processed) * 1000

    def captured_since(self, seconds: float) -> int:
        """Capture events recorded in the last ``seconds``."""
        cutoff = self._clock() - seconds
        with self._lock:
            return sum(1 for ts in self._captured if ts >= cutoff)

    def export(self) -> bytes:
        """Prometheus text exposition of this collector's registry."""
        self.error_rate()
        self.throughput_per_minute()
        return generate_latest(self.registry)
