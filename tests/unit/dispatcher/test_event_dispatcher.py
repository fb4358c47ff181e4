"""
Tests for synchronous and queued event dispatch.
"""

from typing import List

import pytest
import pytest_asyncio

from auditpipe.config import QueueSettings
from auditpipe.core.dispatcher import EventDispatcher, select_lane
from auditpipe.core.metrics import MetricsCollector
from auditpipe.core.queue import AuditQueue
from auditpipe.models import (
    BaseAuditEvent,
    EntityAuditEvent,
    EventType,
    JobConfig,
    RiskLevel,
    SecurityAuditEvent,
    SensitiveDataAuditEvent,
)


def entity(risk: RiskLevel = RiskLevel.LOW, lgpd: bool = False) -> EntityAuditEvent:
    return EntityAuditEvent(
        event_type="ENTITY_CREATED",
        entity_name="cidadao",
        risk_level=risk,
        lgpd_relevant=lgpd,
    )


@pytest_asyncio.fixture
async def queue(tmp_path, metrics: MetricsCollector):
    audit_queue = AuditQueue(QueueSettings(journal_path=tmp_path / "queue"), metrics=metrics)
    await audit_queue.open()
    yield audit_queue
    await audit_queue.close()


class TestLaneSelection:
    def test_lane_by_risk_and_lgpd(self) -> None:
        assert select_lane(entity(RiskLevel.CRITICAL, lgpd=True)) == "critical"
        assert select_lane(entity(RiskLevel.HIGH, lgpd=True)) == "sensitive"
        assert select_lane(SensitiveDataAuditEvent(event_type="SENSITIVE_DATA_EXPORTED", entity_name="c")) == "sensitive"
        assert select_lane(entity(RiskLevel.HIGH)) == "default"
        assert select_lane(entity()) == "default"


class TestEventDispatcher:
    """Test listener fan-out and queue submission."""

    def test_listeners_filtered_by_event_type(self, queue: AuditQueue, metrics: MetricsCollector) -> None:
        dispatcher = EventDispatcher(queue, metrics)
        every: List[BaseAuditEvent] = []
        security_only: List[BaseAuditEvent] = []
        dispatcher.register_listener(every.append)
        dispatcher.register_listener(security_only.append, [EventType.FAILED_LOGIN, "USER_LOGIN"])

        dispatcher.dispatch_sync(entity())
        dispatcher.dispatch_sync(SecurityAuditEvent(event_type="FAILED_LOGIN", entity_name="auth"))

        assert len(every) == 2
        assert [e.event_type for e in security_only] == ["FAILED_LOGIN"]

    def test_listener_errors_are_contained(self, queue: AuditQueue, metrics: MetricsCollector) -> None:
        dispatcher = EventDispatcher(queue, metrics)
        received: List[BaseAuditEvent] = []

        def broken(event: BaseAuditEvent) -> None:
            raise ValueError("listener bug")

        dispatcher.register_listener(broken)
        dispatcher.register_listener(received.append)

        dispatcher.dispatch_sync(entity())

        assert len(received) == 1
        assert metrics.registry.get_sample_value(
            "audit_listener_errors_total", {"listener": broken.__qualname__}
        ) == 1

    @pytest.mark.asyncio
    async def test_dispatch_async_uses_lane_and_event_id(self, queue: AuditQueue, metrics: MetricsCollector) -> None:
        dispatcher = EventDispatcher(queue, metrics)
        event = entity(RiskLevel.CRITICAL)

        job = await dispatcher.dispatch_async(event, JobConfig(sign=True))

        assert job is not None
        assert job.id == event.event_id
        assert job.lane == "critical"
        assert job.event["eventType"] == "ENTITY_CREATED"
        assert job.config.sign is True

    @pytest.mark.asyncio
    async def test_enqueue_failure_returns_none(self, queue: AuditQueue, metrics: MetricsCollector) -> None:
        dispatcher = EventDispatcher(queue, metrics)
        await queue.close()

        assert await dispatcher.dispatch_async(entity()) is None

    @pytest.mark.asyncio
    async def test_emit_runs_both_paths(self, queue: AuditQueue, metrics: MetricsCollector) -> None:
        dispatcher = EventDispatcher(queue, metrics)
        received: List[BaseAuditEvent] = []
        dispatcher.register_listener(received.append)
        event = entity()

        dispatcher.emit(event)
        assert len(received) == 1
        assert dispatcher.pending == 1

        await dispatcher.drain()
        assert dispatcher.pending == 0
        assert queue.get(event.event_id) is not None
        assert metrics.registry.get_sample_value(
            "audit_events_total", {"event_type": "ENTITY_CREATED", "risk_level": "LOW"}
        ) == 1

    @pytest.mark.asyncio
    async def test_dispatch_batch_uses_batch_lane(self, queue: AuditQueue, metrics: MetricsCollector) -> None:
        dispatcher = EventDispatcher(queue, metrics)

        jobs = await dispatcher.dispatch_batch([entity(), entity(RiskLevel.CRITICAL)])

        assert [job.lane for job in jobs] == ["batch", "batch"]
        assert queue.depth("batch") == 2
