"""
Tests for audit capture around request handlers.
"""

from typing import Any, List, Optional, Tuple

import pytest

from auditpipe.config import CaptureSettings
from auditpipe.core.capture import (
    AuditCapture,
    RequestInfo,
    ResponseInfo,
    client_ip_for,
    entity_id_for,
    entity_name_for,
    error_status,
    normalize_endpoint,
    user_id_for,
)
from auditpipe.core.dedup import DedupCache
from auditpipe.core.metrics import MetricsCollector
from auditpipe.models import JobConfig, OperationAuditEvent, RiskLevel


class RecordingDispatcher:
    """Stands in for EventDispatcher and keeps emitted events."""

    def __init__(self, fail: bool = False) -> None:
        self.emitted: List[Tuple[OperationAuditEvent, Optional[JobConfig]]] = []
        self.fail = fail

    def emit(self, event: OperationAuditEvent, config: Optional[JobConfig] = None) -> None:
        if self.fail:
            raise RuntimeError("dispatcher down")
        self.emitted.append((event, config))

    @property
    def events(self) -> List[OperationAuditEvent]:
        return [event for event, _ in self.emitted]


class HandlerError(Exception):
    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class DomainError(Exception):
    """Carries its HTTP status as ``status``."""

    def __init__(self, message: str, status: int) -> None:
        super().__init__(message)
        self.status = status


def make_capture(dispatcher: RecordingDispatcher, dedup: Optional[DedupCache] = None, metrics=None) -> AuditCapture:
    return AuditCapture(dispatcher, dedup, metrics if metrics is not None else MetricsCollector(), settings=CaptureSettings())


def request(method: str, path: str, **kwargs: Any) -> RequestInfo:
    headers = kwargs.pop("headers", {})
    return RequestInfo(method=method, path=path, headers=headers, client_host="10.0.0.1", **kwargs)


def returning(value: Any):
    async def call_next():
        return value
    return call_next


class TestBoundaryHelpers:
    """Test endpoint, entity, IP and user extraction."""

    def test_normalize_endpoint_replaces_ids(self) -> None:
        assert normalize_endpoint("/api/v1/cidadao/123") == "/api/v1/cidadao/:id"
        assert normalize_endpoint("/api/v1/cidadao/123/dependentes/7?x=1") == "/api/v1/cidadao/:id/dependentes/:id"
        assert (
            normalize_endpoint("/api/doc/3f2b8c1e-1111-4a2b-9c3d-1234567890ab")
            == "/api/doc/:uuid"
        )

    def test_entity_name_skips_api_prefixes(self) -> None:
        assert entity_name_for("/api/v1/cidadao/123") == "cidadao"
        assert entity_name_for("/Beneficio") == "beneficio"
        assert entity_name_for("/") == "unknown"

    def test_entity_id_sources(self) -> None:
        assert entity_id_for("/api/v1/cidadao/123", {}) == "123"
        assert entity_id_for("/api/v1/cidadao/x", {"id": 9}) == "9"
        assert entity_id_for("/api/v1/cidadao", {}, {"id": "456"}) == "456"
        assert entity_id_for("/api/v1/cidadao", {}) is None

    def test_client_ip_prefers_forwarded_for(self) -> None:
        info = request("GET", "/x", headers={"x-forwarded-for": "203.0.113.5, 10.0.0.2", "x-real-ip": "198.51.100.1"})
        assert client_ip_for(info) == "203.0.113.5"

    def test_client_ip_falls_back(self) -> None:
        assert client_ip_for(request("GET", "/x", headers={"x-real-ip": "198.51.100.1"})) == "198.51.100.1"
        assert client_ip_for(request("GET", "/x", headers={"x-forwarded-for": "unknown"})) == "10.0.0.1"
        assert client_ip_for(RequestInfo(method="GET", path="/x")) == "unknown"

    def test_user_id_sources(self) -> None:
        assert user_id_for(request("GET", "/x", user={"id": 7})) == "7"
        assert user_id_for(request("GET", "/x", user={"sub": "abc"})) == "abc"
        assert user_id_for(request("GET", "/x", headers={"x-user-id": "u-1"})) == "u-1"
        assert user_id_for(request("GET", "/x")) is None

    def test_error_status_sources(self) -> None:
        assert error_status(HandlerError("x", 404)) == 404
        assert error_status(DomainError("x", 400)) == 400
        assert error_status(RuntimeError("x")) is None


class TestAuditCapture:
    """Test start and completion events emitted around handlers."""

    @pytest.mark.asyncio
    async def test_start_and_success_share_correlation_id(self) -> None:
        dispatcher = RecordingDispatcher()
        capture = make_capture(dispatcher)

        result = await capture.intercept(
            request("DELETE", "/api/v1/cidadao/123", headers={"x-request-id": "req-1"}),
            returning({"id": "123", "deleted": True}),
        )

        assert result == {"id": "123", "deleted": True}
        start, success = dispatcher.events
        assert start.event_type == "OPERATION_START"
        assert success.event_type == "OPERATION_SUCCESS"
        assert start.correlation_id == success.correlation_id == "req-1"
        assert start.risk_level == success.risk_level == RiskLevel.CRITICAL
        assert success.operation == "delete"
        assert success.entity_id == "123"
        assert success.duration is not None and success.duration >= 0
        assert success.metadata["endpoint"] == "/api/v1/cidadao/:id"
        assert success.metadata["statusCode"] == 200
        assert success.metadata["response"] == {"id": "123", "deleted": True}

    @pytest.mark.asyncio
    async def test_critical_events_request_signing(self) -> None:
        dispatcher = RecordingDispatcher()
        capture = make_capture(dispatcher)

        await capture.intercept(request("DELETE", "/api/v1/relatorios/1"), returning({}))

        assert all(config is not None and config.sign for _, config in dispatcher.emitted)

    @pytest.mark.asyncio
    async def test_generated_correlation_id(self) -> None:
        dispatcher = RecordingDispatcher()
        capture = make_capture(dispatcher)

        await capture.intercept(request("GET", "/api/v1/relatorios"), returning([]))

        start, success = dispatcher.events
        assert start.correlation_id
        assert start.correlation_id == success.correlation_id
        assert dispatcher.emitted[0][1] is None

    @pytest.mark.asyncio
    async def test_request_body_masked(self) -> None:
        dispatcher = RecordingDispatcher()
        capture = make_capture(dispatcher)
        body = {"nome": "Maria Silva", "cpf": "12345678901", "email": "maria@x.com", "senha": "s3"}

        await capture.intercept(request("POST", "/api/v1/cidadao", body=body), returning({"id": "1"}))

        start = dispatcher.events[0]
        assert start.body == {
            "nome": "Maria Silva",
            "cpf": "***MASKED***",
            "email": "***MASKED***",
            "senha": "***MASKED***",
        }
        assert start.risk_level == RiskLevel.HIGH
        assert start.lgpd_relevant
        assert start.operation == "create"
        # Caller's body is not modified
        assert body["cpf"] == "12345678901"

    @pytest.mark.asyncio
    async def test_handler_error_emits_error_event_and_reraises(self) -> None:
        dispatcher = RecordingDispatcher()
        capture = make_capture(dispatcher)

        async def failing():
            raise HandlerError("bad request", 400)

        with pytest.raises(HandlerError):
            await capture.intercept(request("GET", "/api/v1/relatorios"), failing)

        start, error = dispatcher.events
        assert error.event_type == "OPERATION_ERROR"
        assert error.risk_level == RiskLevel.HIGH
        assert error.metadata["error"] == {"message": "bad request", "status": 400, "type": "HandlerError"}
        assert error.error.status == 400
        assert error.correlation_id == start.correlation_id

    @pytest.mark.asyncio
    async def test_error_status_read_from_status_attribute(self) -> None:
        dispatcher = RecordingDispatcher()
        capture = make_capture(dispatcher)

        async def failing():
            raise DomainError("bad request", 400)

        with pytest.raises(DomainError):
            await capture.intercept(request("POST", "/api/v1/beneficio", body={}), failing)

        error = dispatcher.events[-1]
        assert error.event_type == "OPERATION_ERROR"
        assert error.metadata["error"] == {"message": "bad request", "status": 400, "type": "DomainError"}

    @pytest.mark.asyncio
    async def test_error_on_critical_operation_stays_critical(self) -> None:
        dispatcher = RecordingDispatcher()
        capture = make_capture(dispatcher)

        async def failing():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await capture.intercept(request("DELETE", "/api/v1/relatorios/1"), failing)

        error = dispatcher.events[-1]
        assert error.risk_level == RiskLevel.CRITICAL
        assert error.metadata["error"]["status"] == 500

    @pytest.mark.asyncio
    async def test_error_status_from_inspected_response(self) -> None:
        dispatcher = RecordingDispatcher()
        capture = make_capture(dispatcher)

        async def inspector(result, want_body):
            return ResponseInfo(status_code=422, body={"detail": "invalid cpf"}), result

        await capture.intercept(request("POST", "/api/v1/cidadao", body={}), returning("resp"), inspector)

        error = dispatcher.events[-1]
        assert error.event_type == "OPERATION_ERROR"
        assert error.metadata["error"] == {"message": "invalid cpf", "status": 422, "type": "HTTPError"}

    @pytest.mark.asyncio
    async def test_system_route_emits_nothing(self) -> None:
        dispatcher = RecordingDispatcher()
        capture = make_capture(dispatcher)

        result = await capture.intercept(request("GET", "/health"), returning({"status": "ok"}))

        assert result == {"status": "ok"}
        assert dispatcher.events == []

    @pytest.mark.asyncio
    async def test_duplicate_requests_emit_one_event_set(self) -> None:
        dispatcher = RecordingDispatcher()
        metrics = MetricsCollector()
        dedup = DedupCache(ttl_seconds=5.0)
        capture = make_capture(dispatcher, dedup, metrics)

        for _ in range(3):
            await capture.intercept(request("GET", "/api/v1/cidadao/1"), returning({"id": "1"}))

        assert [e.event_type for e in dispatcher.events] == ["OPERATION_START", "OPERATION_SUCCESS"]
        assert metrics.registry.get_sample_value("audit_dedup_hits_total") == 2

        dedup.clear()
        await capture.intercept(request("GET", "/api/v1/cidadao/1"), returning({"id": "1"}))
        assert len(dispatcher.events) == 4

    @pytest.mark.asyncio
    async def test_capture_failures_never_reach_the_caller(self) -> None:
        capture = make_capture(RecordingDispatcher(fail=True))

        result = await capture.intercept(request("POST", "/api/v1/cidadao", body={"cpf": "1"}), returning("ok"))

        assert result == "ok"
