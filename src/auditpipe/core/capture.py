"""
Audit capture at the request boundary.

For every audited request one OPERATION_START event is emitted before
the handler runs and one OPERATION_SUCCESS or OPERATION_ERROR event
after it, sharing a correlation id. System routes and duplicate
requests inside the dedup window emit nothing. Capture never changes
the outcome of the request: its own failures are logged and swallowed,
the handler's exceptions are re-raised untouched.
"""

import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple, TypeVar

import structlog

from ..config import CaptureSettings
from ..models.events import OperationAuditEvent, OperationError, RequestContext, RiskLevel
from ..models.records import JobConfig
from .classifier import DEFAULT_ROUTE_TABLE, Classification, RouteTable, classify
from .dedup import DedupCache, DedupKey
from .dispatcher import EventDispatcher
from .masking import MaskingEngine
from .metrics import MetricsCollector

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_NUMERIC_SEGMENT = re.compile(r"/\d+(?=/|$)")
_UUID_SEGMENT = re.compile(
    r"/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}(?=/|$)",
    re.IGNORECASE,
)
_API_PREFIX = re.compile(r"^api$|^v\d+$", re.IGNORECASE)
_ID_VALUE = re.compile(
    r"^(\d+|[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})$",
    re.IGNORECASE,
)

HTTP_OPERATIONS = {
    "GET": "read",
    "POST": "create",
    "PUT": "update",
    "PATCH": "update",
    "DELETE": "delete",
}


@dataclass
class RequestInfo:
    """What capture needs to know about an incoming request."""

    method: str
    path: str
    query_string: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    client_host: Optional[str] = None
    path_params: Dict[str, Any] = field(default_factory=dict)
    query_params: Dict[str, Any] = field(default_factory=dict)
    body: Any = None
    user: Any = None
    entity_hint: Optional[str] = None
    controller: Optional[str] = None

    def header(self, name: str) -> Optional[str]:
        value = self.headers.get(name.lower())
        if value is None:
            return None
        value = value.strip()
        return value or None

    @property
    def url(self) -> str:
        return f"{self.path}?{self.query_string}" if self.query_string else self.path


@dataclass
class ResponseInfo:
    status_code: int = 200
    body: Any = None


@dataclass
class AuditContext:
    """Per-request state shared by the start and completion events."""

    classification: Classification
    method: str
    endpoint: str
    entity_name: str
    entity_id: Optional[str]
    user_id: Optional[str]
    correlation_id: str
    request_context: RequestContext
    params: Dict[str, Any]
    controller: Optional[str]
    started_at: float = field(default_factory=time.perf_counter)


ResponseInspector = Callable[[T, bool], Awaitable[Tuple[ResponseInfo, T]]]


async def _default_inspector(result: Any, want_body: bool) -> Tuple[ResponseInfo, Any]:
    status = getattr(result, "status_code", 200)
    body = result if want_body and isinstance(result, (dict, list)) else None
    return ResponseInfo(status_code=status, body=body), result


def normalize_endpoint(path: str) -> str:
    """Strip the query and replace numeric ids and UUIDs with placeholders."""
    endpoint = path.split("?", 1)[0] or "/"
    endpoint = _UUID_SEGMENT.sub("/:uuid", endpoint)
    endpoint = _NUMERIC_SEGMENT.sub("/:id", endpoint)
    return endpoint


def _segments(path: str):
    return [segment for segment in path.split("?", 1)[0].split("/") if segment]


def entity_name_for(path: str) -> str:
    """First path segment after an ``/api`` or ``/vN`` prefix."""
    for segment in _segments(path):
        if _API_PREFIX.match(segment):
            continue
        return segment.lower()
    return "unknown"


def entity_id_for(path: str, path_params: Mapping[str, Any], response_body: Any = None) -> Optional[str]:
    if path_params.get("id") is not None:
        return str(path_params["id"])

    segments = _segments(path)
    entity = entity_name_for(path)
    for index, segment in enumerate(segments[:-1]):
        if segment.lower() == entity and _ID_VALUE.match(segments[index + 1]):
            return segments[index + 1]

    if isinstance(response_body, dict) and response_body.get("id") is not None:
        return str(response_body["id"])
    return None


def client_ip_for(request: RequestInfo) -> str:
    forwarded = request.header("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first and first != "unknown":
            return first

    for name in ("x-real-ip", "x-client-ip"):
        value = request.header(name)
        if value and value != "unknown":
            return value

    return request.client_host or "unknown"


def user_id_for(request: RequestInfo) -> Optional[str]:
    user = request.user
    if user is not None:
        if isinstance(user, Mapping):
            candidate = user.get("id") or user.get("sub")
        else:
            candidate = getattr(user, "id", None) or getattr(user, "sub", None)
        if candidate:
            return str(candidate)
    return request.header("x-user-id")


def error_status(exc: BaseException) -> Optional[int]:
    """HTTP status carried by an exception as ``status_code`` or ``status``."""
    for attr in ("status_code", "status"):
        status = getattr(exc, attr, None)
        if isinstance(status, int) and not isinstance(status, bool):
            return status
    return None


class AuditCapture:
    """
    Interceptor producing operation events for audited requests.

    ``intercept`` wraps a plain continuation so any framework adapter can
    use it; AuditMiddleware is the Starlette adapter.
    """

    def __init__(
        self,
        dispatcher: EventDispatcher,
        dedup: Optional[DedupCache],
        metrics: MetricsCollector,
        settings: Optional[CaptureSettings] = None,
        route_table: RouteTable = DEFAULT_ROUTE_TABLE,
    ) -> None:
        self.settings = settings or CaptureSettings()
        self.dispatcher = dispatcher
        self.dedup = dedup
        self.metrics = metrics
        self.route_table = route_table
        self.masking = MaskingEngine(self.settings.baseline_keys, self.settings.mask_value)

    async def intercept(
        self,
        request: RequestInfo,
        call_next: Callable[[], Awaitable[T]],
        inspect_response: Optional[ResponseInspector] = None,
    ) -> T:
        """
        Run ``call_next`` with audit events around it.

        Args:
            request: Boundary view of the request
            call_next: Continuation running the handler
            inspect_response: Reads status and body from the handler result

        Returns:
            Whatever ``call_next`` returned
        """
        context = self.begin(request)

        try:
            result = await call_next()
        except Exception as exc:
            if context is not None:
                self.finish_error(context, exc)
            raise

        if context is None:
            return result

        inspector = inspect_response or _default_inspector
        try:
            info, result = await inspector(result, context.classification.capture_response)
        except Exception as e:
            logger.error("Failed to inspect response for audit", endpoint=context.endpoint, error=str(e))
            return result

        if info.status_code >= 400:
            self.finish_error(context, None, status_code=info.status_code, response_body=info.body)
        else:
            self.finish_success(context, info)
        return result

    def begin(self, request: RequestInfo) -> Optional[AuditContext]:
        """Classify, deduplicate and emit OPERATION_START; None when skipped."""
        try:
            method = request.method.upper()
            classification = classify(method, request.path, request.entity_hint, self.route_table)
            if classification.skip:
                return None

            user_id = user_id_for(request)
            ip = client_ip_for(request)

            if self.dedup is not None:
                key = DedupKey.build(method, request.url, user_id, ip)
                if self.dedup.check_and_mark(key) is None:
                    self.metrics.record_dedup_hit()
                    logger.debug("Duplicate request skipped", method=method, path=request.path)
                    return None

            endpoint = normalize_endpoint(request.path)
            context = AuditContext(
                classification=classification,
                method=method,
                endpoint=endpoint,
                entity_name=request.entity_hint or entity_name_for(request.path),
                entity_id=entity_id_for(request.path, request.path_params),
                user_id=user_id,
                correlation_id=request.header("x-request-id") or str(uuid.uuid4()),
                request_context=RequestContext(
                    ip=ip,
                    user_agent=request.header("user-agent") or "unknown",
                    session_id=request.header("x-session-id"),
                    endpoint=endpoint,
                    method=method,
                ),
                params={**request.query_params, **request.path_params},
                controller=request.controller,
            )

            body = None
            if classification.capture_body and request.body is not None:
                body = self.masking.mask(request.body, classification.sensitive_fields)

            event = self._event(context, "OPERATION_START", classification.risk_level, body=body)
            self._emit(event, context, "start")
            return context
        except Exception as e:
            logger.error("Failed to emit audit start event", method=request.method, path=request.path, error=str(e))
            return None

    def finish_success(self, context: AuditContext, response: ResponseInfo) -> None:
        try:
            metadata: Dict[str, Any] = {}
            if context.classification.capture_response and response.body is not None:
                metadata["response"] = self.masking.mask(response.body, context.classification.sensitive_fields)
            metadata["statusCode"] = response.status_code

            event = self._event(
                context,
                "OPERATION_SUCCESS",
                context.classification.risk_level,
                entity_id=context.entity_id or entity_id_for(context.endpoint, {}, response.body),
                metadata=metadata,
            )
            self._emit(event, context, "success")
        except Exception as e:
            logger.error("Failed to emit audit success event", endpoint=context.endpoint, error=str(e))

    def finish_error(
        self,
        context: AuditContext,
        exc: Optional[BaseException],
        status_code: Optional[int] = None,
        response_body: Any = None,
    ) -> None:
        try:
            status = error_status(exc) if exc is not None else None
            if status is None:
                status = status_code if status_code and status_code >= 400 else 500

            if exc is not None:
                message = str(exc) or type(exc).__name__
                error_type = type(exc).__name__
            else:
                detail = response_body.get("detail") if isinstance(response_body, dict) else None
                message = str(detail) if detail else f"HTTP {status}"
                error_type = "HTTPError"

            error = OperationError(message=message, status=status, type=error_type)

            # Errors are at least HIGH risk; CRITICAL operations stay CRITICAL
            risk = context.classification.risk_level
            if risk != RiskLevel.CRITICAL:
                risk = RiskLevel.HIGH

            event = self._event(
                context,
                "OPERATION_ERROR",
                risk,
                error=error,
                metadata={"error": error.to_wire()},
            )
            self._emit(event, context, "error")
        except Exception as e:
            logger.error("Failed to emit audit error event", endpoint=context.endpoint, error=str(e))

    def _event(
        self,
        context: AuditContext,
        event_type: str,
        risk_level: RiskLevel,
        body: Any = None,
        entity_id: Optional[str] = None,
        error: Optional[OperationError] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> OperationAuditEvent:
        duration = None
        if event_type != "OPERATION_START":
            duration = round((time.perf_counter() - context.started_at) * 1000, 3)

        lgpd = context.classification.lgpd_relevant and risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL)
        return OperationAuditEvent(
            event_type=event_type,
            entity_name=context.entity_name,
            entity_id=entity_id or context.entity_id,
            user_id=context.user_id,
            risk_level=risk_level,
            lgpd_relevant=lgpd,
            correlation_id=context.correlation_id,
            request_context=context.request_context,
            controller=context.controller,
            http_method=context.method,
            operation=HTTP_OPERATIONS.get(context.method, "access"),
            duration=duration,
            params=context.params,
            body=body,
            error=error,
            metadata={"endpoint": context.endpoint, **(metadata or {})},
        )

    def _emit(self, event: OperationAuditEvent, context: AuditContext, stage: str) -> None:
        config = None
        if event.risk_level == RiskLevel.CRITICAL and self.settings.sign_critical_events:
            config = JobConfig(sign=True)
        self.dispatcher.emit(event, config)
        self.metrics.record_capture(stage, context.method, event.risk_level.value)
