"""
Starlette adapter for audit capture.

Builds a RequestInfo from the incoming request, runs the handler through
AuditCapture.intercept and, when the classification asks for it, reads
the JSON response body so it can be audited. The response is rebuilt
from the consumed body so the client receives it unchanged.
"""

import json
from typing import Any, Optional, Tuple

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from .capture import AuditCapture, RequestInfo, ResponseInfo

logger = structlog.get_logger(__name__)

BODY_METHODS = {"POST", "PUT", "PATCH"}


def _parse_json(raw: bytes, content_type: Optional[str]) -> Any:
    if not raw or not content_type or "json" not in content_type:
        return None
    try:
        return json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None


async def _inspect_response(response: Response, want_body: bool) -> Tuple[ResponseInfo, Response]:
    content_type = response.headers.get("content-type")
    if not (want_body or response.status_code >= 400) or not content_type or "json" not in content_type:
        return ResponseInfo(status_code=response.status_code), response

    chunks = []
    async for chunk in response.body_iterator:  # type: ignore[attr-defined]
        chunks.append(chunk if isinstance(chunk, bytes) else chunk.encode("utf-8"))
    raw = b"".join(chunks)

    rebuilt = Response(
        content=raw,
        status_code=response.status_code,
        headers=dict(response.headers),
        background=response.background,
    )
    return ResponseInfo(status_code=response.status_code, body=_parse_json(raw, content_type)), rebuilt


class AuditMiddleware(BaseHTTPMiddleware):
    """Emit operation audit events for every HTTP request."""

    def __init__(self, app: ASGIApp, capture: AuditCapture) -> None:
        super().__init__(app)
        self.capture = capture

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        body = None
        if request.method.upper() in BODY_METHODS:
            body = _parse_json(await request.body(), request.headers.get("content-type"))

        info = RequestInfo(
            method=request.method,
            path=request.url.path,
            query_string=request.url.query,
            headers={key.lower(): value for key, value in request.headers.items()},
            client_host=request.client.host if request.client else None,
            path_params=dict(request.path_params),
            query_params=dict(request.query_params),
            body=body,
            user=getattr(request.state, "user", None),
        )

        async def continuation() -> Response:
            return await call_next(request)

        return await self.capture.intercept(info, continuation, _inspect_response)
