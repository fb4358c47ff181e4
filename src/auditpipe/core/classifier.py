"""
Request classification for audit capture.

Maps an HTTP method and route to a risk level, the sensitive fields
that must be masked, and whether the request should be audited at all.
Pure functions over an explicit route table.
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from ..models.events import RiskLevel

SYSTEM_ROUTES: Tuple[str, ...] = (
    "/health",
    "/healthz",
    "/readyz",
    "/metrics",
    "/favicon.ico",
    "/api-docs",
    "/docs",
    "/redoc",
    "/openapi.json",
    "/swagger",
    "/_next",
    "/static",
)

SENSITIVE_ROUTES: Tuple[str, ...] = (
    "/cidadao",
    "/usuario",
    "/beneficio",
    "/pagamento",
    "/documento",
)

WRITE_METHODS = frozenset({"POST", "PUT", "PATCH"})


@dataclass(frozen=True)
class RouteRule:
    """Audit configuration for routes containing ``prefix``."""

    prefix: str
    sensitive_fields: Tuple[str, ...] = ()
    risk_level: Optional[RiskLevel] = None
    capture_body: Optional[bool] = None
    capture_response: Optional[bool] = None


class RouteTable:
    """
    Validated set of route rules.

    Rules are matched by substring on the lowercased route, longest
    prefix first, so ``/usuario/perfil`` can refine ``/usuario``.
    """

    def __init__(self, rules: Iterable[RouteRule]) -> None:
        self._rules: List[RouteRule] = []
        seen = set()
        for rule in rules:
            if not rule.prefix.startswith("/"):
                raise ValueError(f"Route prefix must start with '/': {rule.prefix!r}")
            prefix = rule.prefix.lower().rstrip("/") or "/"
            if prefix in seen:
                raise ValueError(f"Duplicate route rule for {prefix!r}")
            seen.add(prefix)
            self._rules.append(
                RouteRule(
                    prefix=prefix,
                    sensitive_fields=tuple(rule.sensitive_fields),
                    risk_level=rule.risk_level,
                    capture_body=rule.capture_body,
                    capture_response=rule.capture_response,
                )
            )
        self._rules.sort(key=lambda r: len(r.prefix), reverse=True)

    def match(self, route: str) -> Optional[RouteRule]:
        route = route.lower()
        for rule in self._rules:
            if rule.prefix in route:
                return rule
        return None

    def __len__(self) -> int:
        return len(self._rules)


DEFAULT_ROUTE_TABLE = RouteTable(
    [
        RouteRule("/cidadao", ("cpf", "rg", "telefone", "email", "endereco")),
        RouteRule("/usuario", ("email", "telefone", "cpf")),
        RouteRule("/beneficio", ("valor", "conta_bancaria")),
        RouteRule("/pagamento", ("valor", "conta_destino", "pix_key")),
    ]
)


@dataclass(frozen=True)
class Classification:
    """Outcome of classifying one request."""

    skip: bool = False
    risk_level: RiskLevel = RiskLevel.LOW
    sensitive_fields: Tuple[str, ...] = field(default_factory=tuple)
    lgpd_relevant: bool = False
    capture_body: bool = False
    capture_response: bool = False


SKIPPED = Classification(skip=True)


def is_system_route(route: str) -> bool:
    route = route.lower()
    return any(route.startswith(prefix) for prefix in SYSTEM_ROUTES)


def _touches_sensitive_data(route: str, entity_hint: Optional[str]) -> bool:
    if any(prefix in route for prefix in SENSITIVE_ROUTES):
        return True
    if entity_hint:
        hint = "/" + entity_hint.strip("/").lower()
        return hint in SENSITIVE_ROUTES
    return False


def determine_risk_level(http_method: str, route: str, entity_hint: Optional[str] = None) -> RiskLevel:
    """Risk level from method and route, first matching rule wins."""
    method = http_method.upper()
    route = route.lower()

    if method == "DELETE" or "/admin/" in route:
        return RiskLevel.CRITICAL

    if method in WRITE_METHODS or "/auth/" in route or "/usuario/" in route:
        return RiskLevel.HIGH

    if method == "GET" and _touches_sensitive_data(route, entity_hint):
        return RiskLevel.MEDIUM

    return RiskLevel.LOW


def classify(
    http_method: str,
    route: str,
    entity_hint: Optional[str] = None,
    table: RouteTable = DEFAULT_ROUTE_TABLE,
) -> Classification:
    """
    Classify a request for auditing.

    Args:
        http_method: Request method, any case
        route: Request path or route template
        entity_hint: Optional entity name declared by the handler
        table: Route rules supplying sensitive fields and overrides

    Returns:
        SKIPPED for system routes, otherwise the full classification
    """
    if is_system_route(route):
        return SKIPPED

    method = http_method.upper()
    rule = table.match(route)

    risk_level = determine_risk_level(method, route, entity_hint)
    if rule is not None and rule.risk_level is not None:
        risk_level = rule.risk_level

    sensitive_fields = rule.sensitive_fields if rule is not None else ()
    sensitive_route = _touches_sensitive_data(route.lower(), entity_hint)

    capture_body = method in WRITE_METHODS
    capture_response = method == "DELETE" or sensitive_route
    if rule is not None:
        if rule.capture_body is not None:
            capture_body = rule.capture_body
        if rule.capture_response is not None:
            capture_response = rule.capture_response

    lgpd_relevant = bool(sensitive_fields) and risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL)

    return Classification(
        skip=False,
        risk_level=risk_level,
        sensitive_fields=sensitive_fields,
        lgpd_relevant=lgpd_relevant,
        capture_body=capture_body,
        capture_response=capture_response,
    )
