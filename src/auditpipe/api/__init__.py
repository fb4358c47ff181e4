"""
API endpoints package.

Contains FastAPI routers for all service endpoints:
- /metrics - Prometheus metrics
- /healthz, /readyz - Health checks
- /v1/admin/... - Dead-letter management, retention and status
"""
from .admin import router as admin_router
from .healthz import router as healthz_router
from .metrics import router as metrics_router

__all__ = ["admin_router", "healthz_router", "metrics_router"]
