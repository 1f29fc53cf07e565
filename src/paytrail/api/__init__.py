"""
API package.

Contains the ASGI boundary middleware and the FastAPI routers:
- /metrics - Prometheus metrics
- /healthz - Liveness probe
"""
from .healthz import router as healthz_router
from .metrics import router as metrics_router
from .middleware import CorrelationMiddleware

__all__ = ["CorrelationMiddleware", "healthz_router", "metrics_router"]
