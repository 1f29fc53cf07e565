"""
Prometheus scrape endpoint for the collector attached to the app.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ..core.metrics import MetricsCollector

logger = structlog.get_logger(__name__)

router = APIRouter()

ERROR_METRIC_TEMPLATE = (
    "# HELP paytrail_metrics_error Metrics generation errors\n"
    "# TYPE paytrail_metrics_error counter\n"
    'paytrail_metrics_error{{error="{error_type}"}} 1\n'
)


def render_metrics(collector: Optional[MetricsCollector]) -> bytes:
    """Render the collector's registry, refreshing the uptime gauge first."""
    if collector is None:
        logger.warning("Metrics collector not initialized")
        return b"# Metrics collector not initialized\n"

    collector.update_uptime()
    return generate_latest(collector.registry)


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="""
    Operation, masking, propagation and inbound request metrics:
    `paytrail_operations_total`, `paytrail_operation_duration_seconds`,
    `paytrail_slow_operations_total`, `paytrail_masking_failures_total`,
    `paytrail_propagated_requests_total`, `paytrail_http_requests_total`.
    """,
)
async def get_metrics(request: Request) -> Response:
    collector = getattr(request.app.state, "metrics", None)
    try:
        payload = render_metrics(collector)
    except Exception as e:
        logger.error("Failed to generate metrics", error_type=type(e).__name__, exc_info=True)
        payload = ERROR_METRIC_TEMPLATE.format(error_type=type(e).__name__).encode()

    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
