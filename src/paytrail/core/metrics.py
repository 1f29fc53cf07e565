"""
Prometheus metrics collection.

In-memory counters and histograms for instrumented operations, masking and
header propagation. Prometheus handles storage.
"""

import time
from typing import Optional

import structlog
from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, Info

from .. import __version__

logger = structlog.get_logger(__name__)


class MetricsCollector:
    """
    Centralized metrics collection for PayTrail.

    Each collector registers into its own registry unless one is given, so
    several collectors can coexist (tests, multiple apps in one process).
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()

        # Service info
        self.service_info = Info(
            "paytrail",
            "PayTrail instrumentation information",
            registry=self.registry,
        )
        self.service_info.info({"version": __version__})

        # Inbound requests seen by the boundary middleware
        self.http_requests_total = Counter(
            "paytrail_http_requests_total",
            "Total HTTP requests that crossed the instrumented boundary",
            ["method", "status_code"],
            registry=self.registry,
        )

        # Instrumented operations
        self.operations_total = Counter(
            "paytrail_operations_total",
            "Total instrumented operation calls",
            ["operation", "status"],
            registry=self.registry,
        )

        self.operation_duration = Histogram(
            "paytrail_operation_duration_seconds",
            "Instrumented operation duration in seconds",
            ["operation"],
            buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
            registry=self.registry,
        )

        self.slow_operations_total = Counter(
            "paytrail_slow_operations_total",
            "Operations that exceeded their performance threshold",
            ["operation"],
            registry=self.registry,
        )

        # Masking
        self.masking_failures_total = Counter(
            "paytrail_masking_failures_total",
            "Masking rules that failed and were skipped",
            ["rule"],
            registry=self.registry,
        )

        # Outbound propagation
        self.propagated_requests_total = Counter(
            "paytrail_propagated_requests_total",
            "Outbound requests that received context headers",
            ["transport"],
            registry=self.registry,
        )

        self.uptime_seconds = Gauge(
            "paytrail_uptime_seconds",
            "Instrumentation uptime in seconds",
            registry=self.registry,
        )

        # Track start time for uptime calculation
        self._start_time = time.time()

    def record_request(self, method: str, status_code: int) -> None:
        """Record an inbound HTTP request."""
        self.http_requests_total.labels(method=method, status_code=str(status_code)).inc()

    def record_operation(self, operation: str, status: str, duration_seconds: float) -> None:
        """Record an instrumented operation outcome."""
        self.operations_total.labels(operation=operation, status=status).inc()
        self.operation_duration.labels(operation=operation).observe(duration_seconds)

    def record_slow_operation(self, operation: str) -> None:
        self.slow_operations_total.labels(operation=operation).inc()

    def record_masking_failure(self, rule: str) -> None:
        """Record a masking rule skipped because it failed."""
        self.masking_failures_total.labels(rule=rule).inc()

    def record_propagation(self, transport: str) -> None:
        self.propagated_requests_total.labels(transport=transport).inc()

    def update_uptime(self) -> None:
        self.uptime_seconds.set(time.time() - self._start_time)


# Global metrics collector instance
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get or create the global collector, registered in the default registry."""
    global _metrics_collector

    if _metrics_collector is None:
        _metrics_collector = MetricsCollector(registry=REGISTRY)
        logger.debug("Metrics collector created")

    return _metrics_collector
