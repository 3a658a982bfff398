"""
Prometheus metrics for observability.

Exposes metrics for:
- HTTP request latency and counts
- Assignment transitions and attempt outcomes
- Timeout sweeps and capacity reconciliation
- External service health
"""

import time

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from courier_dispatch.core.config import settings

# ============================================================
# HTTP Metrics
# ============================================================

HTTP_REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "status_code"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

HTTP_REQUEST_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)


# ============================================================
# Assignment Metrics
# ============================================================

ASSIGNMENT_TRANSITIONS = Counter(
    "assignment_transitions_total",
    "Assignment state transitions",
    ["transition", "result"],
)

ASSIGNMENT_ATTEMPTS = Counter(
    "assignment_attempts_total",
    "Assignment attempt outcomes",
    ["outcome"],
)

CANDIDATES_PER_ATTEMPT = Histogram(
    "assignment_candidates_per_attempt",
    "Eligible candidates found per assignment attempt",
    buckets=[0, 1, 2, 5, 10, 20, 50, 100],
)

SWEEP_DURATION = Histogram(
    "timeout_sweep_duration_seconds",
    "Timeout sweep execution time",
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

SWEEP_EXPIRED = Counter(
    "timeout_sweep_expired_total",
    "Leases expired by the timeout sweeper",
)

CAPACITY_DRIFT = Counter(
    "partner_capacity_drift_total",
    "Partner capacity drift repaired by reconciliation",
    ["kind"],
)


# ============================================================
# External Service Metrics
# ============================================================

SERVICE_HEALTH = Gauge(
    "service_health",
    "External service health (1=healthy, 0=unhealthy)",
    ["service"],
)


# ============================================================
# Application Info
# ============================================================

APP_INFO = Info(
    "app",
    "Application information",
)
APP_INFO.info(
    {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
    }
)


# ============================================================
# Middleware
# ============================================================


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware to collect HTTP request metrics."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == settings.METRICS_PATH:
            return await call_next(request)

        method = request.method
        endpoint = self._normalize_path(request.url.path)

        start_time = time.perf_counter()
        status_code = "500"
        try:
            response = await call_next(request)
            status_code = str(response.status_code)
        finally:
            duration = time.perf_counter() - start_time

            HTTP_REQUEST_DURATION.labels(
                method=method,
                endpoint=endpoint,
                status_code=status_code,
            ).observe(duration)

            HTTP_REQUEST_TOTAL.labels(
                method=method,
                endpoint=endpoint,
                status_code=status_code,
            ).inc()

        return response

    def _normalize_path(self, path: str) -> str:
        """
        Normalize path by replacing dynamic segments with placeholders.

        /api/v1/assignments/ord-123/accept -> /api/v1/assignments/{id}/accept
        """
        parts = [p for p in path.split("/") if p]
        normalized = []
        for i, part in enumerate(parts):
            # Segments following a collection name are identifiers
            if i > 0 and parts[i - 1] in ("assignments", "partners"):
                normalized.append("{id}")
            else:
                normalized.append(part)

        return "/" + "/".join(normalized) if normalized else "/"


# ============================================================
# Helper Functions
# ============================================================


def record_transition(transition: str, succeeded: bool) -> None:
    """Count one state-machine transition attempt."""
    ASSIGNMENT_TRANSITIONS.labels(
        transition=transition,
        result="ok" if succeeded else "rejected",
    ).inc()


def record_attempt(outcome: str, candidates: int = 0) -> None:
    """Count one assignment attempt and its candidate pool size."""
    ASSIGNMENT_ATTEMPTS.labels(outcome=outcome).inc()
    CANDIDATES_PER_ATTEMPT.observe(candidates)


def update_service_health(service: str, healthy: bool):
    """Update external service health status."""
    SERVICE_HEALTH.labels(service=service).set(1 if healthy else 0)


# ============================================================
# Metrics Endpoint
# ============================================================


async def metrics_endpoint(request: Request) -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    return Response(
        content=generate_latest(REGISTRY),
        media_type=CONTENT_TYPE_LATEST,
    )
