"""
Prometheus metrics for Cluster Remediator.
"""

import time
from typing import Callable

from prometheus_client import Counter, Histogram, Info, generate_latest
from starlette.requests import Request
from starlette.responses import Response
from starlette.middleware.base import BaseHTTPMiddleware

# =============================================================================
# METRICS DEFINITIONS
# =============================================================================

remediator_sessions_total = Counter(
    "remediator_sessions_total",
    "Remediation interactions by outcome",
    ["outcome"],
)

remediator_iterations_total = Counter(
    "remediator_iterations_total",
    "Total investigation iterations persisted",
)

remediator_data_requests_total = Counter(
    "remediator_data_requests_total",
    "Model-proposed data requests by result",
    ["result"],
)

remediator_model_calls_total = Counter(
    "remediator_model_calls_total",
    "Language model calls by kind and result",
    ["kind", "result"],
)

remediator_context_compactions_total = Counter(
    "remediator_context_compactions_total",
    "Context budget interventions by kind",
    ["kind"],
)

remediator_commands_executed_total = Counter(
    "remediator_commands_executed_total",
    "Remediation commands executed by result",
    ["result"],
)

remediator_investigation_duration_seconds = Histogram(
    "remediator_investigation_duration_seconds",
    "Duration of investigation loops in seconds",
)

remediator_info = Info(
    "remediator",
    "Cluster Remediator instance metadata",
)

# HTTP request metrics for middleware
http_requests_total = Counter(
    "remediator_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "remediator_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)


# =============================================================================
# MIDDLEWARE
# =============================================================================

class MetricsMiddleware(BaseHTTPMiddleware):
    """FastAPI middleware that tracks request count and duration."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        path = request.url.path

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        http_requests_total.labels(method=method, path=path, status=response.status_code).inc()
        http_request_duration_seconds.labels(method=method, path=path).observe(duration)

        return response


def metrics_middleware(app):
    """Add Prometheus metrics middleware to a FastAPI app."""
    app.add_middleware(MetricsMiddleware)


# =============================================================================
# RESPONSE HELPER
# =============================================================================

def get_metrics_response() -> Response:
    """Return Prometheus metrics in text exposition format."""
    return Response(
        content=generate_latest(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
