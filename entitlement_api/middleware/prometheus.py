"""Prometheus instrumentation for the entitlement API.

HTTP RED metrics (rate, errors, duration) are recorded by
:class:`PrometheusMiddleware`.  Domain counters cover webhook outcomes,
gate decisions, and usage consumption; the routes call the ``record_*``
helpers below.

Tenant IDs are collapsed out of metric paths to keep label cardinality
bounded.
"""

from __future__ import annotations

import logging
import re
import time

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

HTTP_REQUESTS_TOTAL = Counter(
    "entitlements_http_requests_total",
    "Total HTTP requests by method, path, and status code",
    ["method", "path", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "entitlements_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

WEBHOOK_EVENTS_TOTAL = Counter(
    "entitlements_webhook_events_total",
    "Billing webhook deliveries by provider event type and outcome",
    ["event_type", "outcome"],
)

WEBHOOK_PROCESSING_DURATION = Histogram(
    "entitlements_webhook_processing_seconds",
    "Time spent normalizing and applying one billing event",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

GATE_DECISIONS_TOTAL = Counter(
    "entitlements_gate_decisions_total",
    "Authorization gate decisions by reason",
    ["reason"],
)

USAGE_CONSUMED_TOTAL = Counter(
    "entitlements_usage_consumed_total",
    "Usage units successfully consumed",
    ["action"],
)

QUOTA_REJECTIONS_TOTAL = Counter(
    "entitlements_quota_rejections_total",
    "Consume requests refused because the period quota was exhausted",
)

_TENANT_SEGMENT_RE = re.compile(r"^/api/v1/tenants/[^/]+")

# Paths excluded from HTTP metrics.
_SKIP_PATHS: frozenset[str] = frozenset({"/metrics", "/docs", "/redoc", "/openapi.json", "/favicon.ico"})


def normalise_path(path: str) -> str:
    """Replace the tenant ID segment with ``{tenant_id}``."""
    return _TENANT_SEGMENT_RE.sub("/api/v1/tenants/{tenant_id}", path)


def record_webhook(event_type: str | None, outcome: str, duration_seconds: float | None = None) -> None:
    WEBHOOK_EVENTS_TOTAL.labels(event_type=event_type or "unknown", outcome=outcome).inc()
    if duration_seconds is not None:
        WEBHOOK_PROCESSING_DURATION.observe(duration_seconds)


def record_gate_decision(reason: str) -> None:
    GATE_DECISIONS_TOTAL.labels(reason=reason).inc()


def record_usage(action: str, quantity: int) -> None:
    USAGE_CONSUMED_TOTAL.labels(action=action).inc(quantity)


def record_quota_rejection() -> None:
    QUOTA_REJECTIONS_TOTAL.inc()


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Record HTTP request rate, error rate, and latency."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in _SKIP_PATHS:
            return await call_next(request)

        method = request.method
        normalised = normalise_path(path)

        start = time.monotonic()
        response = await call_next(request)
        duration = time.monotonic() - start

        HTTP_REQUESTS_TOTAL.labels(method=method, path=normalised, status_code=str(response.status_code)).inc()
        HTTP_REQUEST_DURATION.labels(method=method, path=normalised).observe(duration)
        return response
