"""Starlette middleware and logging helpers for the entitlement API."""

from entitlement_api.middleware.json_formatter import JSONFormatter
from entitlement_api.middleware.logging import RequestLoggingMiddleware
from entitlement_api.middleware.prometheus import PrometheusMiddleware
from entitlement_api.middleware.trace_context import TraceContextMiddleware, TraceLoggingFilter

__all__ = [
    "JSONFormatter",
    "PrometheusMiddleware",
    "RequestLoggingMiddleware",
    "TraceContextMiddleware",
    "TraceLoggingFilter",
]
