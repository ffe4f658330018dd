"""Access logging for the entitlement API."""

from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("entitlement_api.access")

# Header names whose values must never reach the logs.
_SENSITIVE_HEADERS: frozenset[str] = frozenset({"authorization", "cookie", "x-service-token", "stripe-signature"})
_MASK = "***"

_CORRELATION_HEADER = "X-Correlation-ID"

_TENANT_PATH_RE = re.compile(r"^/api/v1/tenants/([a-zA-Z0-9_-]{1,128})(?:/|$)")


def _safe_headers(request: Request) -> dict[str, str]:
    return {key: (_MASK if key.lower() in _SENSITIVE_HEADERS else value) for key, value in request.headers.items()}


def _tenant_from_path(path: str) -> str | None:
    match = _TENANT_PATH_RE.match(path)
    return match.group(1) if match else None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with method, path, status code, and duration.

    Each request carries a ``correlation_id`` taken from the incoming
    ``X-Correlation-ID`` header or generated as a UUID-4, and echoed back
    on the response.  Tenant-scoped routes also log the tenant ID parsed
    from the path.  The payload is passed as ``extra={"request": ...}`` so
    the JSON formatter can emit it as a nested object.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(_CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id

        start = time.monotonic()
        response: Response | None = None
        try:
            response = await call_next(request)
            response.headers[_CORRELATION_HEADER] = correlation_id
            return response
        finally:
            duration_ms = round((time.monotonic() - start) * 1000, 2)
            status_code = response.status_code if response is not None else 500

            log_payload: dict[str, Any] = {
                "method": request.method,
                "path": request.url.path,
                "query": str(request.url.query) if request.url.query else None,
                "status_code": status_code,
                "duration_ms": duration_ms,
                "client": request.client.host if request.client else None,
                "correlation_id": correlation_id,
                "tenant_id": _tenant_from_path(request.url.path),
                "trace_id": getattr(request.state, "trace_id", ""),
                "span_id": getattr(request.state, "span_id", ""),
                "headers": _safe_headers(request),
            }
            if status_code >= 500:
                logger.error("request completed", extra={"request": log_payload})
            elif status_code >= 400:
                logger.warning("request completed", extra={"request": log_payload})
            else:
                logger.info("request completed", extra={"request": log_payload})
