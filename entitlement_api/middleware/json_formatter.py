"""Single-line JSON log formatter.

Activate with ``API_STRUCTURED_LOGGING=true``; the application then
replaces the root handlers with a ``StreamHandler`` using this formatter.

Output schema per line::

    {
        "timestamp": "2026-05-15T12:34:56.789012+00:00",
        "level": "INFO",
        "logger": "entitlement_engine.billing.reconciler",
        "message": "Applied checkout_completed to tenant=acme ...",
        "tenant_id": "acme",          // when passed via extra=
        "event_id": "evt_123",        // when passed via extra=
        "request": { ... },           // from RequestLoggingMiddleware
        "exc_info": "Traceback ..."   // only on exceptions
    }
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

# Structured fields copied from ``extra=`` when present on the record.
_CONTEXT_FIELDS: tuple[str, ...] = ("trace_id", "span_id", "tenant_id", "event_id", "request")


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in _CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value:
                payload[field] = value

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)
