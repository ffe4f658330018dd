"""Tests for the probe and scrape endpoints, and the response headers middleware adds."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from entitlement_api import __version__


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client) -> None:
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "healthy", "version": __version__}

    @pytest.mark.asyncio
    async def test_ready_when_database_answers(self, client) -> None:
        resp = await client.get("/ready")
        assert resp.status_code == 200
        assert resp.json()["checks"] == {"db": "ok"}

    @pytest.mark.asyncio
    async def test_not_ready_when_database_fails(self, client) -> None:
        with patch(
            "sqlalchemy.ext.asyncio.AsyncSession.execute",
            new=AsyncMock(side_effect=OperationalError("SELECT 1", {}, Exception("connection refused"))),
        ):
            resp = await client.get("/ready")
        assert resp.status_code == 503
        assert resp.json()["status"] == "not_ready"
        assert resp.json()["checks"]["db"] == "unavailable"


class TestMetricsEndpoint:
    @pytest.mark.asyncio
    async def test_exposes_http_and_domain_metrics(self, client) -> None:
        await client.get("/health")
        resp = await client.get("/metrics")
        assert resp.status_code == 200
        assert "text/plain" in resp.headers["content-type"]
        assert "entitlements_http_requests_total" in resp.text
        assert "entitlements_webhook_events_total" in resp.text


class TestResponseHeaders:
    @pytest.mark.asyncio
    async def test_correlation_id_is_echoed(self, client) -> None:
        resp = await client.get("/health", headers={"X-Correlation-ID": "corr-123"})
        assert resp.headers["X-Correlation-ID"] == "corr-123"

    @pytest.mark.asyncio
    async def test_correlation_id_generated(self, client) -> None:
        resp = await client.get("/health")
        assert len(resp.headers["X-Correlation-ID"]) == 36

    @pytest.mark.asyncio
    async def test_trace_id_continues_incoming_trace(self, client) -> None:
        traceparent = "00-4bf92f3577b16e8153e785e29fc5f28c-d75597dee50b0cac-01"
        resp = await client.get("/health", headers={"traceparent": traceparent})
        assert resp.headers["X-Trace-ID"] == "4bf92f3577b16e8153e785e29fc5f28c"

    @pytest.mark.asyncio
    async def test_trace_id_started_without_traceparent(self, client) -> None:
        resp = await client.get("/health")
        assert len(resp.headers["X-Trace-ID"]) == 32
