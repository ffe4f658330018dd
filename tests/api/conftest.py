"""Shared fixtures for entitlement API tests.

The app runs against a file-backed SQLite store through dependency
overrides; requests go through httpx's ``ASGITransport`` so no socket is
opened and the lifespan (engine init, retention task) never runs.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from entitlement_api.config import APISettings
from entitlement_api.dependencies import get_session_factory, get_settings
from entitlement_api.main import create_app
from entitlement_engine.state.repository import EntitlementRepository
from entitlement_engine.state.tables import EntitlementTable

WEBHOOK_SECRET = "whsec_test_entitlements"
SERVICE_TOKEN = "svc-test-token"
SERVICE_HEADERS: dict[str, str] = {"X-Service-Token": SERVICE_TOKEN}


def sign_payload(body: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a ``Stripe-Signature`` header value for *body*."""
    ts = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(secret.encode("utf-8"), f"{ts}.".encode() + body, hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


# ---------------------------------------------------------------------------
# Settings and app
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings() -> APISettings:
    """Return a settings object suitable for testing."""
    return APISettings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        platform_env="dev",
        stripe_webhook_secret=WEBHOOK_SECRET,
        service_token=SERVICE_TOKEN,
        stripe_price_id_foundry="price_foundry",
        ledger_purge_enabled=False,
    )


@pytest.fixture()
def app(test_settings: APISettings, session_factory: async_sessionmaker[AsyncSession]) -> FastAPI:
    """Create the app with settings and the session factory overridden."""
    application = create_app(test_settings)
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_session_factory] = lambda: session_factory
    return application


@pytest_asyncio.fixture()
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Async client without credentials; tests add headers explicitly."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture()
async def service_client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Async client sending a valid ``X-Service-Token``."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", headers=SERVICE_HEADERS) as ac:
        yield ac


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.fixture()
def post_webhook(client: AsyncClient) -> Callable[..., Awaitable[httpx.Response]]:
    """Return a coroutine that signs and posts a payload to the webhook route."""

    async def _post(
        payload: Any,
        *,
        secret: str = WEBHOOK_SECRET,
        timestamp: int | None = None,
        raw: bytes | None = None,
    ) -> httpx.Response:
        body = raw if raw is not None else json.dumps(payload).encode("utf-8")
        return await client.post(
            "/api/v1/billing/webhooks",
            content=body,
            headers={
                "Stripe-Signature": sign_payload(body, secret, timestamp),
                "Content-Type": "application/json",
            },
        )

    return _post


@pytest.fixture()
def provision(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Awaitable[None]]:
    """Return a coroutine that creates a tenant directly in the store."""

    async def _provision(tenant_id: str, **values: Any) -> None:
        async with session_factory() as session:
            async with session.begin():
                await EntitlementRepository(session).create(tenant_id)
                if values:
                    await session.execute(
                        update(EntitlementTable).where(EntitlementTable.tenant_id == tenant_id).values(**values)
                    )

    return _provision
