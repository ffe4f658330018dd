"""Shared fixtures for entitlement tests.

Provides SQLite-backed engines and sessions (the same ORM code paths as
PostgreSQL) and a factory for Stripe-shaped webhook payloads.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from entitlement_engine.state.database import get_session_factory
from entitlement_engine.state.sqlite_adapter import create_local_tables, get_local_engine

# Fixed reference instant; events are built relative to it.
BASE_TIME = datetime(2026, 3, 1, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory SQLite engine with all tables created."""
    eng = get_local_engine(":memory:")
    await create_local_tables(eng)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture()
async def file_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine; required when sessions run concurrently."""
    eng = get_local_engine(tmp_path / "entitlements.db")
    await create_local_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture()
def session_factory(file_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return get_session_factory(file_engine)


@pytest_asyncio.fixture()
async def session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """A single session over the in-memory engine; tests commit as needed."""
    async with get_session_factory(engine)() as sess:
        yield sess


# ---------------------------------------------------------------------------
# Stripe-shaped payloads
# ---------------------------------------------------------------------------


def _ts(value: datetime) -> int:
    return int(value.timestamp())


class StripeEventFactory:
    """Build webhook payloads shaped like Stripe's ``Event`` objects.

    Every builder takes the event ``created`` time as an offset from
    :data:`BASE_TIME` so tests can reorder deliveries explicitly.
    """

    base_time = BASE_TIME

    def __init__(self) -> None:
        self._counter = 0

    def _next_id(self) -> str:
        self._counter += 1
        return f"evt_test_{self._counter:04d}"

    def at(self, minutes: int = 0) -> datetime:
        return BASE_TIME + timedelta(minutes=minutes)

    def envelope(
        self,
        event_type: str,
        obj: dict[str, Any],
        *,
        event_id: str | None = None,
        minutes: int = 0,
    ) -> dict[str, Any]:
        return {
            "id": event_id or self._next_id(),
            "object": "event",
            "type": event_type,
            "created": _ts(self.at(minutes)),
            "data": {"object": obj},
        }

    def subscription_object(
        self,
        tenant_id: str,
        *,
        status: str = "active",
        plan: str | None = "operator",
        price_id: str | None = None,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
        subscription_id: str = "sub_test_1",
        customer_id: str = "cus_test_1",
    ) -> dict[str, Any]:
        start = period_start or BASE_TIME
        end = period_end or BASE_TIME + timedelta(days=30)
        metadata: dict[str, str] = {"tenant_id": tenant_id}
        if plan is not None:
            metadata["plan"] = plan
        return {
            "id": subscription_id,
            "object": "subscription",
            "customer": customer_id,
            "status": status,
            "metadata": metadata,
            "current_period_start": _ts(start),
            "current_period_end": _ts(end),
            "items": {"data": [{"price": {"id": price_id or "price_unmapped"}}]},
        }

    def subscription(
        self,
        event_type: str,
        tenant_id: str,
        *,
        event_id: str | None = None,
        minutes: int = 0,
        **fields: Any,
    ) -> dict[str, Any]:
        obj = self.subscription_object(tenant_id, **fields)
        return self.envelope(f"customer.subscription.{event_type}", obj, event_id=event_id, minutes=minutes)

    def checkout(
        self,
        tenant_id: str,
        *,
        event_id: str | None = None,
        minutes: int = 0,
        plan: str = "operator",
        status: str = "active",
        period_start: datetime | None = None,
        period_end: datetime | None = None,
    ) -> dict[str, Any]:
        subscription = self.subscription_object(
            tenant_id,
            status=status,
            plan=plan,
            period_start=period_start,
            period_end=period_end,
        )
        obj = {
            "id": "cs_test_1",
            "object": "checkout.session",
            "customer": "cus_test_1",
            "metadata": {"tenant_id": tenant_id, "plan": plan},
            "subscription": subscription,
        }
        return self.envelope("checkout.session.completed", obj, event_id=event_id, minutes=minutes)

    def invoice(
        self,
        event_type: str,
        tenant_id: str,
        *,
        event_id: str | None = None,
        minutes: int = 0,
        plan: str | None = None,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
    ) -> dict[str, Any]:
        metadata: dict[str, str] = {"tenant_id": tenant_id}
        if plan is not None:
            metadata["plan"] = plan
        line: dict[str, Any] = {}
        if period_start is not None and period_end is not None:
            line["period"] = {"start": _ts(period_start), "end": _ts(period_end)}
        obj = {
            "id": "in_test_1",
            "object": "invoice",
            "customer": "cus_test_1",
            "subscription": "sub_test_1",
            "subscription_details": {"metadata": metadata},
            "lines": {"data": [line] if line else []},
        }
        return self.envelope(f"invoice.{event_type}", obj, event_id=event_id, minutes=minutes)


@pytest.fixture()
def stripe_events() -> StripeEventFactory:
    return StripeEventFactory()
