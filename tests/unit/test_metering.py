"""Tests for usage metering and the atomic quota."""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import update

from entitlement_engine.errors import QuotaExceededError, TenantNotFoundError
from entitlement_engine.metering import DEFAULT_ACTION, UsageMeter
from entitlement_engine.models.entitlement import ConsumeResult, ReleaseResult
from entitlement_engine.state.repository import EntitlementRepository
from entitlement_engine.state.tables import EntitlementTable
from entitlement_engine.sync import EntitlementSync


async def _provision(session, tenant_id: str = "acme", *, limit: int, used: int = 0) -> None:
    await EntitlementRepository(session).create(tenant_id)
    await session.execute(
        update(EntitlementTable)
        .where(EntitlementTable.tenant_id == tenant_id)
        .values(status="active", plan="operator", usage_limit=limit, usage_count=used)
    )
    await session.commit()


class TestTryConsume:
    @pytest.mark.asyncio
    async def test_consume_increments(self, session) -> None:
        await _provision(session, limit=10)
        meter = UsageMeter(session)

        result = await meter.try_consume("acme")
        assert result == ConsumeResult(tenant_id="acme", new_count=1, usage_limit=10, consumed=1)
        result = await meter.try_consume("acme", 4)
        assert result.new_count == 5
        assert result.remaining == 5

    @pytest.mark.asyncio
    async def test_consume_up_to_exact_limit(self, session) -> None:
        await _provision(session, limit=3, used=2)
        result = await UsageMeter(session).try_consume("acme")
        assert result.new_count == 3
        assert result.remaining == 0

    @pytest.mark.asyncio
    async def test_quota_exceeded_does_not_mutate(self, session) -> None:
        await _provision(session, limit=3, used=2)
        meter = UsageMeter(session)

        with pytest.raises(QuotaExceededError) as exc_info:
            await meter.try_consume("acme", 2)
        assert exc_info.value.usage_count == 2
        assert exc_info.value.usage_limit == 3
        assert exc_info.value.requested == 2
        assert "Upgrade your plan" in str(exc_info.value)

        assert (await meter.usage_snapshot("acme"))["used"] == 2
        assert await meter.recent_events("acme") == []

    @pytest.mark.asyncio
    async def test_zero_limit_refuses_everything(self, session) -> None:
        await _provision(session, limit=0)
        with pytest.raises(QuotaExceededError):
            await UsageMeter(session).try_consume("acme")

    @pytest.mark.asyncio
    async def test_over_limit_after_downgrade_refuses(self, session) -> None:
        await _provision(session, limit=40, used=100)
        with pytest.raises(QuotaExceededError) as exc_info:
            await UsageMeter(session).try_consume("acme")
        assert exc_info.value.usage_count == 100

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, session) -> None:
        with pytest.raises(TenantNotFoundError):
            await UsageMeter(session).try_consume("ghost")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("quantity", [0, -1])
    async def test_non_positive_quantity_rejected(self, session, quantity) -> None:
        await _provision(session, limit=10)
        with pytest.raises(ValueError, match=">= 1"):
            await UsageMeter(session).try_consume("acme", quantity)

    @pytest.mark.asyncio
    async def test_usage_history_recorded(self, session) -> None:
        await _provision(session, limit=10)
        meter = UsageMeter(session)
        await meter.try_consume("acme", 2, action="export")
        await meter.try_consume("acme")

        events = await meter.recent_events("acme")
        assert len(events) == 2
        assert {(e.action, e.quantity) for e in events} == {("export", 2), (DEFAULT_ACTION, 1)}
        assert max(e.usage_count_after for e in events) == 3


class TestRelease:
    @pytest.mark.asyncio
    async def test_release_returns_units(self, session) -> None:
        await _provision(session, limit=10, used=6)
        result = await UsageMeter(session).release("acme", 2)
        assert result == ReleaseResult(tenant_id="acme", new_count=4, usage_limit=10, released=2)
        assert result.remaining == 6

    @pytest.mark.asyncio
    async def test_release_floors_at_zero(self, session) -> None:
        await _provision(session, limit=10, used=1)
        result = await UsageMeter(session).release("acme", 5)
        assert result.new_count == 0
        assert (await UsageMeter(session).usage_snapshot("acme"))["used"] == 0

    @pytest.mark.asyncio
    async def test_released_units_can_be_consumed_again(self, session) -> None:
        await _provision(session, limit=3, used=3)
        meter = UsageMeter(session)
        with pytest.raises(QuotaExceededError):
            await meter.try_consume("acme")
        await meter.release("acme")
        assert (await meter.try_consume("acme")).new_count == 3

    @pytest.mark.asyncio
    async def test_release_recorded_as_negative_quantity(self, session) -> None:
        await _provision(session, limit=10)
        meter = UsageMeter(session)
        await meter.try_consume("acme", 2, action="export")
        await meter.release("acme", 2, action="export")

        quantities = sorted(e.quantity for e in await meter.recent_events("acme"))
        assert quantities == [-2, 2]

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, session) -> None:
        with pytest.raises(TenantNotFoundError):
            await UsageMeter(session).release("ghost")

    @pytest.mark.asyncio
    async def test_non_positive_quantity_rejected(self, session) -> None:
        await _provision(session, limit=10, used=5)
        with pytest.raises(ValueError, match=">= 1"):
            await UsageMeter(session).release("acme", 0)


class TestUsageSnapshot:
    @pytest.mark.asyncio
    async def test_snapshot(self, session) -> None:
        await _provision(session, limit=150, used=40)
        assert await UsageMeter(session).usage_snapshot("acme") == {"used": 40, "limit": 150, "remaining": 110}

    @pytest.mark.asyncio
    async def test_remaining_never_negative(self, session) -> None:
        await _provision(session, limit=40, used=100)
        assert (await UsageMeter(session).usage_snapshot("acme"))["remaining"] == 0

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, session) -> None:
        with pytest.raises(TenantNotFoundError):
            await UsageMeter(session).usage_snapshot("ghost")


class TestConcurrentConsumption:
    """Concurrent consumers never jointly exceed the limit."""

    @pytest.mark.asyncio
    async def test_exactly_remaining_requests_succeed(self, session_factory) -> None:
        async with session_factory() as session:
            await _provision(session, limit=5, used=0)

        sync = EntitlementSync(session_factory)
        results = await asyncio.gather(
            *(sync.consume("acme", 1) for _ in range(12)),
            return_exceptions=True,
        )

        successes = [r for r in results if isinstance(r, ConsumeResult)]
        refusals = [r for r in results if isinstance(r, QuotaExceededError)]
        assert len(successes) == 5
        assert len(refusals) == 7
        assert sorted(r.new_count for r in successes) == [1, 2, 3, 4, 5]

        async with session_factory() as session:
            assert (await UsageMeter(session).usage_snapshot("acme"))["used"] == 5
            assert len(await UsageMeter(session).recent_events("acme")) == 5

    @pytest.mark.asyncio
    async def test_multi_unit_requests_are_all_or_nothing(self, session_factory) -> None:
        async with session_factory() as session:
            await _provision(session, limit=10, used=0)

        sync = EntitlementSync(session_factory)
        results = await asyncio.gather(
            *(sync.consume("acme", 3) for _ in range(6)),
            return_exceptions=True,
        )

        successes = [r for r in results if isinstance(r, ConsumeResult)]
        assert len(successes) == 3
        async with session_factory() as session:
            assert (await UsageMeter(session).usage_snapshot("acme"))["used"] == 9

    @pytest.mark.asyncio
    async def test_concurrent_releases_never_go_negative(self, session_factory) -> None:
        async with session_factory() as session:
            await _provision(session, limit=10, used=3)

        sync = EntitlementSync(session_factory)
        results = await asyncio.gather(*(sync.release("acme", 1) for _ in range(5)))

        assert sorted(r.new_count for r in results) == [0, 0, 0, 1, 2]
        async with session_factory() as session:
            assert (await UsageMeter(session).usage_snapshot("acme"))["used"] == 0
