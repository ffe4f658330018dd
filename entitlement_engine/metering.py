"""Usage metering with an atomic per-period quota.

:meth:`UsageMeter.try_consume` and :meth:`UsageMeter.release` are the only
writers of ``usage_count`` outside period resets.  The check and the
increment are one conditional ``UPDATE``, so concurrent consumers can never
jointly exceed ``usage_limit``; a refused request performs no mutation.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_engine.errors import QuotaExceededError, TenantNotFoundError
from entitlement_engine.models.entitlement import ConsumeResult, ReleaseResult
from entitlement_engine.state.repository import EntitlementRepository, UsageEventRepository
from entitlement_engine.state.tables import UsageEventTable

logger = logging.getLogger(__name__)

DEFAULT_ACTION = "generation"


class UsageMeter:
    """Consume and inspect per-tenant usage within the caller's transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._entitlements = EntitlementRepository(session)

    async def try_consume(self, tenant_id: str, n: int = 1, action: str = DEFAULT_ACTION) -> ConsumeResult:
        """Consume *n* units for *tenant_id*.

        Raises
        ------
        ValueError
            If *n* is less than 1.
        TenantNotFoundError
            If the tenant has no entitlement record.
        QuotaExceededError
            If the increment would exceed the tenant's limit.
        """
        if n < 1:
            raise ValueError(f"Usage quantity must be >= 1, got {n}")

        new_count = await self._entitlements.increment_usage(tenant_id, n)
        if new_count is None:
            row = await self._entitlements.get(tenant_id)
            if row is None:
                raise TenantNotFoundError(tenant_id)
            logger.info(
                "Quota exceeded for tenant=%s: %d/%d used, %d requested",
                tenant_id,
                row.usage_count,
                row.usage_limit,
                n,
                extra={"tenant_id": tenant_id},
            )
            raise QuotaExceededError(
                tenant_id,
                requested=n,
                usage_count=row.usage_count,
                usage_limit=row.usage_limit,
            )

        await UsageEventRepository(self._session, tenant_id).record(action, n, new_count)
        row = await self._entitlements.get(tenant_id)
        usage_limit = row.usage_limit if row is not None else new_count
        return ConsumeResult(tenant_id=tenant_id, new_count=new_count, usage_limit=usage_limit, consumed=n)

    async def release(self, tenant_id: str, n: int = 1, action: str = DEFAULT_ACTION) -> ReleaseResult:
        """Give back *n* units after the consuming action failed downstream.

        The counter never drops below zero, so a release that straddles a
        period reset only clears what the new period has used.

        Raises
        ------
        ValueError
            If *n* is less than 1.
        TenantNotFoundError
            If the tenant has no entitlement record.
        """
        if n < 1:
            raise ValueError(f"Release quantity must be >= 1, got {n}")

        new_count = await self._entitlements.decrement_usage(tenant_id, n)
        if new_count is None:
            raise TenantNotFoundError(tenant_id)

        await UsageEventRepository(self._session, tenant_id).record(action, -n, new_count)
        row = await self._entitlements.get(tenant_id)
        usage_limit = row.usage_limit if row is not None else 0
        logger.info(
            "Released %d unit(s) for tenant=%s: %d/%d used",
            n,
            tenant_id,
            new_count,
            usage_limit,
            extra={"tenant_id": tenant_id},
        )
        return ReleaseResult(tenant_id=tenant_id, new_count=new_count, usage_limit=usage_limit, released=n)

    async def usage_snapshot(self, tenant_id: str) -> dict[str, int]:
        """Return ``used``, ``limit`` and ``remaining`` for the current period."""
        row = await self._entitlements.get(tenant_id)
        if row is None:
            raise TenantNotFoundError(tenant_id)
        return {
            "used": row.usage_count,
            "limit": row.usage_limit,
            "remaining": max(row.usage_limit - row.usage_count, 0),
        }

    async def recent_events(self, tenant_id: str, limit: int = 50) -> list[UsageEventTable]:
        return await UsageEventRepository(self._session, tenant_id).list_recent(limit)
