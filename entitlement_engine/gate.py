"""Authorization gate: may this tenant perform a paid action right now?

:func:`evaluate` is a pure function of an :class:`EntitlementSnapshot` and a
clock reading, so every access rule can be tested without a database.
:class:`AuthorizationGate` adds the single primary-key read in front of it.
The gate never takes a lock and never calls the billing provider.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_engine.models.entitlement import AccessDecision, EntitlementSnapshot, SubscriptionStatus
from entitlement_engine.state.repository import EntitlementRepository

logger = logging.getLogger(__name__)

REASON_ACTIVE = "active"
REASON_TRIALING = "trialing"
REASON_CANCELED_GRACE = "canceled_grace_period"
REASON_CANCELED_ENDED = "canceled_period_ended"
REASON_PAST_DUE = "past_due"
REASON_NO_SUBSCRIPTION = "no_subscription"
REASON_TENANT_NOT_FOUND = "tenant_not_found"


def evaluate(snapshot: EntitlementSnapshot, now: datetime) -> AccessDecision:
    """Decide access for *snapshot* at instant *now*.

    ``active`` and ``trialing`` allow.  ``canceled`` allows up to and
    including ``current_period_end``.  ``past_due`` and ``none`` deny.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    status = snapshot.status
    period_end = snapshot.current_period_end

    if status == SubscriptionStatus.ACTIVE:
        allowed, reason = True, REASON_ACTIVE
    elif status == SubscriptionStatus.TRIALING:
        allowed, reason = True, REASON_TRIALING
    elif status == SubscriptionStatus.CANCELED:
        if period_end is not None and now <= period_end:
            allowed, reason = True, REASON_CANCELED_GRACE
        else:
            allowed, reason = False, REASON_CANCELED_ENDED
    elif status == SubscriptionStatus.PAST_DUE:
        allowed, reason = False, REASON_PAST_DUE
    else:
        allowed, reason = False, REASON_NO_SUBSCRIPTION

    return AccessDecision(
        tenant_id=snapshot.tenant_id,
        allowed=allowed,
        reason=reason,
        status=status,
        plan=snapshot.plan,
        access_until=period_end if reason == REASON_CANCELED_GRACE else None,
    )


class AuthorizationGate:
    """Read-path wrapper around :func:`evaluate`."""

    def __init__(self, session: AsyncSession) -> None:
        self._repo = EntitlementRepository(session)

    async def snapshot(self, tenant_id: str) -> EntitlementSnapshot | None:
        row = await self._repo.get(tenant_id)
        return EntitlementSnapshot.model_validate(row) if row is not None else None

    async def check(self, tenant_id: str, now: datetime | None = None) -> AccessDecision:
        """Return the access decision for *tenant_id*; unknown tenants are denied."""
        snapshot = await self.snapshot(tenant_id)
        if snapshot is None:
            logger.info("Access check for unknown tenant=%s", tenant_id)
            return AccessDecision(tenant_id=tenant_id, allowed=False, reason=REASON_TENANT_NOT_FOUND)
        decision = evaluate(snapshot, now or datetime.now(UTC))
        logger.debug(
            "Access for tenant=%s: allowed=%s reason=%s",
            tenant_id,
            decision.allowed,
            decision.reason,
        )
        return decision
