"""Entitlement value objects shared by the reconciler, gate, and metering.

These are read-only views over the ``entitlements`` table.  The ORM row is
never handed to callers outside a transaction; instead it is converted to an
:class:`EntitlementSnapshot` so that access decisions can be computed (and
tested) as pure functions.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class SubscriptionStatus(str, Enum):
    """Lifecycle status of a tenant's subscription."""

    NONE = "none"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class PlanTier(str, Enum):
    """Purchasable plan tiers.  ``NONE`` is the pre-checkout placeholder."""

    NONE = "none"
    PROTOTYPE = "prototype"
    OPERATOR = "operator"
    FOUNDRY = "foundry"


class ApplyOutcome(str, Enum):
    """Result of handing one billing event to the sync engine.

    The value is also what the ledger stores in ``processed_events.outcome``
    (except ``DUPLICATE``, which by definition has a prior ledger row, and
    ``IGNORED``, which is never recorded).
    """

    APPLIED = "applied"
    STALE = "stale"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    DROPPED = "dropped"
    IGNORED = "ignored"


class EntitlementSnapshot(BaseModel):
    """Immutable copy of a tenant's entitlement record."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    tenant_id: str
    status: SubscriptionStatus = SubscriptionStatus.NONE
    plan: PlanTier = PlanTier.NONE
    billing_customer_ref: str | None = None
    billing_subscription_ref: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    usage_count: int = Field(default=0, ge=0)
    usage_limit: int = Field(default=0, ge=0)
    last_applied_event_id: str | None = None
    last_applied_event_at: datetime | None = None

    @property
    def usage_remaining(self) -> int:
        return max(self.usage_limit - self.usage_count, 0)


class AccessDecision(BaseModel):
    """Answer from the authorization gate for a single tenant at one instant."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    allowed: bool
    reason: str
    status: SubscriptionStatus | None = None
    plan: PlanTier | None = None
    access_until: datetime | None = Field(
        default=None,
        description="End of the paid period when access is granted through cancellation.",
    )

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class ConsumeResult(BaseModel):
    """Successful usage consumption."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    new_count: int
    usage_limit: int
    consumed: int

    @property
    def remaining(self) -> int:
        return max(self.usage_limit - self.new_count, 0)


class ReleaseResult(BaseModel):
    """Usage returned to a tenant after a metered action was abandoned."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    new_count: int
    usage_limit: int
    released: int

    @property
    def remaining(self) -> int:
        return max(self.usage_limit - self.new_count, 0)


class SyncResult(BaseModel):
    """What happened to a single webhook delivery."""

    model_config = ConfigDict(frozen=True)

    outcome: ApplyOutcome
    event_id: str | None = None
    event_type: str | None = None
    tenant_id: str | None = None
    detail: str | None = None
