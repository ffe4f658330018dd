"""Request and response bodies for the entitlement API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from entitlement_engine.models.entitlement import EntitlementSnapshot, PlanTier, SubscriptionStatus

_TENANT_ID_PATTERN = r"^[a-zA-Z0-9_-]{1,128}$"


class TenantCreateRequest(BaseModel):
    """Body for ``POST /tenants``."""

    tenant_id: str = Field(..., pattern=_TENANT_ID_PATTERN, description="Product-side tenant identifier.")


class EntitlementResponse(BaseModel):
    """A tenant's entitlement record."""

    tenant_id: str
    status: SubscriptionStatus
    plan: PlanTier
    billing_customer_ref: str | None = None
    billing_subscription_ref: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    usage_count: int
    usage_limit: int
    usage_remaining: int
    last_applied_event_id: str | None = None
    last_applied_event_at: datetime | None = None

    @classmethod
    def from_snapshot(cls, snapshot: EntitlementSnapshot) -> EntitlementResponse:
        return cls(**snapshot.model_dump(), usage_remaining=snapshot.usage_remaining)


class ConsumeRequest(BaseModel):
    """Body for ``POST /tenants/{tenant_id}/usage/consume``."""

    quantity: int = Field(default=1, ge=1, le=1000)
    action: str = Field(default="generation", min_length=1, max_length=64, pattern=r"^[a-z0-9_.-]+$")


class ConsumeResponse(BaseModel):
    tenant_id: str
    consumed: int
    usage_count: int
    usage_limit: int
    remaining: int


class ReleaseRequest(ConsumeRequest):
    """Body for ``POST /tenants/{tenant_id}/usage/release``."""


class ReleaseResponse(BaseModel):
    tenant_id: str
    released: int
    usage_count: int
    usage_limit: int
    remaining: int


class UsageEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    event_id: str
    action: str
    quantity: int
    usage_count_after: int
    created_at: datetime


class UsageResponse(BaseModel):
    """Current-period usage with the most recent consumption rows."""

    tenant_id: str
    used: int
    limit: int
    remaining: int
    recent: list[UsageEventResponse] = Field(default_factory=list)


class WebhookResponse(BaseModel):
    """Acknowledgement returned to the billing provider."""

    status: str
    event_id: str | None = None
    event_type: str | None = None
