"""Canonical billing events.

The normalizer turns provider-shaped payloads into exactly one of the
variants below.  Everything downstream of the normalizer (ledger, reconciler)
only ever sees :data:`CanonicalEvent`, so knowledge of the provider's payload
shape stays in one module.

Each variant is tagged by its ``kind`` literal, which lets pydantic build a
discriminated union and lets the reconciler dispatch with a single lookup.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from entitlement_engine.models.entitlement import PlanTier, SubscriptionStatus


class _CanonicalEventBase(BaseModel):
    """Fields shared by every canonical event."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(..., min_length=1, description="Provider-assigned event ID (dedup key).")
    event_type: str = Field(..., description="Provider event type the event was mapped from.")
    occurred_at: datetime = Field(..., description="Provider-assigned event timestamp (UTC).")
    tenant_id: str = Field(..., min_length=1)
    subscription_ref: str | None = None
    customer_ref: str | None = None
    new_status: SubscriptionStatus | None = None
    new_plan: PlanTier | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None

    @model_validator(mode="after")
    def _validate_period(self) -> _CanonicalEventBase:
        if self.period_start and self.period_end and self.period_start > self.period_end:
            raise ValueError(f"period_start ({self.period_start}) must be <= period_end ({self.period_end})")
        return self


class SubscriptionCreated(_CanonicalEventBase):
    kind: Literal["subscription_created"] = "subscription_created"


class SubscriptionUpdated(_CanonicalEventBase):
    kind: Literal["subscription_updated"] = "subscription_updated"


class SubscriptionCanceled(_CanonicalEventBase):
    kind: Literal["subscription_canceled"] = "subscription_canceled"
    new_status: SubscriptionStatus | None = SubscriptionStatus.CANCELED


class CheckoutCompleted(_CanonicalEventBase):
    """A checkout finished; (re)starts the tenant's subscription."""

    kind: Literal["checkout_completed"] = "checkout_completed"
    new_status: SubscriptionStatus | None = SubscriptionStatus.ACTIVE

    @model_validator(mode="after")
    def _validate_start_status(self) -> CheckoutCompleted:
        if self.new_status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
            raise ValueError(f"checkout must start the tenant as active or trialing, got {self.new_status}")
        return self


class InvoicePaymentFailed(_CanonicalEventBase):
    kind: Literal["invoice_payment_failed"] = "invoice_payment_failed"
    new_status: SubscriptionStatus | None = SubscriptionStatus.PAST_DUE


class PeriodRenewed(_CanonicalEventBase):
    """An invoice for the subscription was paid."""

    kind: Literal["period_renewed"] = "period_renewed"


CanonicalEvent = Annotated[
    Union[
        SubscriptionCreated,
        SubscriptionUpdated,
        SubscriptionCanceled,
        CheckoutCompleted,
        InvoicePaymentFailed,
        PeriodRenewed,
    ],
    Field(discriminator="kind"),
]

canonical_event_adapter: TypeAdapter[CanonicalEvent] = TypeAdapter(CanonicalEvent)
