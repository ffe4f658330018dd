"""Canonical events and entitlement value objects."""

from entitlement_engine.models.entitlement import (
    AccessDecision,
    ApplyOutcome,
    ConsumeResult,
    EntitlementSnapshot,
    PlanTier,
    ReleaseResult,
    SubscriptionStatus,
    SyncResult,
)
from entitlement_engine.models.events import (
    CanonicalEvent,
    CheckoutCompleted,
    InvoicePaymentFailed,
    PeriodRenewed,
    SubscriptionCanceled,
    SubscriptionCreated,
    SubscriptionUpdated,
    canonical_event_adapter,
)

__all__ = [
    "AccessDecision",
    "ApplyOutcome",
    "CanonicalEvent",
    "CheckoutCompleted",
    "ConsumeResult",
    "EntitlementSnapshot",
    "InvoicePaymentFailed",
    "PeriodRenewed",
    "PlanTier",
    "ReleaseResult",
    "SubscriptionCanceled",
    "SubscriptionCreated",
    "SubscriptionStatus",
    "SubscriptionUpdated",
    "SyncResult",
    "canonical_event_adapter",
]
