"""Apply canonical billing events to entitlement records.

The reconciler is the state machine at the centre of the engine.  One call
to :meth:`Reconciler.apply` runs entirely inside the caller's transaction:

1. Claim the event ID in the dedup ledger (``INSERT ... ON CONFLICT DO
   NOTHING``).  A lost claim means the event was already handled and the
   call reports ``duplicate`` without touching anything else.
2. Lock the tenant's entitlement row (``SELECT ... FOR UPDATE``).
3. Reject events for unknown tenants, mark events older than the tenant's
   watermark as ``stale``, otherwise dispatch on the event kind.

Because the ledger row and the record mutation share one transaction, a
crash between them rolls back both and the provider's redelivery starts
from a clean slate.

Allowed status transitions (same-status updates always pass)::

    none      -> trialing, active, canceled
    trialing  -> active, past_due, canceled
    active    -> past_due, canceled
    past_due  -> active, canceled
    canceled  -> trialing, active   (CheckoutCompleted only)

A disallowed transition leaves ``status`` unchanged and is logged; the
event's other fields are still applied.

A canceled record is frozen: until a new checkout arrives, later events are
acknowledged and leave the record and its watermark untouched, so a late
renewal cannot stretch the grace period.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_engine.models.entitlement import ApplyOutcome, PlanTier, SubscriptionStatus
from entitlement_engine.models.events import (
    CanonicalEvent,
    CheckoutCompleted,
    InvoicePaymentFailed,
    PeriodRenewed,
    SubscriptionCanceled,
    SubscriptionCreated,
    SubscriptionUpdated,
)
from entitlement_engine.plans import DEFAULT_CATALOG, PlanCatalog
from entitlement_engine.state.repository import EntitlementRepository, ProcessedEventRepository
from entitlement_engine.state.tables import EntitlementTable

logger = logging.getLogger(__name__)

_S = SubscriptionStatus

_ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    _S.NONE: frozenset({_S.TRIALING, _S.ACTIVE, _S.CANCELED}),
    _S.TRIALING: frozenset({_S.ACTIVE, _S.PAST_DUE, _S.CANCELED}),
    _S.ACTIVE: frozenset({_S.PAST_DUE, _S.CANCELED}),
    _S.PAST_DUE: frozenset({_S.ACTIVE, _S.CANCELED}),
    _S.CANCELED: frozenset(),
}

# Only a fresh checkout may bring a canceled tenant back.
_RESTART_STATUSES: frozenset[SubscriptionStatus] = frozenset({_S.TRIALING, _S.ACTIVE})


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def is_transition_allowed(
    current: SubscriptionStatus,
    target: SubscriptionStatus,
    *,
    restart: bool = False,
) -> bool:
    """Return whether *current* may move to *target*.

    ``restart`` is set for checkout events, which are the only way out of
    ``canceled``.
    """
    if current == target:
        return True
    if current == _S.CANCELED:
        return restart and target in _RESTART_STATUSES
    return target in _ALLOWED_TRANSITIONS[current]


class Reconciler:
    """Merge canonical events into the entitlement store.

    Parameters
    ----------
    session:
        The caller's transaction.  The reconciler flushes but never commits.
    catalog:
        Plan catalog used to refresh ``usage_limit`` when the plan changes.
    """

    def __init__(self, session: AsyncSession, catalog: PlanCatalog | None = None) -> None:
        self._session = session
        self._catalog = catalog or DEFAULT_CATALOG
        self._entitlements = EntitlementRepository(session)
        self._ledger = ProcessedEventRepository(session)
        self._handlers: dict[str, Callable[[EntitlementTable, CanonicalEvent], Awaitable[None]]] = {
            "checkout_completed": self._on_checkout_completed,
            "subscription_created": self._on_subscription_changed,
            "subscription_updated": self._on_subscription_changed,
            "subscription_canceled": self._on_subscription_canceled,
            "invoice_payment_failed": self._on_payment_failed,
            "period_renewed": self._on_period_renewed,
        }

    async def apply(self, event: CanonicalEvent) -> ApplyOutcome:
        """Apply *event* exactly once.

        Returns
        -------
        ApplyOutcome
            ``applied``, ``stale``, ``duplicate``, or ``rejected`` (unknown
            tenant).  Storage errors propagate unchanged so the caller can
            roll back.
        """
        claimed = await self._ledger.mark_applied(
            event.event_id,
            event.tenant_id,
            event_type=event.event_type,
            outcome=ApplyOutcome.APPLIED.value,
        )
        if not claimed:
            logger.info("Duplicate billing event %s (%s); skipping", event.event_id, event.event_type)
            return ApplyOutcome.DUPLICATE

        record = await self._entitlements.get_for_update(event.tenant_id)
        if record is None:
            logger.warning(
                "Billing event %s references unknown tenant=%s; rejecting",
                event.event_id,
                event.tenant_id,
                extra={"tenant_id": event.tenant_id, "event_id": event.event_id},
            )
            await self._ledger.set_outcome(event.event_id, ApplyOutcome.REJECTED.value)
            return ApplyOutcome.REJECTED

        occurred_at = _as_utc(event.occurred_at)
        watermark = _as_utc(record.last_applied_event_at)
        if watermark is not None and occurred_at is not None and occurred_at < watermark:
            logger.info(
                "Stale billing event %s for tenant=%s (occurred %s, watermark %s from %s)",
                event.event_id,
                event.tenant_id,
                occurred_at.isoformat(),
                watermark.isoformat(),
                record.last_applied_event_id,
            )
            await self._ledger.set_outcome(event.event_id, ApplyOutcome.STALE.value)
            return ApplyOutcome.STALE

        if SubscriptionStatus(record.status) == _S.CANCELED and event.kind != "checkout_completed":
            logger.info(
                "Tenant=%s is canceled; %s %s leaves the record unchanged until a new checkout",
                event.tenant_id,
                event.kind,
                event.event_id,
                extra={"tenant_id": event.tenant_id, "event_id": event.event_id},
            )
            return ApplyOutcome.APPLIED

        previous_status = record.status
        await self._handlers[event.kind](record, event)

        record.last_applied_event_id = event.event_id
        record.last_applied_event_at = occurred_at
        record.updated_at = datetime.now(UTC)
        await self._session.flush()

        logger.info(
            "Applied %s to tenant=%s: status %s -> %s plan=%s usage=%d/%d",
            event.kind,
            event.tenant_id,
            previous_status,
            record.status,
            record.plan,
            record.usage_count,
            record.usage_limit,
            extra={"tenant_id": event.tenant_id, "event_id": event.event_id},
        )
        return ApplyOutcome.APPLIED

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _on_checkout_completed(self, record: EntitlementTable, event: CheckoutCompleted) -> None:
        self._transition(record, event, restart=True)
        self._apply_refs(record, event)
        self._apply_plan(record, event.new_plan)
        self._apply_period(record, event, reset_on_advance=False)
        record.usage_count = 0

    async def _on_subscription_changed(
        self,
        record: EntitlementTable,
        event: SubscriptionCreated | SubscriptionUpdated,
    ) -> None:
        self._transition(record, event)
        self._apply_refs(record, event)
        self._apply_plan(record, event.new_plan)
        self._apply_period(record, event, reset_on_advance=True)

    async def _on_subscription_canceled(self, record: EntitlementTable, event: SubscriptionCanceled) -> None:
        self._transition(record, event)
        self._apply_refs(record, event)
        # The paid period still ends where it did; only its bounds may be refreshed.
        self._apply_period(record, event, reset_on_advance=False)

    async def _on_payment_failed(self, record: EntitlementTable, event: InvoicePaymentFailed) -> None:
        self._transition(record, event)
        self._apply_refs(record, event)

    async def _on_period_renewed(self, record: EntitlementTable, event: PeriodRenewed) -> None:
        if SubscriptionStatus(record.status) == _S.PAST_DUE:
            self._set_status(record, event, _S.ACTIVE)
        self._apply_refs(record, event)
        self._apply_plan(record, event.new_plan)
        self._apply_period(record, event, reset_on_advance=True)

    # ------------------------------------------------------------------
    # Field updates
    # ------------------------------------------------------------------

    def _transition(self, record: EntitlementTable, event: CanonicalEvent, *, restart: bool = False) -> None:
        if event.new_status is not None:
            self._set_status(record, event, event.new_status, restart=restart)

    @staticmethod
    def _set_status(
        record: EntitlementTable,
        event: CanonicalEvent,
        target: SubscriptionStatus,
        *,
        restart: bool = False,
    ) -> None:
        current = SubscriptionStatus(record.status)
        if not is_transition_allowed(current, target, restart=restart):
            logger.warning(
                "Ignoring disallowed status transition %s -> %s for tenant=%s (event %s)",
                current.value,
                target.value,
                record.tenant_id,
                event.event_id,
            )
            return
        record.status = target.value

    @staticmethod
    def _apply_refs(record: EntitlementTable, event: CanonicalEvent) -> None:
        if event.subscription_ref:
            record.billing_subscription_ref = event.subscription_ref
        if event.customer_ref:
            record.billing_customer_ref = event.customer_ref

    def _apply_plan(self, record: EntitlementTable, plan: PlanTier | None) -> None:
        """Switch plan and refresh the cached limit; usage carries over."""
        if plan is None:
            return
        if plan.value != record.plan:
            logger.info("Tenant=%s plan %s -> %s", record.tenant_id, record.plan, plan.value)
        record.plan = plan.value
        record.usage_limit = self._catalog.usage_limit(plan)

    @staticmethod
    def _apply_period(record: EntitlementTable, event: CanonicalEvent, *, reset_on_advance: bool) -> None:
        new_end = _as_utc(event.period_end)
        stored_end = _as_utc(record.current_period_end)
        advanced = new_end is not None and stored_end is not None and new_end > stored_end
        if event.period_start is not None:
            record.current_period_start = _as_utc(event.period_start)
        if new_end is not None:
            record.current_period_end = new_end
        if advanced and reset_on_advance:
            logger.info(
                "Tenant=%s entered a new billing period ending %s; resetting usage (was %d)",
                record.tenant_id,
                new_end.isoformat() if new_end else None,
                record.usage_count,
            )
            record.usage_count = 0
