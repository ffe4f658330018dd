"""Map Stripe-shaped webhook payloads to canonical billing events.

This module is the only place that knows what a provider payload looks like.
It is a pure mapping: no I/O, no clock reads, no database access.

Accepted provider event types::

    checkout.session.completed       -> CheckoutCompleted
    customer.subscription.created    -> SubscriptionCreated
    customer.subscription.updated    -> SubscriptionUpdated
    customer.subscription.deleted    -> SubscriptionCanceled
    invoice.payment_failed           -> InvoicePaymentFailed
    invoice.paid                     -> PeriodRenewed
    invoice.payment_succeeded        -> PeriodRenewed

Anything else raises :class:`UnrecognizedEventTypeError`; the caller
acknowledges such deliveries so the provider stops retrying them.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from entitlement_engine.errors import MalformedEventError, UnrecognizedEventTypeError
from entitlement_engine.models.entitlement import PlanTier, SubscriptionStatus
from entitlement_engine.models.events import (
    CanonicalEvent,
    CheckoutCompleted,
    InvoicePaymentFailed,
    PeriodRenewed,
    SubscriptionCanceled,
    SubscriptionCreated,
    SubscriptionUpdated,
)
from entitlement_engine.state.database import validate_tenant_id

logger = logging.getLogger(__name__)

_EVENT_CLASSES: dict[str, type[Any]] = {
    "checkout.session.completed": CheckoutCompleted,
    "customer.subscription.created": SubscriptionCreated,
    "customer.subscription.updated": SubscriptionUpdated,
    "customer.subscription.deleted": SubscriptionCanceled,
    "invoice.payment_failed": InvoicePaymentFailed,
    "invoice.paid": PeriodRenewed,
    "invoice.payment_succeeded": PeriodRenewed,
}

ACCEPTED_EVENT_TYPES: frozenset[str] = frozenset(_EVENT_CLASSES)

# Provider subscription status -> canonical status.
_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}

_TENANT_METADATA_KEY = "tenant_id"
_PLAN_METADATA_KEY = "plan"


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _first_entry(container: Any) -> dict[str, Any]:
    """Return the first object of a ``{"data": [...]}`` list, or ``{}`` for any other shape."""
    entries = _as_dict(container).get("data")
    if isinstance(entries, list) and entries:
        return _as_dict(entries[0])
    return {}


def _ref(value: Any) -> str | None:
    """Return an object ID whether the field is expanded (dict) or a bare ID string."""
    if isinstance(value, dict):
        ref = value.get("id")
        return str(ref) if ref else None
    return str(value) if value else None


def _timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"expected a unix timestamp, got {value!r}")
    try:
        return datetime.fromtimestamp(int(value), tz=UTC)
    except (OverflowError, OSError) as exc:
        raise ValueError(f"unix timestamp {value!r} is out of range") from exc


class EventNormalizer:
    """Turn verified provider payloads into :data:`CanonicalEvent` values.

    Parameters
    ----------
    price_plan_map:
        Mapping of provider price ID to plan name, used when the event does
        not name the plan in its metadata.  Unknown price IDs leave the plan
        unchanged rather than failing the event.
    """

    def __init__(self, price_plan_map: Mapping[str, str] | None = None) -> None:
        self._price_plan_map: dict[str, PlanTier] = {
            price_id: PlanTier(plan) for price_id, plan in (price_plan_map or {}).items() if price_id
        }

    def normalize(self, payload: Mapping[str, Any]) -> CanonicalEvent:
        """Map one provider payload to a canonical event.

        Raises
        ------
        UnrecognizedEventTypeError
            The event type is outside the accepted set.
        MalformedEventError
            The envelope or object is missing required fields, or carries no
            tenant metadata.
        """
        if not isinstance(payload, Mapping):
            raise MalformedEventError("Event payload must be a JSON object")

        event_id = payload.get("id")
        event_id = event_id if isinstance(event_id, str) and event_id else None
        event_type = payload.get("type")
        if not isinstance(event_type, str) or not event_type:
            raise MalformedEventError("Event has no type", event_id=event_id)
        if event_type not in _EVENT_CLASSES:
            raise UnrecognizedEventTypeError(event_type, event_id=event_id)
        if event_id is None:
            raise MalformedEventError("Event has no id", event_type=event_type)

        obj = _as_dict(payload.get("data")).get("object")
        if not isinstance(obj, dict):
            raise MalformedEventError("Event has no data.object", event_id=event_id, event_type=event_type)

        try:
            occurred_at = _timestamp(payload.get("created"))
            if occurred_at is None:
                raise ValueError("missing created timestamp")
            tenant_id = self._tenant_id(obj)
            if tenant_id is None:
                raise ValueError("missing tenant_id metadata")
            validate_tenant_id(tenant_id)

            if event_type.startswith("customer.subscription."):
                fields = self._subscription_fields(obj)
            elif event_type == "checkout.session.completed":
                fields = self._checkout_fields(obj)
            else:
                fields = self._invoice_fields(obj)

            if event_type == "customer.subscription.deleted":
                fields["new_status"] = SubscriptionStatus.CANCELED
            elif event_type == "invoice.payment_failed":
                fields["new_status"] = SubscriptionStatus.PAST_DUE

            event_cls = _EVENT_CLASSES[event_type]
            return event_cls(
                event_id=event_id,
                event_type=event_type,
                occurred_at=occurred_at,
                tenant_id=tenant_id,
                **fields,
            )
        except (ValueError, ValidationError, TypeError, KeyError, IndexError, OverflowError) as exc:
            # ValidationError subclasses ValueError; listed for readability.
            logger.warning("Malformed billing event id=%s type=%s: %s", event_id, event_type, exc)
            raise MalformedEventError(str(exc), event_id=event_id, event_type=event_type) from exc

    # ------------------------------------------------------------------
    # Field extraction
    # ------------------------------------------------------------------

    @staticmethod
    def _tenant_id(obj: dict[str, Any]) -> str | None:
        """Recover the tenant from the metadata the checkout creator attached."""
        candidates = (
            _as_dict(obj.get("metadata")),
            _as_dict(_as_dict(obj.get("subscription_details")).get("metadata")),
            _as_dict(_as_dict(_as_dict(obj.get("parent")).get("subscription_details")).get("metadata")),
            _as_dict(_as_dict(obj.get("subscription")).get("metadata")),
        )
        for metadata in candidates:
            value = metadata.get(_TENANT_METADATA_KEY)
            if isinstance(value, str) and value:
                return value
        return None

    @staticmethod
    def _status(value: Any) -> SubscriptionStatus | None:
        if value is None:
            return None
        try:
            return _STATUS_MAP[str(value)]
        except KeyError:
            raise ValueError(f"unknown subscription status {value!r}") from None

    def _plan(self, metadata: dict[str, Any], price_id: Any) -> PlanTier | None:
        named = metadata.get(_PLAN_METADATA_KEY)
        if named:
            try:
                return PlanTier(str(named))
            except ValueError:
                raise ValueError(f"unknown plan {named!r} in metadata") from None
        if price_id:
            plan = self._price_plan_map.get(str(price_id))
            if plan is None:
                logger.info("Price %s is not mapped to a plan; plan left unchanged", price_id)
            return plan
        return None

    def _subscription_fields(self, subscription: dict[str, Any]) -> dict[str, Any]:
        item = _first_entry(subscription.get("items"))
        # Newer API versions moved the period onto the subscription item.
        period_start = subscription.get("current_period_start", item.get("current_period_start"))
        period_end = subscription.get("current_period_end", item.get("current_period_end"))
        return {
            "subscription_ref": _ref(subscription.get("id")),
            "customer_ref": _ref(subscription.get("customer")),
            "new_status": self._status(subscription.get("status")),
            "new_plan": self._plan(_as_dict(subscription.get("metadata")), _as_dict(item.get("price")).get("id")),
            "period_start": _timestamp(period_start),
            "period_end": _timestamp(period_end),
        }

    def _checkout_fields(self, session: dict[str, Any]) -> dict[str, Any]:
        metadata = _as_dict(session.get("metadata"))
        subscription = _as_dict(session.get("subscription"))
        if subscription:
            fields = self._subscription_fields(subscription)
            if fields["new_plan"] is None:
                fields["new_plan"] = self._plan(metadata, None)
        else:
            fields = {
                "subscription_ref": _ref(session.get("subscription")),
                "new_plan": self._plan(metadata, None),
                "new_status": self._status(metadata.get("subscription_status")),
            }
        fields["customer_ref"] = _ref(session.get("customer")) or fields.get("customer_ref")
        if fields.get("new_status") is None:
            fields["new_status"] = SubscriptionStatus.ACTIVE
        return fields

    def _invoice_fields(self, invoice: dict[str, Any]) -> dict[str, Any]:
        line = _first_entry(invoice.get("lines"))
        period = _as_dict(line.get("period"))
        subscription_ref = _ref(invoice.get("subscription")) or _ref(
            _as_dict(_as_dict(invoice.get("parent")).get("subscription_details")).get("subscription")
        )
        return {
            "subscription_ref": subscription_ref,
            "customer_ref": _ref(invoice.get("customer")),
            "new_plan": self._plan(
                _as_dict(_as_dict(invoice.get("subscription_details")).get("metadata")),
                _as_dict(line.get("price")).get("id"),
            ),
            "period_start": _timestamp(period.get("start")),
            "period_end": _timestamp(period.get("end")),
        }
