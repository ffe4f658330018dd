"""Tests for entitlement_engine.billing.normalizer."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from entitlement_engine.billing.normalizer import ACCEPTED_EVENT_TYPES, EventNormalizer
from entitlement_engine.errors import MalformedEventError, UnrecognizedEventTypeError
from entitlement_engine.models.entitlement import PlanTier, SubscriptionStatus
from entitlement_engine.models.events import (
    CheckoutCompleted,
    InvoicePaymentFailed,
    PeriodRenewed,
    SubscriptionCanceled,
    SubscriptionCreated,
    SubscriptionUpdated,
)


@pytest.fixture()
def normalizer() -> EventNormalizer:
    return EventNormalizer({"price_op": "operator", "price_fd": "foundry"})


# ---------------------------------------------------------------------------
# Type mapping
# ---------------------------------------------------------------------------


class TestEventTypeMapping:
    """Each accepted provider type maps to exactly one canonical variant."""

    def test_accepted_types(self) -> None:
        assert ACCEPTED_EVENT_TYPES == {
            "checkout.session.completed",
            "customer.subscription.created",
            "customer.subscription.updated",
            "customer.subscription.deleted",
            "invoice.payment_failed",
            "invoice.paid",
            "invoice.payment_succeeded",
        }

    def test_checkout(self, normalizer, stripe_events) -> None:
        event = normalizer.normalize(stripe_events.checkout("acme", event_id="evt_1"))
        assert isinstance(event, CheckoutCompleted)
        assert event.kind == "checkout_completed"
        assert event.event_id == "evt_1"
        assert event.event_type == "checkout.session.completed"
        assert event.tenant_id == "acme"
        assert event.new_status == SubscriptionStatus.ACTIVE
        assert event.new_plan == PlanTier.OPERATOR
        assert event.subscription_ref == "sub_test_1"
        assert event.customer_ref == "cus_test_1"
        assert event.period_end == stripe_events.at() + timedelta(days=30)

    def test_checkout_trialing(self, normalizer, stripe_events) -> None:
        event = normalizer.normalize(stripe_events.checkout("acme", status="trialing"))
        assert event.new_status == SubscriptionStatus.TRIALING

    def test_checkout_without_expanded_subscription_defaults_to_active(self, normalizer, stripe_events) -> None:
        payload = stripe_events.envelope(
            "checkout.session.completed",
            {
                "id": "cs_1",
                "customer": "cus_9",
                "subscription": "sub_9",
                "metadata": {"tenant_id": "acme", "plan": "foundry"},
            },
        )
        event = normalizer.normalize(payload)
        assert isinstance(event, CheckoutCompleted)
        assert event.new_status == SubscriptionStatus.ACTIVE
        assert event.new_plan == PlanTier.FOUNDRY
        assert event.subscription_ref == "sub_9"
        assert event.customer_ref == "cus_9"
        assert event.period_end is None

    @pytest.mark.parametrize(
        ("suffix", "expected_cls"),
        [
            ("created", SubscriptionCreated),
            ("updated", SubscriptionUpdated),
            ("deleted", SubscriptionCanceled),
        ],
    )
    def test_subscription_events(self, normalizer, stripe_events, suffix, expected_cls) -> None:
        event = normalizer.normalize(stripe_events.subscription(suffix, "acme"))
        assert isinstance(event, expected_cls)
        assert event.tenant_id == "acme"

    def test_deleted_forces_canceled(self, normalizer, stripe_events) -> None:
        # Stripe reports the final status, but deletion always means canceled.
        event = normalizer.normalize(stripe_events.subscription("deleted", "acme", status="active"))
        assert event.new_status == SubscriptionStatus.CANCELED

    def test_payment_failed_forces_past_due(self, normalizer, stripe_events) -> None:
        event = normalizer.normalize(stripe_events.invoice("payment_failed", "acme"))
        assert isinstance(event, InvoicePaymentFailed)
        assert event.new_status == SubscriptionStatus.PAST_DUE
        assert event.subscription_ref == "sub_test_1"

    @pytest.mark.parametrize("event_type", ["paid", "payment_succeeded"])
    def test_invoice_paid_is_period_renewed(self, normalizer, stripe_events, event_type) -> None:
        start = stripe_events.at() + timedelta(days=30)
        end = start + timedelta(days=30)
        event = normalizer.normalize(
            stripe_events.invoice(event_type, "acme", plan="operator", period_start=start, period_end=end)
        )
        assert isinstance(event, PeriodRenewed)
        assert event.new_status is None
        assert event.new_plan == PlanTier.OPERATOR
        assert event.period_start == start
        assert event.period_end == end

    def test_created_timestamp_is_utc(self, normalizer, stripe_events) -> None:
        event = normalizer.normalize(stripe_events.subscription("updated", "acme", minutes=5))
        assert event.occurred_at == stripe_events.at(5)
        assert event.occurred_at.tzinfo is not None


# ---------------------------------------------------------------------------
# Status and plan resolution
# ---------------------------------------------------------------------------


class TestStatusAndPlan:
    @pytest.mark.parametrize(
        ("provider_status", "expected"),
        [
            ("active", SubscriptionStatus.ACTIVE),
            ("trialing", SubscriptionStatus.TRIALING),
            ("past_due", SubscriptionStatus.PAST_DUE),
            ("unpaid", SubscriptionStatus.PAST_DUE),
            ("incomplete", SubscriptionStatus.PAST_DUE),
            ("canceled", SubscriptionStatus.CANCELED),
            ("incomplete_expired", SubscriptionStatus.CANCELED),
        ],
    )
    def test_status_mapping(self, normalizer, stripe_events, provider_status, expected) -> None:
        event = normalizer.normalize(stripe_events.subscription("updated", "acme", status=provider_status))
        assert event.new_status == expected

    def test_unknown_status_is_malformed(self, normalizer, stripe_events) -> None:
        with pytest.raises(MalformedEventError, match="unknown subscription status"):
            normalizer.normalize(stripe_events.subscription("updated", "acme", status="weird"))

    def test_plan_from_price_id(self, normalizer, stripe_events) -> None:
        event = normalizer.normalize(stripe_events.subscription("updated", "acme", plan=None, price_id="price_fd"))
        assert event.new_plan == PlanTier.FOUNDRY

    def test_metadata_plan_wins_over_price(self, normalizer, stripe_events) -> None:
        event = normalizer.normalize(
            stripe_events.subscription("updated", "acme", plan="prototype", price_id="price_fd")
        )
        assert event.new_plan == PlanTier.PROTOTYPE

    def test_unmapped_price_leaves_plan_unchanged(self, normalizer, stripe_events) -> None:
        event = normalizer.normalize(stripe_events.subscription("updated", "acme", plan=None, price_id="price_other"))
        assert event.new_plan is None

    def test_unknown_plan_metadata_is_malformed(self, normalizer, stripe_events) -> None:
        with pytest.raises(MalformedEventError, match="unknown plan"):
            normalizer.normalize(stripe_events.subscription("updated", "acme", plan="platinum"))

    def test_period_from_subscription_item(self, normalizer, stripe_events) -> None:
        payload = stripe_events.subscription("updated", "acme")
        obj = payload["data"]["object"]
        start, end = obj.pop("current_period_start"), obj.pop("current_period_end")
        obj["items"]["data"][0].update(current_period_start=start, current_period_end=end)
        event = normalizer.normalize(payload)
        assert event.period_start == datetime.fromtimestamp(start, tz=UTC)
        assert event.period_end == datetime.fromtimestamp(end, tz=UTC)


# ---------------------------------------------------------------------------
# Tenant lookup
# ---------------------------------------------------------------------------


class TestTenantLookup:
    def test_tenant_from_object_metadata(self, normalizer, stripe_events) -> None:
        event = normalizer.normalize(stripe_events.subscription("created", "tenant-a"))
        assert event.tenant_id == "tenant-a"

    def test_tenant_from_invoice_parent(self, normalizer, stripe_events) -> None:
        obj = {
            "id": "in_2",
            "customer": "cus_2",
            "parent": {"subscription_details": {"subscription": "sub_2", "metadata": {"tenant_id": "tenant-b"}}},
        }
        event = normalizer.normalize(stripe_events.envelope("invoice.paid", obj))
        assert event.tenant_id == "tenant-b"
        assert event.subscription_ref == "sub_2"

    def test_missing_tenant_is_malformed(self, normalizer, stripe_events) -> None:
        payload = stripe_events.subscription("updated", "acme", event_id="evt_missing")
        del payload["data"]["object"]["metadata"]["tenant_id"]
        with pytest.raises(MalformedEventError) as exc_info:
            normalizer.normalize(payload)
        assert exc_info.value.event_id == "evt_missing"
        assert exc_info.value.event_type == "customer.subscription.updated"

    def test_invalid_tenant_id_is_malformed(self, normalizer, stripe_events) -> None:
        with pytest.raises(MalformedEventError, match="Invalid tenant_id"):
            normalizer.normalize(stripe_events.subscription("updated", "acme; drop table"))


# ---------------------------------------------------------------------------
# Envelope errors
# ---------------------------------------------------------------------------


class TestEnvelopeErrors:
    def test_unrecognized_type(self, normalizer, stripe_events) -> None:
        payload = stripe_events.envelope("customer.created", {"id": "cus_1"}, event_id="evt_x")
        with pytest.raises(UnrecognizedEventTypeError) as exc_info:
            normalizer.normalize(payload)
        assert exc_info.value.event_type == "customer.created"
        assert exc_info.value.event_id == "evt_x"

    def test_missing_type(self, normalizer) -> None:
        with pytest.raises(MalformedEventError, match="no type"):
            normalizer.normalize({"id": "evt_1", "data": {"object": {}}})

    def test_missing_id(self, normalizer, stripe_events) -> None:
        payload = stripe_events.subscription("updated", "acme")
        del payload["id"]
        with pytest.raises(MalformedEventError, match="no id") as exc_info:
            normalizer.normalize(payload)
        assert exc_info.value.event_id is None

    def test_missing_data_object(self, normalizer) -> None:
        with pytest.raises(MalformedEventError, match="data.object"):
            normalizer.normalize({"id": "evt_1", "type": "invoice.paid", "created": 1, "data": {}})

    def test_missing_created(self, normalizer, stripe_events) -> None:
        payload = stripe_events.subscription("updated", "acme")
        del payload["created"]
        with pytest.raises(MalformedEventError, match="created"):
            normalizer.normalize(payload)

    def test_non_numeric_timestamp(self, normalizer, stripe_events) -> None:
        payload = stripe_events.subscription("updated", "acme")
        payload["data"]["object"]["current_period_end"] = "tomorrow"
        with pytest.raises(MalformedEventError, match="unix timestamp"):
            normalizer.normalize(payload)

    @pytest.mark.parametrize("created", [10**20, float("inf"), -(10**20)])
    def test_out_of_range_created_is_malformed(self, normalizer, stripe_events, created) -> None:
        payload = stripe_events.subscription("updated", "acme", event_id="evt_far")
        payload["created"] = created
        with pytest.raises(MalformedEventError) as exc_info:
            normalizer.normalize(payload)
        assert exc_info.value.event_id == "evt_far"

    def test_out_of_range_period_is_malformed(self, normalizer, stripe_events) -> None:
        payload = stripe_events.subscription("updated", "acme")
        payload["data"]["object"]["current_period_end"] = 10**20
        with pytest.raises(MalformedEventError, match="out of range"):
            normalizer.normalize(payload)

    def test_items_data_as_object_is_tolerated(self, normalizer, stripe_events) -> None:
        payload = stripe_events.subscription("updated", "acme", plan=None, price_id="price_op")
        payload["data"]["object"]["items"] = {"data": {"price": {"id": "price_op"}}}
        event = normalizer.normalize(payload)
        assert event.new_plan is None
        assert event.period_end == stripe_events.at() + timedelta(days=30)

    @pytest.mark.parametrize("lines", [{"data": {"period": {"start": 1, "end": 2}}}, {"data": "nope"}, []])
    def test_odd_invoice_lines_are_tolerated(self, normalizer, stripe_events, lines) -> None:
        payload = stripe_events.invoice("paid", "acme")
        payload["data"]["object"]["lines"] = lines
        event = normalizer.normalize(payload)
        assert isinstance(event, PeriodRenewed)
        assert event.period_end is None

    def test_inverted_period_is_malformed(self, normalizer, stripe_events) -> None:
        start = stripe_events.at()
        payload = stripe_events.subscription(
            "updated", "acme", period_start=start, period_end=start - timedelta(days=1)
        )
        with pytest.raises(MalformedEventError, match="period_start"):
            normalizer.normalize(payload)

    def test_non_mapping_payload(self, normalizer) -> None:
        with pytest.raises(MalformedEventError):
            normalizer.normalize(["not", "an", "object"])  # type: ignore[arg-type]
