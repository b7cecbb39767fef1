"""Tests for parsing Stripe event payloads into typed events."""

import uuid
from datetime import datetime

import pytest
from hypothesis import given, settings, strategies as st

from app.modules.billing.events import (
    STRIPE_STATUS_MAP,
    CheckoutCompleted,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    SubscriptionDeleted,
    SubscriptionUpdated,
    UnknownEvent,
    map_stripe_status,
    parse_event,
)
from app.modules.billing.models import SubscriptionStatus

USER_ID = uuid.UUID("6f1c2a9e-1b7d-4c3e-9a51-2d0f8e7b4c11")
CREATED = 1767225600  # 2026-01-01T00:00:00Z


def stripe_event(event_type: str, obj: dict, event_id: str = "evt_1") -> dict:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": CREATED,
        "data": {"object": obj},
    }


class TestParseEvent:
    """Mapping of raw payloads onto event variants."""

    def test_checkout_completed(self) -> None:
        event = parse_event(stripe_event("checkout.session.completed", {
            "id": "cs_1",
            "mode": "subscription",
            "customer": "cus_1",
            "subscription": "sub_1",
            "client_reference_id": str(USER_ID),
            "metadata": {"plan_id": "pro", "billing_period": "yearly"},
        }))

        assert isinstance(event, CheckoutCompleted)
        assert event.event_id == "evt_1"
        assert event.timestamp == datetime(2026, 1, 1)
        assert event.user_id == USER_ID
        assert event.plan_id == "pro"
        assert event.billing_period == "yearly"
        assert event.customer_id == "cus_1"
        assert event.subscription_id == "sub_1"

    def test_payment_mode_checkout_is_unknown(self) -> None:
        event = parse_event(stripe_event("checkout.session.completed", {
            "id": "cs_1",
            "mode": "payment",
        }))

        assert isinstance(event, UnknownEvent)

    @pytest.mark.parametrize("event_type", [
        "customer.subscription.created",
        "customer.subscription.updated",
    ])
    def test_subscription_updated(self, event_type: str) -> None:
        event = parse_event(stripe_event(event_type, {
            "id": "sub_1",
            "customer": {"id": "cus_1", "object": "customer"},
            "status": "trialing",
            "cancel_at_period_end": True,
            "trial_end": CREATED + 86400,
            "metadata": {"user_id": str(USER_ID), "plan_id": "pro"},
            "items": {"data": [{
                "price": {"id": "price_pro_monthly"},
                "current_period_start": CREATED,
                "current_period_end": CREATED + 31 * 86400,
            }]},
        }))

        assert isinstance(event, SubscriptionUpdated)
        assert event.event_type == event_type
        assert event.subscription_id == "sub_1"
        assert event.customer_id == "cus_1"
        assert event.status == "trialing"
        assert event.price_id == "price_pro_monthly"
        assert event.user_id == USER_ID
        assert event.cancel_at_period_end is True
        assert event.current_period_start == datetime(2026, 1, 1)
        assert event.current_period_end == datetime(2026, 2, 1)
        assert event.trial_end == datetime(2026, 1, 2)

    def test_subscription_deleted(self) -> None:
        event = parse_event(stripe_event("customer.subscription.deleted", {
            "id": "sub_1",
            "customer": "cus_1",
            "status": "canceled",
            "ended_at": CREATED,
        }))

        assert isinstance(event, SubscriptionDeleted)
        assert event.subscription_id == "sub_1"
        assert event.canceled_at == datetime(2026, 1, 1)

    def test_invoice_payment_failed(self) -> None:
        event = parse_event(stripe_event("invoice.payment_failed", {
            "id": "in_1",
            "customer": "cus_1",
            "subscription": "sub_1",
        }))

        assert isinstance(event, InvoicePaymentFailed)
        assert event.invoice_id == "in_1"
        assert event.subscription_id == "sub_1"

    @pytest.mark.parametrize("event_type", ["invoice.payment_succeeded", "invoice.paid"])
    def test_invoice_paid_reads_subscription_from_parent(self, event_type: str) -> None:
        event = parse_event(stripe_event(event_type, {
            "id": "in_1",
            "customer": "cus_1",
            "parent": {"subscription_details": {"subscription": "sub_1"}},
            "lines": {"data": [{"period": {"start": CREATED, "end": CREATED + 86400}}]},
        }))

        assert isinstance(event, InvoicePaymentSucceeded)
        assert event.subscription_id == "sub_1"
        assert event.period_start == datetime(2026, 1, 1)
        assert event.period_end == datetime(2026, 1, 2)

    def test_unhandled_type_is_unknown(self) -> None:
        event = parse_event(stripe_event("customer.created", {"id": "cus_1"}))

        assert isinstance(event, UnknownEvent)
        assert event.event_type == "customer.created"

    @pytest.mark.parametrize("payload", [
        {"type": "invoice.paid", "data": {"object": {}}},
        {"id": "evt_1", "data": {"object": {}}},
    ])
    def test_missing_id_or_type_rejected(self, payload: dict) -> None:
        with pytest.raises(ValueError):
            parse_event(payload)

    def test_invalid_user_id_metadata_is_dropped(self) -> None:
        event = parse_event(stripe_event("customer.subscription.updated", {
            "id": "sub_1",
            "status": "active",
            "metadata": {"user_id": "not-a-uuid"},
        }))

        assert event.user_id is None


class TestStatusMapping:
    """Stripe statuses always map onto a local status."""

    @given(status=st.sampled_from(sorted(STRIPE_STATUS_MAP)))
    @settings(max_examples=20)
    def test_every_stripe_status_maps_to_local_status(self, status: str) -> None:
        """*For any* Stripe status, the mapped status SHALL be a local one."""
        assert map_stripe_status(status) in {s.value for s in SubscriptionStatus}

    @pytest.mark.parametrize("stripe_status,local", [
        ("unpaid", "past_due"),
        ("paused", "past_due"),
        ("incomplete_expired", "canceled"),
        ("active", "active"),
    ])
    def test_collapsed_statuses(self, stripe_status: str, local: str) -> None:
        assert map_stripe_status(stripe_status) == local

    def test_unrecognised_status_maps_to_none(self) -> None:
        assert map_stripe_status("something_new") is None
        assert map_stripe_status(None) is None
