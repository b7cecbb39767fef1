"""Stripe webhook events as a closed set of typed variants.

Raw payloads are parsed once, here. The reconciler dispatches on the variant
class and never looks at Stripe's loosely typed dictionaries.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Union

from app.core.clock import from_timestamp


# Stripe subscription statuses mapped onto local ones
STRIPE_STATUS_MAP = {
    "trialing": "trialing",
    "active": "active",
    "past_due": "past_due",
    "unpaid": "past_due",
    "paused": "past_due",
    "canceled": "canceled",
    "incomplete": "incomplete",
    "incomplete_expired": "canceled",
}


@dataclass(frozen=True)
class BillingEvent:
    """Fields common to every event."""
    event_id: str
    event_type: str
    timestamp: datetime


@dataclass(frozen=True)
class CheckoutCompleted(BillingEvent):
    """``checkout.session.completed`` for a subscription checkout."""
    user_id: Optional[uuid.UUID] = None
    plan_id: Optional[str] = None
    billing_period: Optional[str] = None
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionUpdated(BillingEvent):
    """``customer.subscription.created`` / ``customer.subscription.updated``."""
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    status: Optional[str] = None
    price_id: Optional[str] = None
    user_id: Optional[uuid.UUID] = None
    plan_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    trial_end: Optional[datetime] = None


@dataclass(frozen=True)
class SubscriptionDeleted(BillingEvent):
    """``customer.subscription.deleted``."""
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    user_id: Optional[uuid.UUID] = None
    canceled_at: Optional[datetime] = None


@dataclass(frozen=True)
class InvoicePaymentFailed(BillingEvent):
    """``invoice.payment_failed``."""
    invoice_id: Optional[str] = None
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None


@dataclass(frozen=True)
class InvoicePaymentSucceeded(BillingEvent):
    """``invoice.payment_succeeded`` / ``invoice.paid``."""
    invoice_id: Optional[str] = None
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None


@dataclass(frozen=True)
class UnknownEvent(BillingEvent):
    """Any event type not handled above."""


WebhookEvent = Union[
    CheckoutCompleted,
    SubscriptionUpdated,
    SubscriptionDeleted,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    UnknownEvent,
]


def _get(obj: Any, *path: Any) -> Any:
    """Walk nested dicts/lists, returning None on any missing step."""
    for key in path:
        if obj is None:
            return None
        if isinstance(key, int):
            if not isinstance(obj, list) or len(obj) <= key:
                return None
            obj = obj[key]
        else:
            if not isinstance(obj, dict):
                return None
            obj = obj.get(key)
    return obj


def _id(value: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _uuid(value: Any) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def map_stripe_status(status: Optional[str]) -> Optional[str]:
    """Local status for a Stripe subscription status."""
    if status is None:
        return None
    return STRIPE_STATUS_MAP.get(status)


def subscription_from_object(
    obj: dict,
    event_id: str,
    event_type: str,
    timestamp: datetime,
) -> SubscriptionUpdated:
    """Build a SubscriptionUpdated from a Stripe subscription object."""
    item = _get(obj, "items", "data", 0) or {}
    metadata = obj.get("metadata") or {}
    return SubscriptionUpdated(
        event_id=event_id,
        event_type=event_type,
        timestamp=timestamp,
        subscription_id=obj.get("id"),
        customer_id=_id(obj.get("customer")),
        status=obj.get("status"),
        price_id=_get(item, "price", "id"),
        user_id=_uuid(metadata.get("user_id")),
        plan_id=metadata.get("plan_id"),
        # Newer API versions report the window on the subscription item
        current_period_start=from_timestamp(
            obj.get("current_period_start") or item.get("current_period_start")
        ),
        current_period_end=from_timestamp(
            obj.get("current_period_end") or item.get("current_period_end")
        ),
        cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
        canceled_at=from_timestamp(obj.get("canceled_at")),
        trial_end=from_timestamp(obj.get("trial_end")),
    )


def _invoice_subscription_id(obj: dict) -> Optional[str]:
    return _id(obj.get("subscription")) or _id(
        _get(obj, "parent", "subscription_details", "subscription")
    )


def parse_event(raw: dict) -> WebhookEvent:
    """Map a verified Stripe event payload onto its variant.

    Args:
        raw: Decoded event JSON (``id``, ``type``, ``created``, ``data.object``)

    Returns:
        One of the WebhookEvent variants; unrecognised types become
        UnknownEvent

    Raises:
        ValueError: If the payload has no event id or type
    """
    event_id = raw.get("id")
    event_type = raw.get("type")
    if not event_id or not event_type:
        raise ValueError("Event payload is missing id or type")

    timestamp = from_timestamp(raw.get("created") or 0)
    obj = _get(raw, "data", "object") or {}

    if event_type == "checkout.session.completed":
        if obj.get("mode") != "subscription":
            return UnknownEvent(event_id, event_type, timestamp)
        metadata = obj.get("metadata") or {}
        return CheckoutCompleted(
            event_id=event_id,
            event_type=event_type,
            timestamp=timestamp,
            user_id=_uuid(metadata.get("user_id") or obj.get("client_reference_id")),
            plan_id=metadata.get("plan_id"),
            billing_period=metadata.get("billing_period"),
            customer_id=_id(obj.get("customer")),
            subscription_id=_id(obj.get("subscription")),
        )

    if event_type in ("customer.subscription.created", "customer.subscription.updated"):
        return subscription_from_object(obj, event_id, event_type, timestamp)

    if event_type == "customer.subscription.deleted":
        metadata = obj.get("metadata") or {}
        return SubscriptionDeleted(
            event_id=event_id,
            event_type=event_type,
            timestamp=timestamp,
            subscription_id=obj.get("id"),
            customer_id=_id(obj.get("customer")),
            user_id=_uuid(metadata.get("user_id")),
            canceled_at=from_timestamp(obj.get("canceled_at") or obj.get("ended_at")),
        )

    if event_type == "invoice.payment_failed":
        return InvoicePaymentFailed(
            event_id=event_id,
            event_type=event_type,
            timestamp=timestamp,
            invoice_id=obj.get("id"),
            subscription_id=_invoice_subscription_id(obj),
            customer_id=_id(obj.get("customer")),
        )

    if event_type in ("invoice.payment_succeeded", "invoice.paid"):
        line_period = _get(obj, "lines", "data", 0, "period") or {}
        return InvoicePaymentSucceeded(
            event_id=event_id,
            event_type=event_type,
            timestamp=timestamp,
            invoice_id=obj.get("id"),
            subscription_id=_invoice_subscription_id(obj),
            customer_id=_id(obj.get("customer")),
            period_start=from_timestamp(line_period.get("start")),
            period_end=from_timestamp(line_period.get("end")),
        )

    return UnknownEvent(event_id, event_type, timestamp)
