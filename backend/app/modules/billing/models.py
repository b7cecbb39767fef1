"""Billing models for plans, subscriptions and usage metering.

Subscriptions are mutated only by the webhook reconciler. Usage counters are
keyed by (user, metric, period) so a new billing window starts a fresh row and
closed periods are kept for reporting.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.core.database import Base


# Limit value meaning "no cap"
UNLIMITED = -1


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status."""
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"


class BillingPeriod(str, Enum):
    """Billing interval of a paid subscription."""
    MONTHLY = "monthly"
    YEARLY = "yearly"


class EventOutcome(str, Enum):
    """How a webhook event was handled."""
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    IGNORED = "ignored"
    UNMATCHED = "unmatched"


# Statuses that keep the paid plan's limits (past_due is a grace period)
PAID_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.TRIALING.value,
    SubscriptionStatus.PAST_DUE.value,
})


class Plan(Base):
    """Subscription plan.

    ``limits`` maps a free-form metric name to an integer cap; ``-1`` means
    unlimited and a metric missing from the mapping is unlimited too.
    """

    __tablename__ = "plans"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Pricing (in cents)
    price_monthly: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    price_yearly: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Stripe integration
    stripe_price_id_monthly: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, index=True
    )
    stripe_price_id_yearly: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, index=True
    )

    limits: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    features: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<Plan(id={self.id}, name={self.name})>"

    def price_id_for(self, billing_period: str) -> Optional[str]:
        """Stripe price id for a billing period, if the plan is sold that way."""
        if billing_period == BillingPeriod.YEARLY.value:
            return self.stripe_price_id_yearly
        return self.stripe_price_id_monthly


class Subscription(Base):
    """A user's subscription. One row per user, never deleted."""

    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, nullable=False, unique=True, index=True
    )

    # Plan details
    plan_id: Mapped[str] = mapped_column(String(50), nullable=False, default="free")
    billing_period: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BillingPeriod.MONTHLY.value
    )
    status: Mapped[str] = mapped_column(
        String(50), nullable=False, default=SubscriptionStatus.ACTIVE.value, index=True
    )

    # Stripe integration
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, index=True
    )
    stripe_subscription_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, unique=True
    )

    # Billing window
    current_period_start: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )
    current_period_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )

    # Cancellation and trial
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    canceled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    trial_end: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Last applied webhook event, for ordering
    last_event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last_event_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "current_period_end >= current_period_start",
            name="ck_subscriptions_period_order",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, user={self.user_id}, "
            f"plan={self.plan_id}, status={self.status})>"
        )

    def is_paid(self) -> bool:
        """Whether the subscription currently grants its plan's limits."""
        return self.status in PAID_STATUSES


class UsageCounter(Base):
    """Usage of one metric by one user within one period."""

    __tablename__ = "usage_counters"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    metric: Mapped[str] = mapped_column(String(100), nullable=False)

    # ISO timestamp of the window start
    period_key: Mapped[str] = mapped_column(String(64), nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "user_id", "metric", "period_key", name="uq_usage_counters_key"
        ),
        CheckConstraint("count >= 0", name="ck_usage_counters_count"),
        Index("ix_usage_counters_user_period", "user_id", "period_start"),
    )

    def __repr__(self) -> str:
        return (
            f"<UsageCounter(user={self.user_id}, metric={self.metric}, "
            f"period={self.period_key}, count={self.count})>"
        )


class ProcessedEvent(Base):
    """Webhook event that has been handled. An id appears at most once."""

    __tablename__ = "processed_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    outcome: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    def __repr__(self) -> str:
        return f"<ProcessedEvent(id={self.event_id}, outcome={self.outcome})>"
