"""Pydantic schemas for the billing API."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from app.modules.billing.models import BillingPeriod, EventOutcome


# ==================== Plans ====================

class PlanResponse(BaseModel):
    """A purchasable plan."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: Optional[str] = None
    price_monthly: int = Field(..., description="Monthly price in cents")
    price_yearly: int = Field(..., description="Yearly price in cents")
    limits: dict[str, int] = Field(
        default_factory=dict, description="Metric name to limit (-1 for unlimited)"
    )
    features: list[str] = Field(default_factory=list)


class PlanListResponse(BaseModel):
    plans: list[PlanResponse]


# ==================== Subscription & Usage ====================

class SubscriptionResponse(BaseModel):
    """Stored subscription state."""
    model_config = ConfigDict(from_attributes=True)

    user_id: uuid.UUID
    plan_id: str
    billing_period: str
    status: str
    stripe_customer_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    trial_end: Optional[datetime] = None


class UsageMetricResponse(BaseModel):
    """Usage of one metric in the current period."""
    metric: str
    used: int
    limit: int = Field(..., description="Limit (-1 for unlimited)")
    remaining: int = Field(..., description="Remaining units (-1 for unlimited)")
    percent_used: float
    is_unlimited: bool
    warning_threshold: Optional[int] = Field(
        None, description="Highest warning threshold reached (50, 75, 90)"
    )
    period_start: datetime
    period_end: datetime


class SubscriptionWithUsageResponse(BaseModel):
    """Subscription, the plan in effect and usage against its limits."""
    subscription: Optional[SubscriptionResponse] = None
    plan: PlanResponse
    usage: list[UsageMetricResponse]


class UsageResponse(BaseModel):
    metric: str
    used: int
    period_key: str


class ReservationRequest(BaseModel):
    amount: int = Field(1, ge=1, description="Units to reserve")


class ReservationResponse(BaseModel):
    """Granted reservation."""
    allowed: bool
    current: int
    limit: int
    period_key: str


# ==================== Stripe Sessions ====================

class CheckoutRequest(BaseModel):
    """Request to start a Stripe Checkout."""
    plan_id: str = Field(..., description="Plan to subscribe to")
    billing_period: str = Field(
        BillingPeriod.MONTHLY.value, description="'monthly' or 'yearly'"
    )


class SessionResponse(BaseModel):
    """Redirect target of a Stripe hosted page."""
    url: str
    session_id: Optional[str] = None


# ==================== Webhooks ====================

class WebhookResponse(BaseModel):
    received: bool = True
    event_id: str
    outcome: EventOutcome


class SyncResponse(BaseModel):
    outcome: EventOutcome
    subscription: Optional[SubscriptionResponse] = None
