"""Billing module.

Plan catalog, usage metering with atomic limit enforcement, and Stripe
subscription reconciliation.
"""

from app.modules.billing.router import router
from app.modules.billing.service import BillingService
from app.modules.billing.limits import LimitEnforcer, Reservation
from app.modules.billing.metering import UsageLedger, current_period_key
from app.modules.billing.reconciler import WebhookReconciler, ApplyResult
from app.modules.billing.plans import PlanCatalog, FREE_PLAN
from app.modules.billing.dependencies import require_quota
from app.modules.billing.models import (
    Plan,
    Subscription,
    UsageCounter,
    ProcessedEvent,
    SubscriptionStatus,
    BillingPeriod,
    EventOutcome,
    UNLIMITED,
)

__all__ = [
    "router",
    "BillingService",
    "LimitEnforcer",
    "Reservation",
    "UsageLedger",
    "current_period_key",
    "WebhookReconciler",
    "ApplyResult",
    "PlanCatalog",
    "FREE_PLAN",
    "require_quota",
    "Plan",
    "Subscription",
    "UsageCounter",
    "ProcessedEvent",
    "SubscriptionStatus",
    "BillingPeriod",
    "EventOutcome",
    "UNLIMITED",
]
