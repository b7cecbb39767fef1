"""Billing error taxonomy.

Expected business outcomes (a denied reservation, a duplicate or stale
webhook) are returned as values. The exceptions below are raised only where a
caller must stop: bad input, missing state, store failures and provider
failures.
"""

from typing import Optional


class BillingError(Exception):
    """Base class for all billing errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotAuthenticatedError(BillingError):
    """No user context could be established for the call."""

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message)


class PlanNotFoundError(BillingError):
    """Unknown plan id, or a plan without a price for the requested period."""

    def __init__(self, plan_id: str, message: Optional[str] = None):
        super().__init__(message or f"Plan '{plan_id}' not found")
        self.plan_id = plan_id


class InvalidBillingPeriodError(BillingError):
    """Billing period is not one of monthly/yearly."""

    def __init__(self, billing_period: str):
        super().__init__(
            f"Invalid billing period '{billing_period}'. Must be 'monthly' or 'yearly'"
        )
        self.billing_period = billing_period


class NoSubscriptionError(BillingError):
    """The user has no Stripe customer to manage."""

    def __init__(self, user_id):
        super().__init__("No subscription found. Subscribe to a plan first.")
        self.user_id = user_id


class LimitExceededError(BillingError):
    """A reservation was denied.

    Only raised by ``LimitEnforcer.reserve`` and the quota dependency;
    ``check_and_reserve`` reports denials as a value.
    """

    def __init__(self, reservation):
        super().__init__(reservation.reason or "Usage limit reached")
        self.reservation = reservation

    @property
    def current(self) -> int:
        return self.reservation.current

    @property
    def limit(self) -> int:
        return self.reservation.limit


class TransientStoreFailure(BillingError):
    """The atomic step was rolled back; the whole step may be retried."""


class StoreInvariantViolation(BillingError):
    """Stored state broke an invariant (e.g. a counter would go negative)."""


class PaymentProviderError(BillingError):
    """A call to Stripe failed."""
