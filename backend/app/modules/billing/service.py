"""Billing service: checkout and portal sessions, signup provisioning.

Session creation never changes local state. A purchased plan only takes
effect when its webhook reaches the reconciler.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.modules.billing.exceptions import (
    InvalidBillingPeriodError,
    NoSubscriptionError,
    PlanNotFoundError,
    TransientStoreFailure,
)
from app.modules.billing.metering import UsageLedger, UsageMetrics
from app.modules.billing.models import (
    BillingPeriod,
    Plan,
    Subscription,
    SubscriptionStatus,
)
from app.modules.billing.plans import PlanCatalog
from app.modules.billing.repository import SubscriptionRepository
from app.modules.billing.stripe_client import StripeSession

logger = logging.getLogger(__name__)


VALID_BILLING_PERIODS = {period.value for period in BillingPeriod}


class BillingService:
    """Service for subscription management flows."""

    def __init__(self, session: AsyncSession, stripe_client=None):
        self.session = session
        self.catalog = PlanCatalog(session)
        self.ledger = UsageLedger(session)
        self.subscription_repo = SubscriptionRepository(session)
        self._stripe_client = stripe_client

    @property
    def stripe_client(self):
        """Lazy-load Stripe client."""
        if self._stripe_client is None:
            from app.modules.billing.stripe_client import get_stripe_client
            self._stripe_client = get_stripe_client()
        return self._stripe_client

    # ==================== Plans & Subscription ====================

    async def list_plans(self) -> list[Plan]:
        try:
            return await self.catalog.list_plans()
        except SQLAlchemyError as e:
            raise TransientStoreFailure(f"Failed to load plans: {e}") from e

    async def get_subscription_with_usage(
        self, user_id: uuid.UUID
    ) -> tuple[Optional[Subscription], Plan, list[UsageMetrics]]:
        """Subscription row (if any), the plan in effect and current usage."""
        try:
            subscription = await self.ledger.get_subscription(user_id)
            plan = await self.ledger.effective_plan(subscription)
        except SQLAlchemyError as e:
            raise TransientStoreFailure(f"Failed to load subscription: {e}") from e
        usage = await self.ledger.get_usage_summary(user_id)
        return subscription, plan, usage

    async def provision_free_subscription(self, user_id: uuid.UUID) -> bool:
        """Create the signup-time free subscription. No-op if one exists.

        Returns:
            True if a row was created
        """
        try:
            created = await self.subscription_repo.insert_if_absent(
                user_id=user_id,
                plan_id=settings.FREE_PLAN_ID,
                billing_period=BillingPeriod.MONTHLY.value,
                status=SubscriptionStatus.ACTIVE.value,
                cancel_at_period_end=False,
            )
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise TransientStoreFailure(f"Failed to provision subscription: {e}") from e

        if created:
            logger.info("Provisioned free subscription", extra={"user_id": str(user_id)})
        return created

    # ==================== Stripe Sessions ====================

    async def create_checkout_session(
        self,
        user_id: uuid.UUID,
        plan_id: str,
        billing_period: str,
        email: Optional[str] = None,
    ) -> StripeSession:
        """Create a Stripe Checkout session for a plan.

        Args:
            user_id: User ID
            plan_id: Plan to subscribe to
            billing_period: ``monthly`` or ``yearly``
            email: Prefilled for users without a Stripe customer yet

        Returns:
            StripeSession with the redirect url

        Raises:
            InvalidBillingPeriodError: If the period is not monthly/yearly
            PlanNotFoundError: If the plan is unknown or not sold for the period
            PaymentProviderError: If Stripe rejects the request
        """
        if billing_period not in VALID_BILLING_PERIODS:
            raise InvalidBillingPeriodError(billing_period)

        try:
            plan = await self.catalog.get_plan(plan_id)
            subscription = await self.subscription_repo.get_by_user_id(user_id)
        except SQLAlchemyError as e:
            raise TransientStoreFailure(f"Failed to load checkout data: {e}") from e

        price_id = plan.price_id_for(billing_period)
        if not price_id:
            raise PlanNotFoundError(
                plan_id,
                f"Plan '{plan_id}' has no {billing_period} price configured",
            )

        customer_id = subscription.stripe_customer_id if subscription else None

        session = self.stripe_client.create_checkout_session(
            price_id=price_id,
            success_url=settings.CHECKOUT_SUCCESS_URL,
            cancel_url=settings.CHECKOUT_CANCEL_URL,
            client_reference_id=str(user_id),
            metadata={
                "user_id": str(user_id),
                "plan_id": plan.id,
                "billing_period": billing_period,
            },
            customer_id=customer_id,
            customer_email=None if customer_id else email,
        )
        logger.info(
            "Checkout session created",
            extra={"user_id": str(user_id), "plan_id": plan.id, "billing_period": billing_period},
        )
        return session

    async def create_portal_session(self, user_id: uuid.UUID) -> StripeSession:
        """Create a Stripe billing portal session.

        Raises:
            NoSubscriptionError: If the user has no Stripe customer yet
        """
        try:
            subscription = await self.subscription_repo.get_by_user_id(user_id)
        except SQLAlchemyError as e:
            raise TransientStoreFailure(f"Failed to load subscription: {e}") from e
        if not subscription or not subscription.stripe_customer_id:
            raise NoSubscriptionError(user_id)

        return self.stripe_client.create_billing_portal_session(
            customer_id=subscription.stripe_customer_id,
            return_url=settings.PORTAL_RETURN_URL,
        )
