"""Webhook reconciler: folds Stripe lifecycle events into local subscriptions.

Each event is applied in one transaction whose first statement claims the
event id in ``processed_events``. A second delivery of the same id finds the
claim and becomes a no-op. Events older than the last applied one are
recorded but not applied, so arrival order does not matter.
"""

import dataclasses
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow, to_timestamp
from app.core.config import settings
from app.core.logging import log_error, log_info, log_warning
from app.modules.billing.events import (
    CheckoutCompleted,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    SubscriptionDeleted,
    SubscriptionUpdated,
    UnknownEvent,
    WebhookEvent,
    map_stripe_status,
    subscription_from_object,
)
from app.modules.billing.exceptions import NoSubscriptionError, TransientStoreFailure
from app.modules.billing.models import (
    BillingPeriod,
    EventOutcome,
    Subscription,
    SubscriptionStatus,
)
from app.modules.billing.plans import PlanCatalog
from app.modules.billing.repository import (
    ProcessedEventRepository,
    SubscriptionRepository,
)

logger = logging.getLogger(__name__)


TRIALING = SubscriptionStatus.TRIALING.value
ACTIVE = SubscriptionStatus.ACTIVE.value
PAST_DUE = SubscriptionStatus.PAST_DUE.value
CANCELED = SubscriptionStatus.CANCELED.value
INCOMPLETE = SubscriptionStatus.INCOMPLETE.value

# Allowed status transitions; None is "no Stripe lifecycle yet"
ALLOWED_TRANSITIONS: dict[Optional[str], frozenset[str]] = {
    None: frozenset({TRIALING, ACTIVE, PAST_DUE, INCOMPLETE, CANCELED}),
    INCOMPLETE: frozenset({INCOMPLETE, TRIALING, ACTIVE, PAST_DUE, CANCELED}),
    TRIALING: frozenset({TRIALING, ACTIVE, PAST_DUE, CANCELED}),
    ACTIVE: frozenset({ACTIVE, PAST_DUE, CANCELED}),
    PAST_DUE: frozenset({PAST_DUE, ACTIVE, CANCELED}),
    CANCELED: frozenset({CANCELED}),
}

# Marker for events that belong to a different Stripe subscription
_OTHER_LIFECYCLE = "other"


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of applying one webhook event."""
    outcome: EventOutcome
    event_id: str
    user_id: Optional[uuid.UUID] = None
    detail: Optional[str] = None


def can_transition(from_status: Optional[str], to_status: str) -> bool:
    """Whether the lifecycle allows moving from one status to another."""
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


class WebhookReconciler:
    """Applies webhook events to the subscription table."""

    def __init__(self, session: AsyncSession, stripe_client=None):
        self.session = session
        self.catalog = PlanCatalog(session)
        self.subscription_repo = SubscriptionRepository(session)
        self.event_repo = ProcessedEventRepository(session)
        self._stripe_client = stripe_client

    @property
    def stripe_client(self):
        """Lazy-load Stripe client."""
        if self._stripe_client is None:
            from app.modules.billing.stripe_client import get_stripe_client
            self._stripe_client = get_stripe_client()
        return self._stripe_client

    async def apply_event(self, event: WebhookEvent) -> ApplyResult:
        """Apply an already verified event exactly once.

        Returns:
            ApplyResult with outcome applied, duplicate, stale, ignored or
            unmatched; all of them acknowledge the delivery

        Raises:
            TransientStoreFailure: The transaction was rolled back, including
                the dedup record, so a redelivery will be processed again
        """
        try:
            claimed = await self.event_repo.claim(
                event.event_id, event.event_type, utcnow()
            )
            if not claimed:
                await self.session.rollback()
                result = ApplyResult(EventOutcome.DUPLICATE, event.event_id)
            else:
                result = await self._apply(event)
                await self.event_repo.set_outcome(event.event_id, result.outcome.value)
                await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            log_error(
                logger,
                "Webhook apply failed, rolled back",
                e,
                event_id=event.event_id,
                event_type=event.event_type,
            )
            raise TransientStoreFailure(f"Failed to apply event {event.event_id}: {e}") from e

        self._log_outcome(event, result)
        return result

    async def _apply(self, event: WebhookEvent) -> ApplyResult:
        if isinstance(event, UnknownEvent):
            return ApplyResult(EventOutcome.IGNORED, event.event_id, detail="unhandled event type")

        subscription = await self._resolve_subscription(event)
        user_id = subscription.user_id if subscription else getattr(event, "user_id", None)

        if subscription is None and (
            user_id is None or not isinstance(event, (CheckoutCompleted, SubscriptionUpdated))
        ):
            return ApplyResult(EventOutcome.UNMATCHED, event.event_id, detail="no subscription")

        if (
            subscription is not None
            and subscription.last_event_at is not None
            and subscription.last_event_at > event.timestamp
        ):
            return ApplyResult(EventOutcome.STALE, event.event_id, user_id)

        from_status = self._lifecycle_status(subscription, event)
        if from_status == _OTHER_LIFECYCLE:
            return ApplyResult(
                EventOutcome.IGNORED, event.event_id, user_id,
                detail="event for a different Stripe subscription",
            )

        to_status = self._target_status(event, from_status)
        if to_status is None or not can_transition(from_status, to_status):
            return ApplyResult(
                EventOutcome.IGNORED, event.event_id, user_id,
                detail=f"transition {from_status} -> {to_status} not allowed",
            )

        if subscription is None:
            subscription = Subscription(
                user_id=user_id,
                plan_id=settings.FREE_PLAN_ID,
                billing_period=BillingPeriod.MONTHLY.value,
                cancel_at_period_end=False,
            )
            await self.subscription_repo.add(subscription)

        new_lifecycle = from_status is None
        subscription.status = to_status
        await self._mutate(subscription, event, new_lifecycle)

        subscription.last_event_id = event.event_id
        subscription.last_event_at = event.timestamp
        await self.session.flush()
        return ApplyResult(EventOutcome.APPLIED, event.event_id, subscription.user_id)

    async def _resolve_subscription(self, event: WebhookEvent) -> Optional[Subscription]:
        """Find the row an event targets, locking it for the transaction."""
        subscription_id = getattr(event, "subscription_id", None)
        user_id = getattr(event, "user_id", None)
        customer_id = getattr(event, "customer_id", None)

        subscription = None
        if subscription_id:
            subscription = await self.subscription_repo.get_by_stripe_subscription_id(
                subscription_id, for_update=True
            )
        if subscription is None and user_id:
            subscription = await self.subscription_repo.get_by_user_id(
                user_id, for_update=True
            )
        if subscription is None and customer_id:
            subscription = await self.subscription_repo.get_by_stripe_customer_id(
                customer_id, for_update=True
            )
        return subscription

    @staticmethod
    def _lifecycle_status(
        subscription: Optional[Subscription], event: WebhookEvent
    ) -> Optional[str]:
        """Status the transition starts from.

        A row without a Stripe subscription, or a canceled row receiving a
        different Stripe subscription, starts a new lifecycle (None). A
        checkout for a different subscription replaces the current one.
        """
        if subscription is None or subscription.stripe_subscription_id is None:
            return None
        subscription_id = getattr(event, "subscription_id", None)
        if subscription_id and subscription_id != subscription.stripe_subscription_id:
            if isinstance(event, CheckoutCompleted) or subscription.status == CANCELED:
                return None
            return _OTHER_LIFECYCLE
        return subscription.status

    @staticmethod
    def _target_status(event: WebhookEvent, from_status: Optional[str]) -> Optional[str]:
        if isinstance(event, CheckoutCompleted):
            # A subscription.created/updated may have arrived first
            if from_status in (TRIALING, ACTIVE, PAST_DUE):
                return from_status
            return ACTIVE
        if isinstance(event, SubscriptionUpdated):
            return map_stripe_status(event.status)
        if isinstance(event, SubscriptionDeleted):
            return CANCELED
        if isinstance(event, InvoicePaymentFailed):
            return PAST_DUE if from_status is not None else None
        if isinstance(event, InvoicePaymentSucceeded):
            if from_status in (PAST_DUE, INCOMPLETE):
                return ACTIVE
            if from_status in (TRIALING, ACTIVE):
                return from_status
            return None
        return None

    async def _mutate(
        self,
        subscription: Subscription,
        event: WebhookEvent,
        new_lifecycle: bool,
    ) -> None:
        if new_lifecycle:
            subscription.cancel_at_period_end = False
            subscription.canceled_at = None
            subscription.trial_end = None

        if isinstance(event, CheckoutCompleted):
            plan = await self.catalog.find_plan(event.plan_id)
            if plan is not None:
                subscription.plan_id = plan.id
            else:
                log_warning(
                    logger,
                    "Checkout completed with unknown plan",
                    event_id=event.event_id,
                    plan_id=event.plan_id,
                )
            if event.billing_period in (BillingPeriod.MONTHLY.value, BillingPeriod.YEARLY.value):
                subscription.billing_period = event.billing_period
            self._set_stripe_ids(subscription, event.customer_id, event.subscription_id)

        elif isinstance(event, SubscriptionUpdated):
            self._set_stripe_ids(subscription, event.customer_id, event.subscription_id)
            if subscription.status == CANCELED:
                self._downgrade(subscription, event.canceled_at or event.timestamp)
            else:
                resolved = await self.catalog.get_plan_by_price_id(event.price_id)
                if resolved is not None:
                    plan, period = resolved
                    subscription.plan_id = plan.id
                    subscription.billing_period = period.value
                else:
                    plan = await self.catalog.find_plan(event.plan_id)
                    if plan is not None:
                        subscription.plan_id = plan.id
                subscription.cancel_at_period_end = event.cancel_at_period_end
                subscription.canceled_at = event.canceled_at
            subscription.trial_end = event.trial_end
            self._set_period(subscription, event.current_period_start, event.current_period_end)

        elif isinstance(event, SubscriptionDeleted):
            self._downgrade(subscription, event.canceled_at or event.timestamp)

        elif isinstance(event, InvoicePaymentSucceeded):
            self._set_period(subscription, event.period_start, event.period_end)

    @staticmethod
    def _downgrade(subscription: Subscription, canceled_at: datetime) -> None:
        subscription.plan_id = settings.FREE_PLAN_ID
        subscription.cancel_at_period_end = False
        subscription.canceled_at = canceled_at

    @staticmethod
    def _set_stripe_ids(
        subscription: Subscription,
        customer_id: Optional[str],
        subscription_id: Optional[str],
    ) -> None:
        if customer_id:
            subscription.stripe_customer_id = customer_id
        if subscription_id:
            subscription.stripe_subscription_id = subscription_id

    @staticmethod
    def _set_period(
        subscription: Subscription,
        start: Optional[datetime],
        end: Optional[datetime],
    ) -> None:
        if start is None or end is None:
            return
        if end < start:
            log_warning(
                logger,
                "Ignoring billing period that ends before it starts",
                user_id=str(subscription.user_id),
                period_start=start.isoformat(),
                period_end=end.isoformat(),
            )
            return
        subscription.current_period_start = start
        subscription.current_period_end = end

    def _log_outcome(self, event: WebhookEvent, result: ApplyResult) -> None:
        fields = {
            "event_id": event.event_id,
            "event_type": event.event_type,
            "outcome": result.outcome.value,
            "user_id": str(result.user_id) if result.user_id else None,
            "detail": result.detail,
        }
        if result.outcome == EventOutcome.UNMATCHED:
            log_warning(logger, "Webhook event matched no subscription", **fields)
        else:
            log_info(logger, "Webhook event processed", **fields)

    async def sync_from_stripe(self, user_id: uuid.UUID) -> ApplyResult:
        """Pull the customer's latest Stripe subscription and apply it.

        The snapshot goes through ``apply_event`` like any webhook, stamped
        with the current time so that older deliveries arriving later are
        treated as stale.

        Raises:
            NoSubscriptionError: If the user has no Stripe customer or the
                customer has no subscriptions
            TransientStoreFailure: If the store failed
        """
        try:
            subscription = await self.subscription_repo.get_by_user_id(user_id)
        except SQLAlchemyError as e:
            raise TransientStoreFailure(f"Failed to load subscription: {e}") from e
        if subscription is None or not subscription.stripe_customer_id:
            raise NoSubscriptionError(user_id)

        stripe_subscription = self.stripe_client.get_latest_subscription(
            subscription.stripe_customer_id
        )
        if stripe_subscription is None:
            raise NoSubscriptionError(user_id)

        now = utcnow()
        event = subscription_from_object(
            stripe_subscription,
            event_id=f"sync:{stripe_subscription.get('id')}:{to_timestamp(now)}",
            event_type="customer.subscription.updated",
            timestamp=now,
        )
        if event.user_id is None:
            event = dataclasses.replace(event, user_id=user_id)
        return await self.apply_event(event)
