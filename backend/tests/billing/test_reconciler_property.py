"""Property-based tests for webhook reconciliation.

**Feature: stripe-reconciliation, Property 2: Idempotent, Order-Independent Apply**
**Validates: apply_event, sync_from_stripe**
"""

import asyncio
import uuid
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from hypothesis import HealthCheck, given, settings, strategies as st
from sqlalchemy.exc import OperationalError

from app.modules.billing.events import (
    CheckoutCompleted,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    SubscriptionDeleted,
    SubscriptionUpdated,
    UnknownEvent,
)
from app.modules.billing.exceptions import NoSubscriptionError, TransientStoreFailure
from app.modules.billing.models import EventOutcome
from app.modules.billing.reconciler import WebhookReconciler, can_transition
from app.modules.billing.repository import ProcessedEventRepository

from conftest import add_subscription, load_subscription, seed_default_plans

T0 = datetime(2026, 1, 1, 0, 0, 0)
PERIOD_START = datetime(2026, 1, 1)
PERIOD_END = datetime(2026, 2, 1)

db_settings = settings(
    max_examples=15,
    deadline=None,
    suppress_health_check=[HealthCheck.function_scoped_fixture],
)


def subscription_event(
    event_id: str,
    status: str,
    at: datetime,
    user_id: uuid.UUID,
    subscription_id: str = "sub_1",
    price_id: str = "price_pro_monthly",
) -> SubscriptionUpdated:
    return SubscriptionUpdated(
        event_id=event_id,
        event_type="customer.subscription.updated",
        timestamp=at,
        subscription_id=subscription_id,
        customer_id="cus_1",
        status=status,
        price_id=price_id,
        user_id=user_id,
        plan_id="pro",
        current_period_start=PERIOD_START,
        current_period_end=PERIOD_END,
    )


def checkout_event(event_id: str, at: datetime, user_id: uuid.UUID) -> CheckoutCompleted:
    return CheckoutCompleted(
        event_id=event_id,
        event_type="checkout.session.completed",
        timestamp=at,
        user_id=user_id,
        plan_id="pro",
        billing_period="monthly",
        customer_id="cus_1",
        subscription_id="sub_1",
    )


async def apply(factory, event, stripe_client=None):
    async with factory() as session:
        return await WebhookReconciler(session, stripe_client).apply_event(event)


async def processed(factory, event_id):
    async with factory() as session:
        return await ProcessedEventRepository(session).get(event_id)


@st.composite
def lifecycle_statuses(draw) -> list[str]:
    """Statuses in a valid chronological order."""
    statuses = []
    if draw(st.booleans()):
        statuses.append("trialing")
    statuses.extend(draw(st.lists(
        st.sampled_from(["active", "past_due"]), min_size=1, max_size=4
    )))
    if draw(st.booleans()):
        statuses.append("canceled")
    return statuses


class TestOrderIndependence:
    """Property tests for applying events in any arrival order.

    **Feature: stripe-reconciliation, Property 2: Order Independence**
    """

    @given(data=st.data(), statuses=lifecycle_statuses())
    @db_settings
    @pytest.mark.asyncio
    async def test_any_arrival_order_converges_to_latest_event(
        self,
        database,
        data,
        statuses: list[str],
    ) -> None:
        """*For any* permutation of lifecycle events, the final state SHALL be
        the state described by the event with the latest timestamp.
        """
        user_id = uuid.uuid4()
        events = [
            subscription_event(f"evt_{i}", status, T0 + timedelta(minutes=i), user_id)
            for i, status in enumerate(statuses)
        ]
        arrival = data.draw(st.permutations(events))

        async with database() as factory:
            await seed_default_plans(factory)
            for event in arrival:
                await apply(factory, event)

            subscription = await load_subscription(factory, user_id)

        latest = events[-1]
        assert subscription.status == latest.status
        assert subscription.last_event_id == latest.event_id
        assert subscription.last_event_at == latest.timestamp
        assert subscription.stripe_subscription_id == "sub_1"
        if latest.status == "canceled":
            assert subscription.plan_id == "free"
        else:
            assert subscription.plan_id == "pro"
            assert subscription.billing_period == "monthly"

    @given(redeliveries=st.integers(min_value=1, max_value=4))
    @db_settings
    @pytest.mark.asyncio
    async def test_redelivery_is_noop(self, database, redeliveries: int) -> None:
        """*For any* number of redeliveries, only the first SHALL be applied."""
        user_id = uuid.uuid4()
        event = checkout_event("evt_1", T0, user_id)

        async with database() as factory:
            await seed_default_plans(factory)
            first = await apply(factory, event)
            before = await load_subscription(factory, user_id)

            outcomes = [(await apply(factory, event)).outcome for _ in range(redeliveries)]
            after = await load_subscription(factory, user_id)

        assert first.outcome == EventOutcome.APPLIED
        assert outcomes == [EventOutcome.DUPLICATE] * redeliveries
        assert (after.status, after.plan_id, after.last_event_id, after.updated_at) == (
            before.status, before.plan_id, before.last_event_id, before.updated_at
        )

    @given(deliveries=st.integers(min_value=2, max_value=8))
    @db_settings
    @pytest.mark.asyncio
    async def test_concurrent_deliveries_apply_once(self, database, deliveries: int) -> None:
        """*For any* N concurrent deliveries of one event, exactly one SHALL be
        applied and the rest SHALL be duplicates.
        """
        user_id = uuid.uuid4()
        event = checkout_event("evt_concurrent", T0, user_id)

        async with database() as factory:
            await seed_default_plans(factory)
            results = await asyncio.gather(*[
                apply(factory, event) for _ in range(deliveries)
            ])
            record = await processed(factory, "evt_concurrent")
            subscription = await load_subscription(factory, user_id)

        outcomes = [r.outcome for r in results]
        assert outcomes.count(EventOutcome.APPLIED) == 1
        assert outcomes.count(EventOutcome.DUPLICATE) == deliveries - 1
        assert record is not None
        assert subscription.plan_id == "pro"
        assert subscription.last_event_id == "evt_concurrent"


class TestTransitions:
    """Allowed status transitions."""

    @pytest.mark.parametrize("from_status,to_status,allowed", [
        (None, "active", True),
        ("trialing", "active", True),
        ("active", "past_due", True),
        ("past_due", "active", True),
        ("active", "canceled", True),
        ("canceled", "active", False),
        ("active", "trialing", False),
        ("active", "incomplete", False),
    ])
    def test_can_transition(self, from_status, to_status, allowed) -> None:
        assert can_transition(from_status, to_status) is allowed


class TestReconcilerScenarios:
    """Example-based reconciliation scenarios."""

    @pytest.mark.asyncio
    async def test_checkout_activates_pro(self, session_factory) -> None:
        user_id = uuid.uuid4()
        result = await apply(session_factory, checkout_event("evt_1", T0, user_id))

        subscription = await load_subscription(session_factory, user_id)
        assert result.outcome == EventOutcome.APPLIED
        assert result.user_id == user_id
        assert subscription.status == "active"
        assert subscription.plan_id == "pro"
        assert subscription.stripe_customer_id == "cus_1"
        assert subscription.stripe_subscription_id == "sub_1"
        assert (await processed(session_factory, "evt_1")).outcome == "applied"

    @pytest.mark.asyncio
    async def test_checkout_upgrades_existing_free_row(self, session_factory) -> None:
        user_id = uuid.uuid4()
        await add_subscription(session_factory, user_id, plan_id="free", status="active")

        await apply(session_factory, checkout_event("evt_1", T0, user_id))

        subscription = await load_subscription(session_factory, user_id)
        assert subscription.plan_id == "pro"
        assert subscription.stripe_subscription_id == "sub_1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("order", [("evt_2", "evt_1"), ("evt_1", "evt_2")])
    async def test_cancellation_wins_over_older_activation(self, session_factory, order) -> None:
        user_id = uuid.uuid4()
        events = {
            "evt_1": subscription_event("evt_1", "active", T0 + timedelta(seconds=1), user_id),
            "evt_2": subscription_event("evt_2", "canceled", T0 + timedelta(seconds=2), user_id),
        }

        results = [await apply(session_factory, events[event_id]) for event_id in order]

        subscription = await load_subscription(session_factory, user_id)
        assert subscription.status == "canceled"
        assert subscription.plan_id == "free"
        if order[0] == "evt_2":
            assert results[1].outcome == EventOutcome.STALE
            assert (await processed(session_factory, "evt_1")).outcome == "stale"

    @pytest.mark.asyncio
    async def test_equal_timestamp_is_not_stale(self, session_factory) -> None:
        user_id = uuid.uuid4()
        await apply(session_factory, subscription_event("evt_1", "active", T0, user_id))

        result = await apply(session_factory, subscription_event("evt_2", "past_due", T0, user_id))

        assert result.outcome == EventOutcome.APPLIED
        assert (await load_subscription(session_factory, user_id)).status == "past_due"

    @pytest.mark.asyncio
    async def test_checkout_after_trial_keeps_trialing(self, session_factory) -> None:
        user_id = uuid.uuid4()
        await apply(session_factory, subscription_event("evt_1", "trialing", T0, user_id))

        await apply(session_factory, checkout_event("evt_2", T0 + timedelta(seconds=1), user_id))

        subscription = await load_subscription(session_factory, user_id)
        assert subscription.status == "trialing"
        assert subscription.plan_id == "pro"

    @pytest.mark.asyncio
    async def test_yearly_price_sets_billing_period(self, session_factory) -> None:
        user_id = uuid.uuid4()
        event = subscription_event("evt_1", "active", T0, user_id, price_id="price_pro_yearly")

        await apply(session_factory, event)

        subscription = await load_subscription(session_factory, user_id)
        assert subscription.plan_id == "pro"
        assert subscription.billing_period == "yearly"
        assert subscription.current_period_start == PERIOD_START
        assert subscription.current_period_end == PERIOD_END

    @pytest.mark.asyncio
    async def test_deleted_downgrades_to_free(self, session_factory) -> None:
        user_id = uuid.uuid4()
        await apply(session_factory, checkout_event("evt_1", T0, user_id))

        result = await apply(session_factory, SubscriptionDeleted(
            event_id="evt_2",
            event_type="customer.subscription.deleted",
            timestamp=T0 + timedelta(days=3),
            subscription_id="sub_1",
            customer_id="cus_1",
        ))

        subscription = await load_subscription(session_factory, user_id)
        assert result.outcome == EventOutcome.APPLIED
        assert subscription.status == "canceled"
        assert subscription.plan_id == "free"
        assert subscription.canceled_at == T0 + timedelta(days=3)

    @pytest.mark.asyncio
    async def test_canceled_is_terminal_for_same_subscription(self, session_factory) -> None:
        user_id = uuid.uuid4()
        await apply(session_factory, subscription_event("evt_1", "canceled", T0, user_id))

        result = await apply(
            session_factory,
            subscription_event("evt_2", "active", T0 + timedelta(seconds=1), user_id),
        )

        assert result.outcome == EventOutcome.IGNORED
        assert (await load_subscription(session_factory, user_id)).status == "canceled"

    @pytest.mark.asyncio
    async def test_new_subscription_revives_canceled_row(self, session_factory) -> None:
        user_id = uuid.uuid4()
        await apply(session_factory, subscription_event("evt_1", "canceled", T0, user_id))

        result = await apply(session_factory, subscription_event(
            "evt_2", "active", T0 + timedelta(days=1), user_id, subscription_id="sub_2"
        ))

        subscription = await load_subscription(session_factory, user_id)
        assert result.outcome == EventOutcome.APPLIED
        assert subscription.status == "active"
        assert subscription.plan_id == "pro"
        assert subscription.stripe_subscription_id == "sub_2"
        assert subscription.canceled_at is None

    @pytest.mark.asyncio
    async def test_event_for_other_live_subscription_is_ignored(self, session_factory) -> None:
        user_id = uuid.uuid4()
        await apply(session_factory, checkout_event("evt_1", T0, user_id))

        result = await apply(session_factory, subscription_event(
            "evt_2", "past_due", T0 + timedelta(seconds=1), user_id, subscription_id="sub_2"
        ))

        subscription = await load_subscription(session_factory, user_id)
        assert result.outcome == EventOutcome.IGNORED
        assert subscription.status == "active"
        assert subscription.stripe_subscription_id == "sub_1"

    @pytest.mark.asyncio
    async def test_invoice_failure_then_success(self, session_factory) -> None:
        user_id = uuid.uuid4()
        await apply(session_factory, checkout_event("evt_1", T0, user_id))

        failed = await apply(session_factory, InvoicePaymentFailed(
            event_id="evt_2",
            event_type="invoice.payment_failed",
            timestamp=T0 + timedelta(days=30),
            invoice_id="in_1",
            subscription_id="sub_1",
        ))
        assert failed.outcome == EventOutcome.APPLIED
        assert (await load_subscription(session_factory, user_id)).status == "past_due"

        await apply(session_factory, InvoicePaymentSucceeded(
            event_id="evt_3",
            event_type="invoice.payment_succeeded",
            timestamp=T0 + timedelta(days=31),
            invoice_id="in_1",
            subscription_id="sub_1",
            period_start=PERIOD_END,
            period_end=datetime(2026, 3, 1),
        ))

        subscription = await load_subscription(session_factory, user_id)
        assert subscription.status == "active"
        assert subscription.current_period_start == PERIOD_END
        assert subscription.current_period_end == datetime(2026, 3, 1)

    @pytest.mark.asyncio
    async def test_unmatched_event_is_recorded(self, session_factory) -> None:
        result = await apply(session_factory, SubscriptionDeleted(
            event_id="evt_404",
            event_type="customer.subscription.deleted",
            timestamp=T0,
            subscription_id="sub_missing",
        ))

        assert result.outcome == EventOutcome.UNMATCHED
        assert (await processed(session_factory, "evt_404")).outcome == "unmatched"

    @pytest.mark.asyncio
    async def test_unknown_event_is_ignored(self, session_factory) -> None:
        result = await apply(
            session_factory, UnknownEvent("evt_x", "customer.created", T0)
        )

        assert result.outcome == EventOutcome.IGNORED
        assert (await processed(session_factory, "evt_x")).outcome == "ignored"

    @pytest.mark.asyncio
    async def test_store_failure_rolls_back_dedup_record(self, session_factory) -> None:
        user_id = uuid.uuid4()
        event = checkout_event("evt_1", T0, user_id)

        async with session_factory() as session:
            reconciler = WebhookReconciler(session)
            failure = OperationalError("UPDATE processed_events", {}, Exception("disk I/O error"))
            with patch.object(
                reconciler.event_repo, "set_outcome", AsyncMock(side_effect=failure)
            ):
                with pytest.raises(TransientStoreFailure):
                    await reconciler.apply_event(event)

        assert await processed(session_factory, "evt_1") is None
        assert await load_subscription(session_factory, user_id) is None

        retried = await apply(session_factory, event)
        assert retried.outcome == EventOutcome.APPLIED


class TestSyncFromStripe:
    """Pulling the latest Stripe subscription on demand."""

    @pytest.mark.asyncio
    async def test_sync_applies_latest_subscription(self, session_factory) -> None:
        user_id = uuid.uuid4()
        await add_subscription(
            session_factory, user_id, plan_id="free", status="active",
            stripe_customer_id="cus_1",
        )
        stripe_client = MagicMock()
        stripe_client.get_latest_subscription.return_value = {
            "id": "sub_9",
            "customer": "cus_1",
            "status": "active",
            "cancel_at_period_end": False,
            "current_period_start": 1767225600,
            "current_period_end": 1798761600,
            "items": {"data": [{"price": {"id": "price_pro_yearly"}}]},
            "metadata": {},
        }

        async with session_factory() as session:
            result = await WebhookReconciler(session, stripe_client).sync_from_stripe(user_id)

        subscription = await load_subscription(session_factory, user_id)
        stripe_client.get_latest_subscription.assert_called_once_with("cus_1")
        assert result.outcome == EventOutcome.APPLIED
        assert result.event_id.startswith("sync:sub_9:")
        assert subscription.plan_id == "pro"
        assert subscription.billing_period == "yearly"
        assert subscription.stripe_subscription_id == "sub_9"
        assert subscription.current_period_start == datetime(2026, 1, 1)

    @pytest.mark.asyncio
    async def test_sync_without_customer_raises(self, session_factory) -> None:
        user_id = uuid.uuid4()
        await add_subscription(session_factory, user_id, plan_id="free")

        async with session_factory() as session:
            with pytest.raises(NoSubscriptionError):
                await WebhookReconciler(session, MagicMock()).sync_from_stripe(user_id)

    @pytest.mark.asyncio
    async def test_sync_without_stripe_subscription_raises(self, session_factory) -> None:
        user_id = uuid.uuid4()
        await add_subscription(
            session_factory, user_id, plan_id="free", stripe_customer_id="cus_1"
        )
        stripe_client = MagicMock()
        stripe_client.get_latest_subscription.return_value = None

        async with session_factory() as session:
            with pytest.raises(NoSubscriptionError):
                await WebhookReconciler(session, stripe_client).sync_from_stripe(user_id)
