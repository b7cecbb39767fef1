"""Repositories for billing database operations.

Counter and dedup writes are single conditional statements so that
concurrent requests serialize in the database rather than in the process.
Repositories never commit; the calling service owns the transaction.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update, or_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.billing.models import (
    Plan,
    Subscription,
    UsageCounter,
    ProcessedEvent,
)


def insert_for(session: AsyncSession):
    """Dialect-specific ``insert`` supporting ON CONFLICT DO NOTHING."""
    if session.get_bind().dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


class PlanRepository:
    """Repository for plan operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_all_active(self) -> list[Plan]:
        """Get active plans by ascending monthly price, then id."""
        result = await self.session.execute(
            select(Plan)
            .where(Plan.is_active.is_(True))
            .order_by(Plan.price_monthly, Plan.id)
        )
        return list(result.scalars().all())

    async def get_by_id(self, plan_id: str) -> Optional[Plan]:
        """Get plan by ID."""
        result = await self.session.execute(
            select(Plan).where(Plan.id == plan_id)
        )
        return result.scalar_one_or_none()

    async def get_by_price_id(self, price_id: str) -> Optional[Plan]:
        """Get the plan that sells the given Stripe price."""
        result = await self.session.execute(
            select(Plan).where(
                or_(
                    Plan.stripe_price_id_monthly == price_id,
                    Plan.stripe_price_id_yearly == price_id,
                )
            )
        )
        return result.scalars().first()

    async def insert_if_absent(self, **values) -> bool:
        """Insert a plan unless one with the same id exists."""
        stmt = (
            insert_for(self.session)(Plan)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["id"])
            .returning(Plan.id)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None


class SubscriptionRepository:
    """Repository for subscription operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_user_id(
        self, user_id: uuid.UUID, for_update: bool = False
    ) -> Optional[Subscription]:
        """Get subscription by user ID."""
        stmt = select(Subscription).where(Subscription.user_id == user_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_stripe_subscription_id(
        self, stripe_subscription_id: str, for_update: bool = False
    ) -> Optional[Subscription]:
        """Get subscription by Stripe subscription ID."""
        stmt = select(Subscription).where(
            Subscription.stripe_subscription_id == stripe_subscription_id
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_stripe_customer_id(
        self, stripe_customer_id: str, for_update: bool = False
    ) -> Optional[Subscription]:
        """Get subscription by Stripe customer ID."""
        stmt = select(Subscription).where(
            Subscription.stripe_customer_id == stripe_customer_id
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def insert_if_absent(self, **values) -> bool:
        """Insert a subscription unless the user already has one."""
        values.setdefault("id", uuid.uuid4())
        stmt = (
            insert_for(self.session)(Subscription)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["user_id"])
            .returning(Subscription.id)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def add(self, subscription: Subscription) -> Subscription:
        """Stage a new subscription within the current transaction."""
        self.session.add(subscription)
        await self.session.flush()
        return subscription


class UsageRepository:
    """Repository for usage counters."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def ensure_counter(
        self,
        user_id: uuid.UUID,
        metric: str,
        period_key: str,
        period_start: datetime,
        period_end: datetime,
        now: datetime,
    ) -> None:
        """Create the zero counter for a key if it does not exist yet."""
        stmt = (
            insert_for(self.session)(UsageCounter)
            .values(
                id=uuid.uuid4(),
                user_id=user_id,
                metric=metric,
                period_key=period_key,
                period_start=period_start,
                period_end=period_end,
                count=0,
                updated_at=now,
            )
            .on_conflict_do_nothing(
                index_elements=["user_id", "metric", "period_key"]
            )
        )
        await self.session.execute(stmt)

    async def try_increment(
        self,
        user_id: uuid.UUID,
        metric: str,
        period_key: str,
        amount: int,
        limit: int,
        now: datetime,
    ) -> Optional[int]:
        """Add ``amount`` if the result stays within ``limit``.

        Returns the new count, or None when the increment would exceed the
        limit (nothing is written in that case).
        """
        stmt = (
            update(UsageCounter)
            .where(
                UsageCounter.user_id == user_id,
                UsageCounter.metric == metric,
                UsageCounter.period_key == period_key,
                UsageCounter.count + amount <= limit,
            )
            .values(count=UsageCounter.count + amount, updated_at=now)
            .returning(UsageCounter.count)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def try_decrement(
        self,
        user_id: uuid.UUID,
        metric: str,
        period_key: str,
        amount: int,
        now: datetime,
    ) -> Optional[int]:
        """Subtract ``amount`` unless the count would drop below zero."""
        stmt = (
            update(UsageCounter)
            .where(
                UsageCounter.user_id == user_id,
                UsageCounter.metric == metric,
                UsageCounter.period_key == period_key,
                UsageCounter.count >= amount,
            )
            .values(count=UsageCounter.count - amount, updated_at=now)
            .returning(UsageCounter.count)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_count(
        self, user_id: uuid.UUID, metric: str, period_key: str
    ) -> int:
        """Count for a key, 0 when no counter exists."""
        result = await self.session.execute(
            select(UsageCounter.count).where(
                UsageCounter.user_id == user_id,
                UsageCounter.metric == metric,
                UsageCounter.period_key == period_key,
            )
        )
        return result.scalar_one_or_none() or 0

    async def get_latest_counters(self, user_id: uuid.UUID) -> list[UsageCounter]:
        """Most recent counter of each metric the user has used."""
        result = await self.session.execute(
            select(UsageCounter)
            .where(UsageCounter.user_id == user_id)
            .order_by(UsageCounter.metric, UsageCounter.period_start.desc())
        )
        latest: dict[str, UsageCounter] = {}
        for counter in result.scalars().all():
            latest.setdefault(counter.metric, counter)
        return list(latest.values())


class ProcessedEventRepository:
    """Repository for the webhook dedup table."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def claim(self, event_id: str, event_type: str, now: datetime) -> bool:
        """Record an event id. Returns False if it was already recorded."""
        stmt = (
            insert_for(self.session)(ProcessedEvent)
            .values(event_id=event_id, event_type=event_type, processed_at=now)
            .on_conflict_do_nothing(index_elements=["event_id"])
            .returning(ProcessedEvent.event_id)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def set_outcome(self, event_id: str, outcome: str) -> None:
        """Store how a claimed event was handled."""
        await self.session.execute(
            update(ProcessedEvent)
            .where(ProcessedEvent.event_id == event_id)
            .values(outcome=outcome)
            .execution_options(synchronize_session=False)
        )

    async def get(self, event_id: str) -> Optional[ProcessedEvent]:
        """Get a processed event by id."""
        result = await self.session.execute(
            select(ProcessedEvent).where(ProcessedEvent.event_id == event_id)
        )
        return result.scalar_one_or_none()
