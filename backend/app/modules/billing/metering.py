"""Usage ledger: period keys, usage reads and lazy period rollover.

Counters are never swept on a timer. The period a counter belongs to is
derived from the subscription on every access, so a rolled-over window simply
reads as a counter that does not exist yet.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.config import settings
from app.modules.billing.exceptions import TransientStoreFailure
from app.modules.billing.models import Plan, Subscription, UNLIMITED
from app.modules.billing.plans import FREE_PLAN, PlanCatalog, is_static_limit, limit_for
from app.modules.billing.repository import SubscriptionRepository, UsageRepository

logger = logging.getLogger(__name__)


# Warning thresholds in percent of the limit
WARNING_THRESHOLDS = [50, 75, 90]


@dataclass(frozen=True)
class PeriodKey:
    """A usage window [start, end) and its key."""
    key: str
    start: datetime
    end: datetime


@dataclass
class UsageMetrics:
    """Usage of one metric in the current period."""
    metric: str
    used: int
    limit: int
    remaining: int
    percent_used: float
    is_unlimited: bool
    warning_threshold: Optional[int]
    period: PeriodKey


def _window(start: datetime, end: datetime) -> PeriodKey:
    return PeriodKey(key=start.isoformat(), start=start, end=end)


# Single window for counters that never reset
LIFETIME_PERIOD = PeriodKey(
    key="lifetime",
    start=datetime(1970, 1, 1),
    end=datetime(9999, 12, 31),
)


def calendar_month_window(now: datetime) -> PeriodKey:
    """The UTC calendar month containing ``now``."""
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return _window(start, end)


def day_window(now: datetime) -> PeriodKey:
    """The UTC day containing ``now``."""
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return _window(start, start + timedelta(days=1))


def is_daily_metric(metric: Optional[str]) -> bool:
    """Metrics named ``...PerDay`` reset every UTC day."""
    return bool(metric) and metric.endswith("PerDay")


def is_lifetime_metric(metric: Optional[str]) -> bool:
    """``max...`` caps count what a user holds (tasks, workspaces) and never roll."""
    return bool(metric) and metric.startswith("max") and not is_daily_metric(metric)


def current_period_key(
    subscription: Optional[Subscription],
    now: Optional[datetime] = None,
    metric: Optional[str] = None,
) -> PeriodKey:
    """Derive the usage window for a subscription at ``now``.

    Paid subscriptions use their billing window. If ``now`` is already past
    the stored end (the renewal webhook has not arrived yet) the window is
    moved forward by whole periods of the same length. Users without a paid
    subscription use the calendar month. ``max...`` caps always use
    ``LIFETIME_PERIOD`` and ``...PerDay`` metrics the UTC day.
    """
    now = now or utcnow()
    if is_lifetime_metric(metric):
        return LIFETIME_PERIOD
    if is_daily_metric(metric):
        return day_window(now)

    if (
        subscription is None
        or not subscription.is_paid()
        or subscription.current_period_start is None
        or subscription.current_period_end is None
        or subscription.current_period_end <= subscription.current_period_start
    ):
        return calendar_month_window(now)

    start = subscription.current_period_start
    end = subscription.current_period_end
    if now >= end:
        length = end - start
        periods = (now - start) // length
        start = start + length * periods
        end = start + length
    return _window(start, end)


def calculate_usage_percent(used: float, limit: float) -> float:
    """Calculate usage as percentage of limit.

    Args:
        used: Amount used
        limit: Limit value (-1 for unlimited)

    Returns:
        Usage percentage (0.0 for unlimited)
    """
    if limit == UNLIMITED:
        return 0.0
    if limit <= 0:
        return 100.0
    return (used / limit) * 100


def get_warning_threshold(usage_percent: float) -> Optional[int]:
    """Highest warning threshold reached, or None."""
    for threshold in reversed(WARNING_THRESHOLDS):
        if usage_percent >= threshold:
            return threshold
    return None


class UsageLedger:
    """Per-user, per-period, per-metric usage counters."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.subscription_repo = SubscriptionRepository(session)
        self.usage_repo = UsageRepository(session)
        self.catalog = PlanCatalog(session)

    async def get_subscription(self, user_id: uuid.UUID) -> Optional[Subscription]:
        return await self.subscription_repo.get_by_user_id(user_id)

    async def effective_plan(self, subscription: Optional[Subscription]) -> Plan:
        """Plan whose limits apply. Canceled, incomplete or missing means free."""
        if subscription is not None and subscription.is_paid():
            plan = await self.catalog.find_plan(subscription.plan_id)
            if plan is not None:
                return plan
            logger.warning(
                "Subscription references unknown plan, using free limits",
                extra={"user_id": str(subscription.user_id), "plan_id": subscription.plan_id},
            )
        return await self.catalog.find_plan(settings.FREE_PLAN_ID) or FREE_PLAN

    async def get_usage_in_period(
        self,
        user_id: uuid.UUID,
        metric: str,
        now: Optional[datetime] = None,
    ) -> tuple[int, PeriodKey]:
        """Count for the current period together with that period."""
        try:
            subscription = await self.get_subscription(user_id)
            period = current_period_key(subscription, now, metric)
            used = await self.usage_repo.get_count(user_id, metric, period.key)
        except SQLAlchemyError as e:
            raise TransientStoreFailure(f"Usage read failed: {e}") from e
        return used, period

    async def get_usage(
        self,
        user_id: uuid.UUID,
        metric: str,
        now: Optional[datetime] = None,
    ) -> int:
        """Count for the current period, 0 if nothing was recorded yet."""
        used, _ = await self.get_usage_in_period(user_id, metric, now)
        return used

    async def reset_if_period_rolled(
        self,
        user_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> bool:
        """Open fresh counters when the latest ones belong to a past period.

        Old counters are left untouched and lifetime caps never roll.
        Returns True if any metric rolled.
        """
        now = now or utcnow()
        rolled = []
        try:
            subscription = await self.get_subscription(user_id)
            for counter in await self.usage_repo.get_latest_counters(user_id):
                if is_lifetime_metric(counter.metric):
                    continue
                period = current_period_key(subscription, now, counter.metric)
                if counter.period_key == period.key or counter.period_start >= period.start:
                    continue
                await self.usage_repo.ensure_counter(
                    user_id, counter.metric, period.key, period.start, period.end, now
                )
                rolled.append(counter.metric)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise TransientStoreFailure(f"Usage rollover failed: {e}") from e

        if rolled:
            logger.info(
                "Usage period rolled over",
                extra={"user_id": str(user_id), "metrics": rolled},
            )
        return bool(rolled)

    async def get_usage_summary(
        self,
        user_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> list[UsageMetrics]:
        """Usage against every limit of the user's effective plan.

        Static caps such as ``maxFileSize`` are reported with zero usage.
        """
        now = now or utcnow()
        summary = []
        try:
            subscription = await self.get_subscription(user_id)
            plan = await self.effective_plan(subscription)
            for metric in sorted((plan.limits or {}).keys()):
                limit = limit_for(plan, metric)
                period = current_period_key(subscription, now, metric)
                if is_static_limit(metric):
                    used = 0
                else:
                    used = await self.usage_repo.get_count(user_id, metric, period.key)
                percent = calculate_usage_percent(used, limit)
                is_unlimited = limit == UNLIMITED
                summary.append(UsageMetrics(
                    metric=metric,
                    used=used,
                    limit=limit,
                    remaining=-1 if is_unlimited else max(limit - used, 0),
                    percent_used=round(percent, 2),
                    is_unlimited=is_unlimited,
                    warning_threshold=None if is_unlimited else get_warning_threshold(percent),
                    period=period,
                ))
        except SQLAlchemyError as e:
            raise TransientStoreFailure(f"Usage read failed: {e}") from e
        return summary
