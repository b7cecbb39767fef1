"""Limit enforcement with atomic reservation.

Checking a limit and consuming a unit happen in one conditional UPDATE, so
two concurrent requests can never both take the last remaining unit.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.logging import log_error
from app.modules.billing.exceptions import (
    LimitExceededError,
    NotAuthenticatedError,
    StoreInvariantViolation,
    TransientStoreFailure,
)
from app.modules.billing.metering import UsageLedger, current_period_key
from app.modules.billing.models import UNLIMITED
from app.modules.billing.plans import is_static_limit, limit_for
from app.modules.billing.repository import UsageRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reservation:
    """Result of ``check_and_reserve``.

    ``current`` is the count after the reservation when allowed, or the
    count observed when denied. Nothing is written on denial.
    """
    allowed: bool
    current: int
    limit: int
    user_id: uuid.UUID
    metric: str
    amount: int
    period_key: str
    reason: Optional[str] = None
    counted: bool = True

    @property
    def is_unlimited(self) -> bool:
        return self.limit == UNLIMITED


def denial_reason(metric: str, limit: int) -> str:
    return (
        f"You've reached your {metric} limit of {limit}. "
        "Upgrade to Pro for unlimited access."
    )


class LimitEnforcer:
    """The single gate for usage-incrementing actions."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.ledger = UsageLedger(session)
        self.usage_repo = UsageRepository(session)

    async def check_and_reserve(
        self,
        user_id: uuid.UUID,
        metric: str,
        amount: int = 1,
        now: Optional[datetime] = None,
    ) -> Reservation:
        """Reserve ``amount`` units of ``metric`` if the plan allows it.

        Args:
            user_id: User making the request
            metric: Free-form metric name, e.g. ``jarvisConversationsPerMonth``
            amount: Units to consume, or the requested value for a static cap
                such as ``maxFileSize``
            now: Clock override

        Returns:
            Reservation; ``allowed`` is False when the limit would be exceeded

        Raises:
            NotAuthenticatedError: If there is no user context
            ValueError: If amount is not positive
            TransientStoreFailure: If the store failed; nothing was written
        """
        if user_id is None:
            raise NotAuthenticatedError()
        if amount < 1:
            raise ValueError("amount must be a positive integer")
        now = now or utcnow()

        try:
            subscription = await self.ledger.get_subscription(user_id)
            plan = await self.ledger.effective_plan(subscription)
            limit = limit_for(plan, metric)
            period = current_period_key(subscription, now, metric)

            if limit == UNLIMITED:
                current = await self.usage_repo.get_count(user_id, metric, period.key)
                return Reservation(
                    allowed=True,
                    current=current,
                    limit=UNLIMITED,
                    user_id=user_id,
                    metric=metric,
                    amount=amount,
                    period_key=period.key,
                    counted=False,
                )

            if is_static_limit(metric):
                return self._check_static(user_id, metric, amount, limit, period.key)

            await self.usage_repo.ensure_counter(
                user_id, metric, period.key, period.start, period.end, now
            )
            new_count = await self.usage_repo.try_increment(
                user_id, metric, period.key, amount, limit, now
            )
            if new_count is None:
                observed = await self.usage_repo.get_count(user_id, metric, period.key)
                await self.session.rollback()
            else:
                await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            log_error(logger, "Reservation failed", e, user_id=str(user_id), metric=metric)
            raise TransientStoreFailure(f"Reservation failed: {e}") from e

        if new_count is None:
            logger.info(
                "Reservation denied",
                extra={
                    "user_id": str(user_id),
                    "metric": metric,
                    "current": observed,
                    "limit": limit,
                },
            )
            return Reservation(
                allowed=False,
                current=observed,
                limit=limit,
                user_id=user_id,
                metric=metric,
                amount=amount,
                period_key=period.key,
                reason=denial_reason(metric, limit),
            )

        return Reservation(
            allowed=True,
            current=new_count,
            limit=limit,
            user_id=user_id,
            metric=metric,
            amount=amount,
            period_key=period.key,
        )

    def _check_static(
        self,
        user_id: uuid.UUID,
        metric: str,
        value: int,
        limit: int,
        period_key: str,
    ) -> Reservation:
        """Compare a requested value against a cap that is never counted."""
        allowed = value <= limit
        return Reservation(
            allowed=allowed,
            current=0,
            limit=limit,
            user_id=user_id,
            metric=metric,
            amount=value,
            period_key=period_key,
            reason=None if allowed else denial_reason(metric, limit),
            counted=False,
        )

    async def release(self, reservation: Reservation) -> Optional[int]:
        """Give back the units of a granted reservation.

        Denied, unlimited and static-cap reservations never touched a
        counter, so they are a no-op. Returns the count after the release.

        Raises:
            StoreInvariantViolation: If the counter holds fewer units than
                are being released
        """
        if not reservation.allowed or reservation.is_unlimited or not reservation.counted:
            return None

        now = utcnow()
        try:
            new_count = await self.usage_repo.try_decrement(
                reservation.user_id,
                reservation.metric,
                reservation.period_key,
                reservation.amount,
                now,
            )
            if new_count is None:
                await self.session.rollback()
            else:
                await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise TransientStoreFailure(f"Release failed: {e}") from e

        if new_count is None:
            log_error(
                logger,
                "Usage counter would go negative on release",
                user_id=str(reservation.user_id),
                metric=reservation.metric,
                period_key=reservation.period_key,
                amount=reservation.amount,
            )
            raise StoreInvariantViolation(
                f"Counter {reservation.metric}/{reservation.period_key} "
                f"holds fewer than {reservation.amount} units"
            )
        return new_count

    @asynccontextmanager
    async def reserve(
        self,
        user_id: uuid.UUID,
        metric: str,
        amount: int = 1,
    ) -> AsyncIterator[Reservation]:
        """Reserve for the duration of a block; release if the block raises.

        Raises:
            LimitExceededError: If the reservation was denied
        """
        reservation = await self.check_and_reserve(user_id, metric, amount)
        if not reservation.allowed:
            raise LimitExceededError(reservation)
        try:
            yield reservation
        except Exception:
            await self.release(reservation)
            raise
