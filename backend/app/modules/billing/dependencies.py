"""FastAPI dependencies for gating application routes on usage limits.

Example::

    @router.post("/jarvis/conversations")
    async def start_conversation(
        reservation: Reservation = Depends(require_quota("jarvisConversationsPerMonth")),
    ):
        ...

The unit is consumed when the dependency resolves and given back if the
route raises, so a failed conversation does not count against the quota.
"""

import uuid
from typing import AsyncIterator

from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_session
from app.modules.auth.jwt import get_current_user_id
from app.modules.billing.exceptions import LimitExceededError, TransientStoreFailure
from app.modules.billing.limits import LimitEnforcer, Reservation


def limit_exceeded_http_error(error: LimitExceededError) -> HTTPException:
    """402 carrying enough detail for an upgrade prompt."""
    reservation = error.reservation
    return HTTPException(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        detail={
            "allowed": False,
            "reason": reservation.reason,
            "metric": reservation.metric,
            "current": reservation.current,
            "limit": reservation.limit,
        },
    )


def store_unavailable_http_error(error: TransientStoreFailure) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Temporarily unavailable, please retry",
    )


def require_quota(metric: str, amount: int = 1):
    """Dependency factory that reserves ``amount`` of ``metric`` or answers 402.

    The reservation is released when the route raises.
    """

    async def dependency(
        user_id: uuid.UUID = Depends(get_current_user_id),
        session: AsyncSession = Depends(get_session),
    ) -> AsyncIterator[Reservation]:
        enforcer = LimitEnforcer(session)
        try:
            reservation = await enforcer.check_and_reserve(user_id, metric, amount)
        except TransientStoreFailure as e:
            raise store_unavailable_http_error(e)
        if not reservation.allowed:
            raise limit_exceeded_http_error(LimitExceededError(reservation))

        try:
            yield reservation
        except Exception:
            # Drop whatever the failed route left pending before releasing
            await session.rollback()
            await enforcer.release(reservation)
            raise

    return dependency
