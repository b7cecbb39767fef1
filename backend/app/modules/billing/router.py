"""API Router for billing: plans, usage, Stripe sessions and webhooks."""

import json
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_session
from app.modules.auth.jwt import TokenPayload, get_current_token, get_current_user_id
from app.modules.billing.dependencies import (
    limit_exceeded_http_error,
    store_unavailable_http_error,
)
from app.modules.billing.events import parse_event
from app.modules.billing.exceptions import (
    BillingError,
    InvalidBillingPeriodError,
    LimitExceededError,
    NoSubscriptionError,
    NotAuthenticatedError,
    PaymentProviderError,
    PlanNotFoundError,
    TransientStoreFailure,
)
from app.modules.billing.limits import LimitEnforcer
from app.modules.billing.metering import UsageLedger
from app.modules.billing.reconciler import WebhookReconciler
from app.modules.billing.schemas import (
    CheckoutRequest,
    PlanListResponse,
    PlanResponse,
    ReservationRequest,
    ReservationResponse,
    SessionResponse,
    SubscriptionResponse,
    SubscriptionWithUsageResponse,
    SyncResponse,
    UsageMetricResponse,
    UsageResponse,
    WebhookResponse,
)
from app.modules.billing.service import BillingService
from app.modules.billing.stripe_client import StripeClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


def _http_error(error: BillingError) -> HTTPException:
    """Translate a billing error into an HTTP response."""
    if isinstance(error, TransientStoreFailure):
        return store_unavailable_http_error(error)
    if isinstance(error, LimitExceededError):
        return limit_exceeded_http_error(error)
    if isinstance(error, NotAuthenticatedError):
        return HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error.message,
            headers={"WWW-Authenticate": "Bearer"},
        )
    if isinstance(error, (PlanNotFoundError, InvalidBillingPeriodError, NoSubscriptionError)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=error.message)
    if isinstance(error, PaymentProviderError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=error.message)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Billing error"
    )


# ==================== Plans ====================

@router.get("/plans", response_model=PlanListResponse)
async def list_plans(
    session: AsyncSession = Depends(get_session),
):
    """Get purchasable plans, cheapest first."""
    service = BillingService(session)
    try:
        plans = await service.list_plans()
    except BillingError as e:
        raise _http_error(e)
    return PlanListResponse(plans=[PlanResponse.model_validate(p) for p in plans])


# ==================== Subscription & Usage ====================

@router.get("/subscription", response_model=SubscriptionWithUsageResponse)
async def get_subscription(
    user_id: uuid.UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
):
    """Get the caller's subscription, effective plan and usage."""
    try:
        await UsageLedger(session).reset_if_period_rolled(user_id)
        subscription, plan, usage = await BillingService(session).get_subscription_with_usage(
            user_id
        )
    except BillingError as e:
        raise _http_error(e)

    return SubscriptionWithUsageResponse(
        subscription=SubscriptionResponse.model_validate(subscription) if subscription else None,
        plan=PlanResponse.model_validate(plan),
        usage=[
            UsageMetricResponse(
                metric=m.metric,
                used=m.used,
                limit=m.limit,
                remaining=m.remaining,
                percent_used=m.percent_used,
                is_unlimited=m.is_unlimited,
                warning_threshold=m.warning_threshold,
                period_start=m.period.start,
                period_end=m.period.end,
            )
            for m in usage
        ],
    )


@router.get("/usage/{metric}", response_model=UsageResponse)
async def get_usage(
    metric: str,
    user_id: uuid.UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
):
    """Get the caller's usage of one metric in the current period."""
    try:
        used, period = await UsageLedger(session).get_usage_in_period(user_id, metric)
    except BillingError as e:
        raise _http_error(e)
    return UsageResponse(metric=metric, used=used, period_key=period.key)


@router.post("/usage/{metric}/reserve", response_model=ReservationResponse)
async def reserve_usage(
    metric: str,
    data: Optional[ReservationRequest] = None,
    user_id: uuid.UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
):
    """Atomically check the limit and consume units.

    Answers 402 with ``reason``, ``current`` and ``limit`` when denied.
    """
    amount = data.amount if data else 1
    enforcer = LimitEnforcer(session)
    try:
        reservation = await enforcer.check_and_reserve(user_id, metric, amount)
    except BillingError as e:
        raise _http_error(e)

    if not reservation.allowed:
        raise limit_exceeded_http_error(LimitExceededError(reservation))
    return ReservationResponse(
        allowed=True,
        current=reservation.current,
        limit=reservation.limit,
        period_key=reservation.period_key,
    )


# ==================== Stripe Sessions ====================

@router.post("/checkout", response_model=SessionResponse)
async def create_checkout_session(
    data: CheckoutRequest,
    token: TokenPayload = Depends(get_current_token),
    session: AsyncSession = Depends(get_session),
):
    """Create a Stripe Checkout session for a plan."""
    service = BillingService(session)
    try:
        result = await service.create_checkout_session(
            user_id=token.sub,
            plan_id=data.plan_id,
            billing_period=data.billing_period,
            email=token.email,
        )
    except BillingError as e:
        raise _http_error(e)
    return SessionResponse(url=result.url, session_id=result.session_id)


@router.get("/portal", response_model=SessionResponse)
async def create_portal_session(
    user_id: uuid.UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
):
    """Create a Stripe billing portal session."""
    service = BillingService(session)
    try:
        result = await service.create_portal_session(user_id)
    except BillingError as e:
        raise _http_error(e)
    return SessionResponse(url=result.url, session_id=result.session_id)


@router.post("/sync", response_model=SyncResponse)
async def sync_subscription(
    user_id: uuid.UUID = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
):
    """Pull the latest subscription state from Stripe."""
    reconciler = WebhookReconciler(session)
    try:
        result = await reconciler.sync_from_stripe(user_id)
        subscription = await reconciler.subscription_repo.get_by_user_id(user_id)
    except BillingError as e:
        raise _http_error(e)
    except SQLAlchemyError as e:
        raise _http_error(TransientStoreFailure(f"Failed to load subscription: {e}"))
    return SyncResponse(
        outcome=result.outcome,
        subscription=SubscriptionResponse.model_validate(subscription) if subscription else None,
    )


# ==================== Webhooks ====================

@router.post("/webhook", response_model=WebhookResponse)
async def handle_stripe_webhook(
    request: Request,
    session: AsyncSession = Depends(get_session),
):
    """Handle Stripe webhook events.

    Every processed outcome answers 200 so Stripe stops retrying. A rolled
    back apply answers 503 so Stripe redelivers.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    try:
        StripeClient.construct_webhook_event(payload, sig_header)
        event = parse_event(json.loads(payload))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    reconciler = WebhookReconciler(session)
    try:
        result = await reconciler.apply_event(event)
    except TransientStoreFailure as e:
        raise _http_error(e)

    return WebhookResponse(event_id=result.event_id, outcome=result.outcome)
