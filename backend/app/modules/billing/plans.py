"""Plan catalog.

Plans are seeded rows; at runtime the catalog only reads them. ``FREE_PLAN``
mirrors the seeded free plan so enforcement works on an empty table.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.modules.billing.exceptions import PlanNotFoundError
from app.modules.billing.models import Plan, BillingPeriod, UNLIMITED
from app.modules.billing.repository import PlanRepository

logger = logging.getLogger(__name__)


FREE_LIMITS = {
    "maxTasks": 50,
    "maxWorkspaces": 1,
    "maxFriends": 10,
    "maxNudgesPerDay": 3,
    "jarvisConversationsPerMonth": 5,
    "jarvisTokensPerMonth": 10000,
    "conversationHistoryDays": 30,
    "maxFileSize": 1 * 1024 * 1024,
}

PRO_LIMITS = {
    "maxTasks": UNLIMITED,
    "maxWorkspaces": UNLIMITED,
    "maxFriends": UNLIMITED,
    "maxNudgesPerDay": UNLIMITED,
    "jarvisConversationsPerMonth": UNLIMITED,
    "jarvisTokensPerMonth": 100000,
    "conversationHistoryDays": UNLIMITED,
    "maxFileSize": 10 * 1024 * 1024,
}

FREE_FEATURES = [
    "Up to 50 tasks",
    "1 workspace",
    "Basic lists & subtasks",
    "5 Jarvis conversations per month",
    "Up to 10K tokens for Jarvis",
    "Up to 10 friends",
    "Email notifications",
    "Basic search",
]

PRO_FEATURES = [
    "Unlimited tasks & workspaces",
    "Unlimited Jarvis AI conversations",
    "Up to 100K tokens per month for Jarvis",
    "Advanced productivity analytics",
    "Unlimited friends & nudges",
    "Team collaboration features",
    "Priority support (24h response)",
    "Recurring tasks",
    "Task templates",
]


def default_plans() -> list[dict]:
    """Built-in plan rows, with Stripe prices taken from settings."""
    return [
        {
            "id": settings.FREE_PLAN_ID,
            "name": "Free",
            "description": "Get organized with the essentials.",
            "price_monthly": 0,
            "price_yearly": 0,
            "stripe_price_id_monthly": None,
            "stripe_price_id_yearly": None,
            "limits": dict(FREE_LIMITS),
            "features": list(FREE_FEATURES),
            "is_active": True,
        },
        {
            "id": "pro",
            "name": "Pro",
            "description": "Unlimited tasks, workspaces and Jarvis conversations.",
            "price_monthly": 999,
            "price_yearly": 9990,
            "stripe_price_id_monthly": settings.STRIPE_PRICE_ID_PRO_MONTHLY or None,
            "stripe_price_id_yearly": settings.STRIPE_PRICE_ID_PRO_YEARLY or None,
            "limits": dict(PRO_LIMITS),
            "features": list(PRO_FEATURES),
            "is_active": True,
        },
    ]


FREE_PLAN = Plan(**default_plans()[0])

# Caps checked against a requested value, never counted
STATIC_LIMITS = frozenset({"conversationHistoryDays", "maxFileSize"})


def is_static_limit(metric: str) -> bool:
    return metric in STATIC_LIMITS


def limit_for(plan: Plan, metric: str) -> int:
    """Cap for a metric on a plan; UNLIMITED when the plan sets none."""
    value = (plan.limits or {}).get(metric)
    if value is None:
        return UNLIMITED
    return int(value)


class PlanCatalog:
    """Read access to the plan table."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.plan_repo = PlanRepository(session)

    async def list_plans(self) -> list[Plan]:
        """Purchasable plans, cheapest first."""
        return await self.plan_repo.get_all_active()

    async def get_plan(self, plan_id: str) -> Plan:
        """Get a plan or raise PlanNotFoundError."""
        plan = await self.plan_repo.get_by_id(plan_id)
        if plan is None:
            if plan_id == settings.FREE_PLAN_ID:
                return FREE_PLAN
            raise PlanNotFoundError(plan_id)
        return plan

    async def find_plan(self, plan_id: Optional[str]) -> Optional[Plan]:
        """Like get_plan, but None for unknown ids."""
        if not plan_id:
            return None
        try:
            return await self.get_plan(plan_id)
        except PlanNotFoundError:
            return None

    async def get_plan_by_price_id(
        self, price_id: Optional[str]
    ) -> Optional[tuple[Plan, BillingPeriod]]:
        """Resolve a Stripe price id to its plan and billing period."""
        if not price_id:
            return None
        plan = await self.plan_repo.get_by_price_id(price_id)
        if plan is None:
            return None
        if plan.stripe_price_id_yearly == price_id:
            return plan, BillingPeriod.YEARLY
        return plan, BillingPeriod.MONTHLY

    async def seed_plans(self) -> int:
        """Insert the built-in plans that are missing. Returns rows inserted."""
        inserted = 0
        for values in default_plans():
            if await self.plan_repo.insert_if_absent(**values):
                inserted += 1
        await self.session.commit()
        if inserted:
            logger.info("Seeded plans", extra={"inserted": inserted})
        return inserted
