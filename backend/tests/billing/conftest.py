"""Shared fixtures for billing tests.

Every database is a fresh SQLite file so that concurrent sessions really
contend on the same store.
"""

import os
import tempfile
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Optional

os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_123")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_123")
os.environ.setdefault("STRIPE_PRICE_ID_PRO_MONTHLY", "price_pro_monthly")
os.environ.setdefault("STRIPE_PRICE_ID_PRO_YEARLY", "price_pro_yearly")
os.environ.setdefault("LOG_JSON", "false")

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.database import Base
from app.modules.billing.models import Plan, Subscription
from app.modules.billing.plans import PlanCatalog


@asynccontextmanager
async def temp_database() -> AsyncIterator[async_sessionmaker]:
    """Create a throwaway SQLite database with the billing schema."""
    with tempfile.TemporaryDirectory() as tmp:
        engine = create_async_engine(
            f"sqlite+aiosqlite:///{os.path.join(tmp, 'billing.db')}",
            connect_args={"timeout": 30},
        )
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        try:
            yield factory
        finally:
            await engine.dispose()


async def seed_default_plans(factory: async_sessionmaker) -> None:
    async with factory() as session:
        await PlanCatalog(session).seed_plans()


async def add_plan(
    factory: async_sessionmaker,
    plan_id: str,
    limits: dict,
    price_monthly: int = 0,
    **kwargs,
) -> None:
    kwargs.setdefault("is_active", True)
    async with factory() as session:
        session.add(Plan(
            id=plan_id,
            name=plan_id.title(),
            price_monthly=price_monthly,
            price_yearly=price_monthly * 10,
            limits=limits,
            features=[],
            **kwargs,
        ))
        await session.commit()


async def add_subscription(
    factory: async_sessionmaker,
    user_id: uuid.UUID,
    plan_id: str = "pro",
    status: str = "active",
    current_period_start: Optional[datetime] = None,
    current_period_end: Optional[datetime] = None,
    **kwargs,
) -> None:
    async with factory() as session:
        session.add(Subscription(
            user_id=user_id,
            plan_id=plan_id,
            status=status,
            billing_period="monthly",
            current_period_start=current_period_start,
            current_period_end=current_period_end,
            cancel_at_period_end=False,
            **kwargs,
        ))
        await session.commit()


async def load_subscription(
    factory: async_sessionmaker, user_id: uuid.UUID
) -> Optional[Subscription]:
    async with factory() as session:
        result = await session.execute(
            select(Subscription).where(Subscription.user_id == user_id)
        )
        return result.scalar_one_or_none()


@pytest.fixture
def database():
    """Factory for fresh databases, usable once per hypothesis example."""
    return temp_database


@pytest_asyncio.fixture
async def session_factory() -> AsyncIterator[async_sessionmaker]:
    """A fresh database with the default plans seeded."""
    async with temp_database() as factory:
        await seed_default_plans(factory)
        yield factory

