"""Seed the built-in subscription plans.

Run with: python -m scripts.seed_plans
"""

import asyncio
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.core.database import async_session_maker, init_db
from app.modules.billing.models import UNLIMITED
from app.modules.billing.plans import PlanCatalog


async def seed_plans(create_tables: bool = False):
    """Seed plans into database.

    Existing plans are left as they are; plans are immutable once referenced.

    Args:
        create_tables: If True, create missing tables first (local SQLite)
    """
    if create_tables:
        print("Creating tables...")
        await init_db()

    async with async_session_maker() as session:
        catalog = PlanCatalog(session)
        inserted = await catalog.seed_plans()
        print(f"Plans inserted: {inserted}")

        plans = await catalog.list_plans()

    print("\n" + "=" * 60)
    print("PLANS SUMMARY")
    print("=" * 60)
    for plan in plans:
        print(f"\n{plan.name} ({plan.id})")
        print(f"  Price: ${plan.price_monthly / 100:.2f}/month, ${plan.price_yearly / 100:.2f}/year")
        print(f"  Stripe prices: {plan.stripe_price_id_monthly or '-'} / {plan.stripe_price_id_yearly or '-'}")
        for metric, limit in sorted(plan.limits.items()):
            print(f"  {metric}: {'Unlimited' if limit == UNLIMITED else limit}")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Seed subscription plans")
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create missing tables before seeding"
    )
    args = parser.parse_args()

    asyncio.run(seed_plans(create_tables=args.create_tables))
