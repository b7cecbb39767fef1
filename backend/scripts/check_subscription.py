"""Show the subscription and current usage of a user.

Usage:
    cd backend
    python -m scripts.check_subscription <user_id> [--sync]

Example:
    python -m scripts.check_subscription 4281aaf4-4a2b-4e79-9e24-b85ac9866514
"""

import asyncio
import sys
import uuid
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.core.database import async_session_maker
from app.modules.billing.exceptions import BillingError
from app.modules.billing.reconciler import WebhookReconciler
from app.modules.billing.service import BillingService


async def check_subscription(user_id: uuid.UUID, sync: bool = False):
    """Print subscription state and usage for a user."""
    async with async_session_maker() as session:
        if sync:
            try:
                result = await WebhookReconciler(session).sync_from_stripe(user_id)
                print(f"Sync outcome: {result.outcome.value}")
            except BillingError as e:
                print(f"✗ Sync failed: {e.message}")

        subscription, plan, usage = await BillingService(
            session
        ).get_subscription_with_usage(user_id)

    print(f"\n{'='*60}")
    print(f"Checking subscription for user: {user_id}")
    print(f"{'='*60}")

    if subscription:
        print(f"\n✓ Subscription found:")
        print(f"  Plan: {subscription.plan_id} ({subscription.billing_period})")
        print(f"  Status: {subscription.status}")
        print(f"  Period: {subscription.current_period_start} to {subscription.current_period_end}")
        print(f"  Cancel at period end: {subscription.cancel_at_period_end}")
        print(f"  Stripe: {subscription.stripe_customer_id} / {subscription.stripe_subscription_id}")
        print(f"  Last event: {subscription.last_event_id} at {subscription.last_event_at}")
    else:
        print(f"\n✗ No subscription found for user")

    print(f"\n{'='*60}")
    print(f"Usage ({plan.name} limits):")
    print(f"{'='*60}")
    for metric in usage:
        limit = "Unlimited" if metric.is_unlimited else metric.limit
        warning = f"  [{metric.warning_threshold}%]" if metric.warning_threshold else ""
        print(f"  {metric.metric}: {metric.used}/{limit}{warning}")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Check a user's subscription")
    parser.add_argument("user_id", type=uuid.UUID)
    parser.add_argument(
        "--sync",
        action="store_true",
        help="Pull the latest state from Stripe first"
    )
    args = parser.parse_args()

    asyncio.run(check_subscription(args.user_id, sync=args.sync))
