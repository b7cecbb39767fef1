"""Subscription billing tables and default plans.

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None

# Default plans; -1 means unlimited. Stripe price ids are set per environment.
DEFAULT_PLANS = [
    {
        "id": "free",
        "name": "Free",
        "description": "Get organized with the essentials.",
        "price_monthly": 0,
        "price_yearly": 0,
        "limits": {
            "maxTasks": 50,
            "maxWorkspaces": 1,
            "maxFriends": 10,
            "maxNudgesPerDay": 3,
            "jarvisConversationsPerMonth": 5,
            "jarvisTokensPerMonth": 10000,
            "conversationHistoryDays": 30,
            "maxFileSize": 1048576,
        },
        "features": [
            "Up to 50 tasks",
            "1 workspace",
            "5 Jarvis conversations per month",
            "Up to 10 friends",
        ],
        "is_active": True,
    },
    {
        "id": "pro",
        "name": "Pro",
        "description": "Unlimited tasks, workspaces and Jarvis conversations.",
        "price_monthly": 999,
        "price_yearly": 9990,
        "limits": {
            "maxTasks": -1,
            "maxWorkspaces": -1,
            "maxFriends": -1,
            "maxNudgesPerDay": -1,
            "jarvisConversationsPerMonth": -1,
            "jarvisTokensPerMonth": 100000,
            "conversationHistoryDays": -1,
            "maxFileSize": 10485760,
        },
        "features": [
            "Unlimited tasks & workspaces",
            "Unlimited Jarvis AI conversations",
            "Up to 100K tokens per month for Jarvis",
            "Unlimited friends & nudges",
        ],
        "is_active": True,
    },
]


def upgrade() -> None:
    """Create billing tables and insert default plans."""
    op.create_table(
        'plans',
        sa.Column('id', sa.String(50), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price_monthly', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('price_yearly', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('stripe_price_id_monthly', sa.String(255), nullable=True),
        sa.Column('stripe_price_id_yearly', sa.String(255), nullable=True),
        sa.Column('limits', sa.JSON(), nullable=False),
        sa.Column('features', sa.JSON(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_plans_stripe_price_id_monthly', 'plans', ['stripe_price_id_monthly'])
    op.create_index('ix_plans_stripe_price_id_yearly', 'plans', ['stripe_price_id_yearly'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('plan_id', sa.String(50), nullable=False, server_default='free'),
        sa.Column('billing_period', sa.String(20), nullable=False, server_default='monthly'),
        sa.Column('status', sa.String(50), nullable=False, server_default='active'),
        sa.Column('stripe_customer_id', sa.String(255), nullable=True),
        sa.Column('stripe_subscription_id', sa.String(255), nullable=True),
        sa.Column('current_period_start', sa.DateTime(), nullable=True),
        sa.Column('current_period_end', sa.DateTime(), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('canceled_at', sa.DateTime(), nullable=True),
        sa.Column('trial_end', sa.DateTime(), nullable=True),
        sa.Column('last_event_id', sa.String(255), nullable=True),
        sa.Column('last_event_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('stripe_subscription_id'),
        sa.CheckConstraint(
            'current_period_end >= current_period_start',
            name='ck_subscriptions_period_order',
        ),
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'], unique=True)
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
    op.create_index('ix_subscriptions_stripe_customer_id', 'subscriptions', ['stripe_customer_id'])

    op.create_table(
        'usage_counters',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('metric', sa.String(100), nullable=False),
        sa.Column('period_key', sa.String(64), nullable=False),
        sa.Column('period_start', sa.DateTime(), nullable=False),
        sa.Column('period_end', sa.DateTime(), nullable=False),
        sa.Column('count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'metric', 'period_key', name='uq_usage_counters_key'),
        sa.CheckConstraint('count >= 0', name='ck_usage_counters_count'),
    )
    op.create_index('ix_usage_counters_user_period', 'usage_counters', ['user_id', 'period_start'])

    op.create_table(
        'processed_events',
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('outcome', sa.String(20), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('event_id'),
    )

    plans_table = sa.table(
        'plans',
        sa.column('id', sa.String),
        sa.column('name', sa.String),
        sa.column('description', sa.Text),
        sa.column('price_monthly', sa.Integer),
        sa.column('price_yearly', sa.Integer),
        sa.column('limits', sa.JSON),
        sa.column('features', sa.JSON),
        sa.column('is_active', sa.Boolean),
    )
    op.bulk_insert(plans_table, DEFAULT_PLANS)


def downgrade() -> None:
    """Drop billing tables."""
    op.drop_table('processed_events')
    op.drop_index('ix_usage_counters_user_period', table_name='usage_counters')
    op.drop_table('usage_counters')
    op.drop_index('ix_subscriptions_stripe_customer_id', table_name='subscriptions')
    op.drop_index('ix_subscriptions_status', table_name='subscriptions')
    op.drop_index('ix_subscriptions_user_id', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_index('ix_plans_stripe_price_id_yearly', table_name='plans')
    op.drop_index('ix_plans_stripe_price_id_monthly', table_name='plans')
    op.drop_table('plans')
