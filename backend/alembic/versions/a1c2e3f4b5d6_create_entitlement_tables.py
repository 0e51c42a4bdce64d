"""Create users, plans and subscriptions tables

- users carries the denormalized tier fields (subscription_tier,
  subscription_expires_at) read by the rest of the product
- plans maps one product id per storefront to a price and duration
- subscriptions holds one row per storefront renewal chain, unique on
  (platform, platform_subscription_id)

Revision ID: a1c2e3f4b5d6
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = 'a1c2e3f4b5d6'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create entitlement tables."""

    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(255), unique=True, nullable=True),
        sa.Column('subscription_tier', sa.String(20), nullable=False, server_default='free'),
        sa.Column('subscription_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        'plans',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(50), nullable=False),
        sa.Column('apple_product_id', sa.String(100), unique=True, nullable=True),
        sa.Column('google_product_id', sa.String(100), unique=True, nullable=True),
        sa.Column('price_usd', sa.Numeric(10, 2), nullable=False),
        sa.Column('duration_months', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('features', sa.JSON().with_variant(postgresql.JSONB(), 'postgresql'), nullable=False,
                  server_default=sa.text("'{}'")),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('idx_plans_is_active', 'plans', ['is_active'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('plan_id', sa.Integer(), sa.ForeignKey('plans.id', ondelete='SET NULL'), nullable=True),
        sa.Column('platform', sa.String(20), nullable=False),
        sa.Column('platform_subscription_id', sa.String(512), nullable=False),
        sa.Column('receipt_data', sa.Text(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('starts_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_auto_renewing', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('platform', 'platform_subscription_id', name='uq_subscriptions_platform_chain'),
        sa.CheckConstraint('expires_at >= starts_at', name='chk_subscriptions_window'),
    )

    # Indexes for subscriptions table
    op.create_index('idx_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('idx_subscriptions_status', 'subscriptions', ['status'])
    # Status queries and the expiry sweep
    op.create_index('idx_subscriptions_user_status_expires', 'subscriptions', ['user_id', 'status', 'expires_at'])


def downgrade() -> None:
    """Drop entitlement tables."""
    op.drop_index('idx_subscriptions_user_status_expires', table_name='subscriptions')
    op.drop_index('idx_subscriptions_status', table_name='subscriptions')
    op.drop_index('idx_subscriptions_user_id', table_name='subscriptions')
    op.drop_table('subscriptions')

    op.drop_index('idx_plans_is_active', table_name='plans')
    op.drop_table('plans')

    op.drop_table('users')
