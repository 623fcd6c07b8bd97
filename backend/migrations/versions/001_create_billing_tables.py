"""Create users, subscriptions and stripe_events tables

Revision ID: 001
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

entitlement_tier = sa.Enum('FREE', 'STARTER', 'PRO', 'ENTERPRISE', name='entitlement_tier')
subscription_status = sa.Enum('ACTIVE', 'CANCELED_AT_PERIOD_END', 'EXPIRED', name='subscription_status')


def upgrade() -> None:
    # Tables may already exist when Base.metadata.create_all ran first
    conn = op.get_bind()
    inspector = inspect(conn)
    existing_tables = inspector.get_table_names()

    if 'users' not in existing_tables:
        op.create_table(
            'users',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('clerk_id', sa.String(length=255), nullable=False),
            sa.Column('email', sa.String(length=255), nullable=False),
            sa.Column('stripe_customer_id', sa.String(length=255), nullable=True),
            sa.Column('tier', entitlement_tier, nullable=False, server_default='FREE'),
            sa.Column('credits', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_users_id', 'users', ['id'])
        op.create_index('ix_users_clerk_id', 'users', ['clerk_id'], unique=True)
        op.create_index('ix_users_email', 'users', ['email'], unique=True)
        op.create_index('ix_users_stripe_customer_id', 'users', ['stripe_customer_id'])

    if 'subscriptions' not in existing_tables:
        op.create_table(
            'subscriptions',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('stripe_subscription_id', sa.String(length=255), nullable=False),
            sa.Column('stripe_price_id', sa.String(length=255), nullable=False),
            sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=False),
            sa.Column('canceled_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('status', subscription_status, nullable=False, server_default='ACTIVE'),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_subscriptions_id', 'subscriptions', ['id'])
        op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'], unique=True)
        op.create_index('ix_subscriptions_stripe_subscription_id', 'subscriptions', ['stripe_subscription_id'], unique=True)
        op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])

    if 'stripe_events' not in existing_tables:
        op.create_table(
            'stripe_events',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('stripe_event_id', sa.String(length=255), nullable=False),
            sa.Column('event_type', sa.String(length=100), nullable=False),
            sa.Column('processed', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('outcome', sa.String(length=50), nullable=True),
            sa.Column('payload', sa.JSON(), nullable=False),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_stripe_events_id', 'stripe_events', ['id'])
        op.create_index('ix_stripe_events_stripe_event_id', 'stripe_events', ['stripe_event_id'], unique=True)
        op.create_index('ix_stripe_events_event_type', 'stripe_events', ['event_type'])


def downgrade() -> None:
    conn = op.get_bind()
    inspector = inspect(conn)
    existing_tables = inspector.get_table_names()

    if 'stripe_events' in existing_tables:
        op.drop_table('stripe_events')
    if 'subscriptions' in existing_tables:
        op.drop_table('subscriptions')
    if 'users' in existing_tables:
        op.drop_table('users')
    subscription_status.drop(conn, checkfirst=True)
    entitlement_tier.drop(conn, checkfirst=True)
