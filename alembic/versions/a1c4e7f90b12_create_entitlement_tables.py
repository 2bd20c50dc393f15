"""Create entitlement tables

Adds the two tables entitlement state lives in:
- subscriptions: one canonical record per (platform, original_transaction_id)
  lineage, carrying the latest transaction and the entitlement window
- iap_events: append-only log of processed store notifications keyed by the
  notification UUID, used for idempotency and side-effect retries

Revision ID: a1c4e7f90b12
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'a1c4e7f90b12'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create subscriptions and iap_events."""

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('platform', sa.String(20), nullable=False, server_default='ios'),
        sa.Column('product_id', sa.String(100), nullable=False),
        sa.Column('transaction_id', sa.String(255), nullable=False),
        sa.Column('original_transaction_id', sa.String(255), nullable=False),
        sa.Column('latest_receipt', sa.Text(), nullable=True),
        sa.Column('purchase_date_ms', sa.BigInteger(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('environment', sa.String(20), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        # One record per lineage; upserts conflict on this
        sa.UniqueConstraint('platform', 'original_transaction_id', name='uq_subscriptions_platform_lineage'),
    )

    op.create_index('idx_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('idx_subscriptions_user_transaction', 'subscriptions', ['user_id', 'transaction_id'])
    op.create_index('idx_subscriptions_expires_at', 'subscriptions', ['expires_at'])

    op.create_table(
        'iap_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('event_id', sa.String(255), nullable=False),
        # NULL when the lineage could not be mapped to a user
        sa.Column('user_id', sa.String(255), nullable=True),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('transaction_id', sa.String(255), nullable=True),
        sa.Column('metadata', sa.Text(), nullable=True),
        sa.Column('side_effects_claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('side_effects_completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('event_id', name='uq_iap_events_event_id'),
    )

    op.create_index('idx_iap_events_user_id', 'iap_events', ['user_id'])
    op.create_index('idx_iap_events_transaction_id', 'iap_events', ['transaction_id'])


def downgrade() -> None:
    """Drop subscriptions and iap_events."""
    op.drop_index('idx_iap_events_transaction_id', table_name='iap_events')
    op.drop_index('idx_iap_events_user_id', table_name='iap_events')
    op.drop_table('iap_events')

    op.drop_index('idx_subscriptions_expires_at', table_name='subscriptions')
    op.drop_index('idx_subscriptions_user_transaction', table_name='subscriptions')
    op.drop_index('idx_subscriptions_user_id', table_name='subscriptions')
    op.drop_table('subscriptions')
