"""Add billing event processing tables

Revision ID: b7c1e2d3f4a5
Revises:
Create Date: 2026-10-18 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = 'b7c1e2d3f4a5'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TIERS = ('NONE', 'STARTER', 'PROFESSIONAL', 'ENTERPRISE')


def upgrade() -> None:
    """Upgrade schema."""
    # Create accounts table
    op.create_table('accounts',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('email', sa.String(length=320), nullable=True),
        sa.Column('billing_customer_ref', sa.String(length=255), nullable=True),
        sa.Column('billing_subscription_ref', sa.String(length=255), nullable=True),
        sa.Column('billing_price_ref', sa.String(length=255), nullable=True),
        sa.Column('tier', sa.Enum(*TIERS, name='subscriptiontier'), nullable=False),
        sa.Column('status', sa.Enum('INACTIVE', 'TRIALING', 'ACTIVE', 'PAST_DUE', 'CANCELED', 'UNPAID', name='accountstatus'), nullable=False),
        sa.Column('current_period_start', sa.DateTime(), nullable=True),
        sa.Column('current_period_end', sa.DateTime(), nullable=True),
        sa.Column('trial_start', sa.DateTime(), nullable=True),
        sa.Column('trial_end', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('billing_customer_ref')
    )
    op.create_index(op.f('ix_accounts_id'), 'accounts', ['id'], unique=False)
    op.create_index(op.f('ix_accounts_email'), 'accounts', ['email'], unique=False)
    op.create_index(op.f('ix_accounts_billing_customer_ref'), 'accounts', ['billing_customer_ref'], unique=False)
    op.create_index(op.f('ix_accounts_billing_subscription_ref'), 'accounts', ['billing_subscription_ref'], unique=False)

    # Create addon_entitlements table (one row per account and add-on)
    op.create_table('addon_entitlements',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('account_id', sa.Uuid(), nullable=False),
        sa.Column('addon_name', sa.String(length=100), nullable=False),
        sa.Column('addon_category', sa.String(length=100), nullable=False),
        sa.Column('status', sa.Enum('ACTIVE', 'CANCELED', 'EXPIRED', name='addonstatus'), nullable=False),
        sa.Column('billing_subscription_ref', sa.String(length=255), nullable=True),
        sa.Column('billing_price_ref', sa.String(length=255), nullable=True),
        sa.Column('activated_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('last_invoice_ref', sa.String(length=255), nullable=True),
        sa.Column('last_payment_at', sa.DateTime(), nullable=True),
        sa.Column('payment_failed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('account_id', 'addon_name', name='uq_addon_entitlements_account_addon')
    )
    op.create_index(op.f('ix_addon_entitlements_id'), 'addon_entitlements', ['id'], unique=False)
    op.create_index(op.f('ix_addon_entitlements_account_id'), 'addon_entitlements', ['account_id'], unique=False)
    op.create_index(op.f('ix_addon_entitlements_billing_subscription_ref'), 'addon_entitlements', ['billing_subscription_ref'], unique=False)

    # Create processing_records table (idempotency ledger)
    op.create_table('processing_records',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('external_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('status', sa.Enum('PENDING', 'PROCESSING', 'SUCCESS', 'FAILED', 'SKIPPED', 'DEAD', name='processingstatus'), nullable=False),
        sa.Column('account_id', sa.Uuid(), nullable=True),
        sa.Column('customer_ref', sa.String(length=255), nullable=True),
        sa.Column('subscription_ref', sa.String(length=255), nullable=True),
        sa.Column('error_detail', sa.Text(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('first_seen_at', sa.DateTime(), nullable=False),
        sa.Column('last_updated_at', sa.DateTime(), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_id')
    )
    op.create_index(op.f('ix_processing_records_id'), 'processing_records', ['id'], unique=False)
    op.create_index(op.f('ix_processing_records_external_id'), 'processing_records', ['external_id'], unique=False)
    op.create_index(op.f('ix_processing_records_event_type'), 'processing_records', ['event_type'], unique=False)
    op.create_index(op.f('ix_processing_records_status'), 'processing_records', ['status'], unique=False)
    op.create_index(op.f('ix_processing_records_account_id'), 'processing_records', ['account_id'], unique=False)

    # Create subscription_history table (append-only audit)
    op.create_table('subscription_history',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('account_id', sa.Uuid(), nullable=True),
        sa.Column('external_event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('lifecycle_event', sa.String(length=32), nullable=True),
        sa.Column('previous_tier', sa.String(length=32), nullable=True),
        sa.Column('new_tier', sa.String(length=32), nullable=True),
        sa.Column('previous_status', sa.String(length=32), nullable=True),
        sa.Column('new_status', sa.String(length=32), nullable=True),
        sa.Column('outcome', sa.String(length=16), nullable=False),
        sa.Column('detail', sa.Text(), nullable=True),
        sa.Column('period_end_at', sa.DateTime(), nullable=True),
        sa.Column('recorded_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_subscription_history_id'), 'subscription_history', ['id'], unique=False)
    op.create_index(op.f('ix_subscription_history_account_id'), 'subscription_history', ['account_id'], unique=False)
    op.create_index(op.f('ix_subscription_history_external_event_id'), 'subscription_history', ['external_event_id'], unique=False)

    # Create entitlement_freezes table (grace periods)
    op.create_table('entitlement_freezes',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('account_id', sa.Uuid(), nullable=False),
        sa.Column('frozen_tier', sa.Enum(*TIERS, name='subscriptiontier', create_type=False), nullable=False),
        sa.Column('target_tier', sa.Enum(*TIERS, name='subscriptiontier', create_type=False), nullable=False),
        sa.Column('reason', sa.Enum('DOWNGRADE', 'CANCEL', name='freezereason'), nullable=False),
        sa.Column('frozen_until', sa.DateTime(), nullable=False),
        sa.Column('external_event_id', sa.String(length=255), nullable=True),
        sa.Column('released_at', sa.DateTime(), nullable=True),
        sa.Column('release_reason', sa.String(length=100), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_entitlement_freezes_id'), 'entitlement_freezes', ['id'], unique=False)
    op.create_index(op.f('ix_entitlement_freezes_account_id'), 'entitlement_freezes', ['account_id'], unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    # Drop tables in reverse order
    op.drop_index(op.f('ix_entitlement_freezes_account_id'), table_name='entitlement_freezes')
    op.drop_index(op.f('ix_entitlement_freezes_id'), table_name='entitlement_freezes')
    op.drop_table('entitlement_freezes')

    op.drop_index(op.f('ix_subscription_history_external_event_id'), table_name='subscription_history')
    op.drop_index(op.f('ix_subscription_history_account_id'), table_name='subscription_history')
    op.drop_index(op.f('ix_subscription_history_id'), table_name='subscription_history')
    op.drop_table('subscription_history')

    op.drop_index(op.f('ix_processing_records_account_id'), table_name='processing_records')
    op.drop_index(op.f('ix_processing_records_status'), table_name='processing_records')
    op.drop_index(op.f('ix_processing_records_event_type'), table_name='processing_records')
    op.drop_index(op.f('ix_processing_records_external_id'), table_name='processing_records')
    op.drop_index(op.f('ix_processing_records_id'), table_name='processing_records')
    op.drop_table('processing_records')

    op.drop_index(op.f('ix_addon_entitlements_billing_subscription_ref'), table_name='addon_entitlements')
    op.drop_index(op.f('ix_addon_entitlements_account_id'), table_name='addon_entitlements')
    op.drop_index(op.f('ix_addon_entitlements_id'), table_name='addon_entitlements')
    op.drop_table('addon_entitlements')

    op.drop_index(op.f('ix_accounts_billing_subscription_ref'), table_name='accounts')
    op.drop_index(op.f('ix_accounts_billing_customer_ref'), table_name='accounts')
    op.drop_index(op.f('ix_accounts_email'), table_name='accounts')
    op.drop_index(op.f('ix_accounts_id'), table_name='accounts')
    op.drop_table('accounts')

    # Drop enums
    op.execute('DROP TYPE IF EXISTS freezereason')
    op.execute('DROP TYPE IF EXISTS processingstatus')
    op.execute('DROP TYPE IF EXISTS addonstatus')
    op.execute('DROP TYPE IF EXISTS accountstatus')
    op.execute('DROP TYPE IF EXISTS subscriptiontier')
