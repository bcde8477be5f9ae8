"""create organizations, subscriptions, subscription payments and webhook idempotency keys

Revision ID: 0001_billing_core_tables
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '0001_billing_core_tables'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'organizations',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('locked_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_organizations'),
    )

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('org_id', sa.String(length=64), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=True),
        sa.Column('provider', sa.String(length=20), nullable=False),
        sa.Column('plan_code', sa.String(length=50), nullable=True),
        sa.Column('tier', sa.String(length=20), nullable=False, server_default='basic'),
        sa.Column('monthly_amount', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('monthly_currency', sa.String(length=3), nullable=False, server_default='NGN'),
        sa.Column('upfront_fee_paid', sa.Numeric(precision=12, scale=2), nullable=False, server_default='0'),
        sa.Column('upfront_fee_currency', sa.String(length=3), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='trial'),
        sa.Column('trial_start_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('trial_end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('next_billing_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('autopay_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('autopay_provider', sa.String(length=20), nullable=True),
        sa.Column('autopay_reference', sa.String(length=255), nullable=True),
        sa.Column('autopay_last_status', sa.String(length=32), nullable=True),
        sa.Column('autopay_configured_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('billing_email', sa.String(length=255), nullable=True),
        sa.Column('external_subscription_id', sa.String(length=255), nullable=True),
        sa.Column('external_customer_id', sa.String(length=255), nullable=True),
        sa.Column('billing_claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ['org_id'], ['organizations.id'],
            name='fk_subscriptions_org_id_organizations', ondelete='CASCADE',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_subscriptions'),
    )
    op.create_index('ix_subscriptions_org_id', 'subscriptions', ['org_id'], unique=True)
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
    op.create_index('ix_subscriptions_external_subscription_id', 'subscriptions', ['external_subscription_id'])
    op.create_index('ix_subscriptions_external_customer_id', 'subscriptions', ['external_customer_id'])

    op.create_table(
        'subscription_payments',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('subscription_id', sa.Uuid(), nullable=False),
        sa.Column('org_id', sa.String(length=64), nullable=False),
        sa.Column('reference', sa.String(length=255), nullable=True),
        sa.Column('amount', sa.Numeric(precision=12, scale=2), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='NGN'),
        sa.Column('payment_type', sa.String(length=20), nullable=False, server_default='recurring'),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('provider', sa.String(length=20), nullable=False),
        sa.Column('event_type', sa.String(length=50), nullable=True),
        sa.Column('metadata', sa.JSON().with_variant(postgresql.JSONB(), 'postgresql'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ['subscription_id'], ['subscriptions.id'],
            name='fk_subscription_payments_subscription_id_subscriptions', ondelete='CASCADE',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_subscription_payments'),
    )
    op.create_index('ix_subscription_payments_subscription_id', 'subscription_payments', ['subscription_id'])
    op.create_index('ix_subscription_payments_org_id', 'subscription_payments', ['org_id'])
    op.create_index('ix_subscription_payments_provider_reference', 'subscription_payments', ['provider', 'reference'])

    op.create_table(
        'webhook_idempotency_keys',
        sa.Column('key', sa.String(length=255), nullable=False),
        sa.Column('provider', sa.String(length=20), nullable=False),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('key', name='pk_webhook_idempotency_keys'),
    )
    op.create_index('ix_webhook_idempotency_keys_expires_at', 'webhook_idempotency_keys', ['expires_at'])


def downgrade() -> None:
    op.drop_index('ix_webhook_idempotency_keys_expires_at', table_name='webhook_idempotency_keys')
    op.drop_table('webhook_idempotency_keys')
    op.drop_index('ix_subscription_payments_provider_reference', table_name='subscription_payments')
    op.drop_index('ix_subscription_payments_org_id', table_name='subscription_payments')
    op.drop_index('ix_subscription_payments_subscription_id', table_name='subscription_payments')
    op.drop_table('subscription_payments')
    op.drop_index('ix_subscriptions_external_customer_id', table_name='subscriptions')
    op.drop_index('ix_subscriptions_external_subscription_id', table_name='subscriptions')
    op.drop_index('ix_subscriptions_status', table_name='subscriptions')
    op.drop_index('ix_subscriptions_org_id', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_table('organizations')
