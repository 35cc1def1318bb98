"""initial storefront billing schema

Revision ID: 0001_initial_billing_schema
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_initial_billing_schema'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'tenants',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('website', sa.String(length=512), nullable=True),
        sa.Column('plan', sa.String(length=64), nullable=True),
        sa.Column('billing_status', sa.String(length=20), nullable=False, server_default='INACTIVE'),
        sa.Column('plan_starts_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('plan_ends_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('trial_ends_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_subscription_id', sa.String(length=64), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'users',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('tenant_id', sa.String(length=64), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('email', sa.String(length=320), nullable=True),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('role', sa.String(length=20), nullable=False, server_default='member'),
        *_timestamps(),
        sa.UniqueConstraint('tenant_id', 'email', name='uq_tenant_user_email'),
    )
    op.create_index('ix_users_tenant_id', 'users', ['tenant_id'])
    op.create_index('ix_users_email', 'users', ['email'])

    op.create_table(
        'plans',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('code', sa.String(length=64), nullable=False, unique=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.String(length=1000), nullable=True),
        sa.Column('price', sa.Numeric(precision=12, scale=2), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='ARS'),
        sa.Column('interval', sa.String(length=10), nullable=False, server_default='month'),
        sa.Column('trial_days', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('mp_preapproval_plan_id', sa.String(length=128), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('tenant_id', sa.String(length=64), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('plan_id', sa.String(length=64), sa.ForeignKey('plans.id'), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False, server_default='MERCADOPAGO'),
        sa.Column('external_subscription_id', sa.String(length=128), nullable=False, unique=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='INACTIVE'),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )
    op.create_index('ix_subscriptions_tenant_id', 'subscriptions', ['tenant_id'])

    op.create_table(
        'subscription_events',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column(
            'subscription_id', sa.String(length=64), sa.ForeignKey('subscriptions.id'), nullable=False
        ),
        sa.Column('type', sa.String(length=64), nullable=False),
        sa.Column('payload', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        'ix_subscription_events_subscription_id', 'subscription_events', ['subscription_id']
    )

    op.create_table(
        'orders',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('tenant_id', sa.String(length=64), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('buyer_email', sa.String(length=320), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='ARS'),
        sa.Column('total', sa.Numeric(precision=12, scale=2), nullable=False, server_default='0'),
        sa.Column('payment_status', sa.String(length=20), nullable=False, server_default='PENDING'),
        sa.Column('payment_reference', sa.String(length=128), nullable=True),
        sa.Column('payment_method', sa.String(length=64), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_orders_tenant_id', 'orders', ['tenant_id'])

    op.create_table(
        'order_items',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column(
            'order_id',
            sa.String(length=64),
            sa.ForeignKey('orders.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('product_id', sa.String(length=64), nullable=False),
        sa.Column('product_name', sa.String(length=255), nullable=False),
        sa.Column('product_image', sa.String(length=1024), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('unit_price', sa.Numeric(precision=12, scale=2), nullable=False),
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])

    op.create_table(
        'store_payment_accounts',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('tenant_id', sa.String(length=64), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('provider_user_id', sa.String(length=64), nullable=True),
        sa.Column('access_token', sa.Text(), nullable=False),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        sa.Column('public_key', sa.String(length=255), nullable=True),
        sa.Column('scope', sa.String(length=255), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('tenant_id', 'provider', name='uq_store_payment_account'),
    )
    op.create_index('ix_store_payment_accounts_tenant_id', 'store_payment_accounts', ['tenant_id'])
    op.create_index(
        'ix_store_payment_accounts_provider_user_id', 'store_payment_accounts', ['provider_user_id']
    )

    op.create_table(
        'payments',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('tenant_id', sa.String(length=64), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('order_id', sa.String(length=64), sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('external_payment_id', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('status_detail', sa.String(length=128), nullable=True),
        sa.Column('amount', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=True),
        sa.Column('raw_response', sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            'provider', 'external_payment_id', name='uq_payment_provider_external_id'
        ),
    )
    op.create_index('ix_payments_tenant_id', 'payments', ['tenant_id'])
    op.create_index('ix_payments_order_id', 'payments', ['order_id'])

    op.create_table(
        'payment_events',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('tenant_id', sa.String(length=64), nullable=True),
        sa.Column('order_id', sa.String(length=64), nullable=True),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('payload', sa.Text(), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('provider', 'event_id', name='uq_payment_event_provider_event'),
    )
    op.create_index('ix_payment_events_tenant_id', 'payment_events', ['tenant_id'])

    op.create_table(
        'idempotency_keys',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('scope', sa.String(length=128), nullable=False),
        sa.Column('key', sa.String(length=128), nullable=False),
        sa.Column('request_hash', sa.String(length=64), nullable=False),
        sa.Column('response_status', sa.Integer(), nullable=True),
        sa.Column('response_body', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint('tenant_id', 'scope', 'key', name='uq_idempotency_scope_key'),
    )
    op.create_index('ix_idempotency_keys_expires_at', 'idempotency_keys', ['expires_at'])


def downgrade() -> None:
    op.drop_index('ix_idempotency_keys_expires_at', table_name='idempotency_keys')
    op.drop_table('idempotency_keys')
    op.drop_index('ix_payment_events_tenant_id', table_name='payment_events')
    op.drop_table('payment_events')
    op.drop_index('ix_payments_order_id', table_name='payments')
    op.drop_index('ix_payments_tenant_id', table_name='payments')
    op.drop_table('payments')
    op.drop_index('ix_store_payment_accounts_provider_user_id', table_name='store_payment_accounts')
    op.drop_index('ix_store_payment_accounts_tenant_id', table_name='store_payment_accounts')
    op.drop_table('store_payment_accounts')
    op.drop_index('ix_order_items_order_id', table_name='order_items')
    op.drop_table('order_items')
    op.drop_index('ix_orders_tenant_id', table_name='orders')
    op.drop_table('orders')
    op.drop_index('ix_subscription_events_subscription_id', table_name='subscription_events')
    op.drop_table('subscription_events')
    op.drop_index('ix_subscriptions_tenant_id', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_table('plans')
    op.drop_index('ix_users_email', table_name='users')
    op.drop_index('ix_users_tenant_id', table_name='users')
    op.drop_table('users')
    op.drop_table('tenants')
