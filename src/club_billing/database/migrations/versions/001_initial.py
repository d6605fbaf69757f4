"""Initial migration - reconciliation queue, orders, entitlements and supporting tables

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'orders',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('order_number', sa.String(64), nullable=False, unique=True),
        sa.Column('tracking_key', sa.String(255), nullable=True, unique=True),
        sa.Column('user_id', sa.String(36), nullable=True),
        sa.Column('product_id', sa.String(64), nullable=True),
        sa.Column('tariff_id', sa.String(64), nullable=True),
        sa.Column('offer_id', sa.String(64), nullable=True),
        sa.Column('plan_title', sa.String(255), nullable=True),
        sa.Column('plan_key', sa.String(255), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('amount', sa.Integer(), nullable=True),
        sa.Column('currency', sa.String(3), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('reconcile_source', sa.String(50), nullable=True),
        sa.Column('meta_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_orders_user_id', 'orders', ['user_id'])
    op.create_index('ix_orders_plan_key', 'orders', ['plan_key'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_created_at', 'orders', ['created_at'])

    op.create_table(
        'reconcile_queue',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('provider_event_id', sa.String(255), nullable=False, unique=True),
        sa.Column('provider', sa.String(50), nullable=False, server_default='stripe'),
        sa.Column('source', sa.String(20), nullable=False, server_default='webhook'),
        sa.Column('tracking_key', sa.String(255), nullable=False),
        sa.Column('raw_status', sa.String(64), nullable=False),
        sa.Column('status_normalized', sa.String(20), nullable=False),
        sa.Column('processing_status', sa.String(32), nullable=False, server_default='pending'),
        sa.Column('status_reason', sa.Text(), nullable=True),
        sa.Column('plan_title', sa.String(255), nullable=True),
        sa.Column('plan_key', sa.String(255), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=True),
        sa.Column('currency', sa.String(3), nullable=True),
        sa.Column('occurred_at', sa.DateTime(), nullable=True),
        sa.Column('matched_order_id', sa.String(36), sa.ForeignKey('orders.id'), nullable=True),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('last_attempted_at', sa.DateTime(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('raw_payload_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_reconcile_queue_tracking_key', 'reconcile_queue', ['tracking_key'])
    op.create_index('ix_reconcile_queue_plan_key', 'reconcile_queue', ['plan_key'])
    op.create_index('ix_reconcile_queue_processing_status', 'reconcile_queue', ['processing_status'])
    op.create_index('ix_reconcile_queue_status_normalized', 'reconcile_queue', ['status_normalized'])
    op.create_index('ix_reconcile_queue_created_at', 'reconcile_queue', ['created_at'])

    op.create_table(
        'payment_methods',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('token', sa.String(255), nullable=False),
        sa.Column('provider_customer_id', sa.String(255), nullable=True),
        sa.Column('card_last4', sa.String(4), nullable=True),
        sa.Column('card_brand', sa.String(32), nullable=True),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_payment_methods_user_id', 'payment_methods', ['user_id'])

    op.create_table(
        'entitlements',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), nullable=True),
        sa.Column('product_id', sa.String(64), nullable=False),
        sa.Column('tariff_id', sa.String(64), nullable=True),
        sa.Column('order_id', sa.String(36), sa.ForeignKey('orders.id'), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('access_start_at', sa.DateTime(), nullable=False),
        sa.Column('access_end_at', sa.DateTime(), nullable=False),
        sa.Column('auto_renew', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('next_charge_at', sa.DateTime(), nullable=True),
        sa.Column('charge_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('payment_method_id', sa.String(36), sa.ForeignKey('payment_methods.id'), nullable=True),
        sa.Column('provider_subscription_id', sa.String(255), nullable=True),
        sa.Column('claim_token', sa.String(36), nullable=True),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.Column('blocked_reason', sa.String(64), nullable=True),
        sa.Column('meta_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('access_end_at > access_start_at', name='ck_entitlements_window'),
    )
    op.create_index('ix_entitlements_order_id', 'entitlements', ['order_id'])
    op.create_index('ix_entitlements_provider_subscription_id', 'entitlements', ['provider_subscription_id'])
    op.create_index('ix_entitlements_user_product', 'entitlements', ['user_id', 'product_id'])
    op.create_index('ix_entitlements_next_charge_at', 'entitlements', ['next_charge_at'])
    op.create_index('ix_entitlements_status', 'entitlements', ['status'])

    op.create_table(
        'plan_mappings',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('plan_key', sa.String(255), nullable=False, unique=True),
        sa.Column('provider_plan_title', sa.String(255), nullable=False),
        sa.Column('product_id', sa.String(64), nullable=False),
        sa.Column('tariff_id', sa.String(64), nullable=True),
        sa.Column('offer_id', sa.String(64), nullable=True),
        sa.Column('auto_create_order', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )

    op.create_table(
        'tariffs',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('product_id', sa.String(64), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('access_days', sa.Integer(), nullable=True),
        sa.Column('price', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_tariffs_product_id', 'tariffs', ['product_id'])

    op.create_table(
        'charge_attempts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('entitlement_id', sa.String(36), sa.ForeignKey('entitlements.id'), nullable=False),
        sa.Column('attempted_at', sa.DateTime(), nullable=False),
        sa.Column('succeeded', sa.Boolean(), nullable=False),
        sa.Column('error_code', sa.String(64), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('trigger', sa.String(20), nullable=False, server_default='schedule'),
        sa.Column('tracking_key', sa.String(255), nullable=True),
        sa.Column('provider_transaction_id', sa.String(255), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=True),
        sa.Column('currency', sa.String(3), nullable=True),
    )
    op.create_index('ix_charge_attempts_entitlement_id', 'charge_attempts', ['entitlement_id'])
    op.create_index('ix_charge_attempts_tracking_key', 'charge_attempts', ['tracking_key'])

    op.create_table(
        'entitlement_grants',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('order_id', sa.String(36), sa.ForeignKey('orders.id'), nullable=False, unique=True),
        sa.Column('entitlement_id', sa.String(36), sa.ForeignKey('entitlements.id'), nullable=True),
        sa.Column('granted_at', sa.DateTime(), nullable=False),
    )

    op.create_table(
        'audit_log',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('actor', sa.String(255), nullable=False, server_default='system'),
        sa.Column('action', sa.String(64), nullable=False),
        sa.Column('entity_type', sa.String(64), nullable=False),
        sa.Column('entity_id', sa.String(255), nullable=False),
        sa.Column('meta_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_audit_log_entity', 'audit_log', ['entity_type', 'entity_id'])
    op.create_index('ix_audit_log_action', 'audit_log', ['action'])


def downgrade() -> None:
    op.drop_table('audit_log')
    op.drop_table('entitlement_grants')
    op.drop_table('charge_attempts')
    op.drop_table('tariffs')
    op.drop_table('plan_mappings')
    op.drop_table('entitlements')
    op.drop_table('payment_methods')
    op.drop_table('reconcile_queue')
    op.drop_table('orders')
