"""
Alembic migration: Initial fulfillment schema.

Creates users, orders with their status history, return requests with
status history and admin notes, the processed webhook event ledger and the
webhook capture log.

Revision ID: 001
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ORDER_STATUSES = ('pending', 'processing', 'shipped', 'delivered', 'cancelled')
PAYMENT_STATUSES = ('pending', 'completed', 'failed')
SHIPMENT_STATUSES = ('not_requested', 'pending', 'created', 'failed')
RETURN_STATUSES = (
    'requested',
    'approved',
    'pickup_scheduled',
    'in_transit',
    'inspected',
    'refund_initiated',
    'refunded',
    'completed',
    'rejected',
)
REFUND_STATUSES = ('initiated', 'processed', 'failed')

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), 'postgresql')


def _enum(name: str, values: Sequence[str]) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False, create_constraint=True, length=32)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    """Create all fulfillment tables."""
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('full_name', sa.String(length=255), nullable=True),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('is_admin', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'orders',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('status', _enum('order_status', ORDER_STATUSES), nullable=False),
        sa.Column('total_amount', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('items', JSON_TYPE, nullable=False),
        sa.Column('shipping_address', JSON_TYPE, nullable=False),
        sa.Column('payment_status', _enum('order_payment_status', PAYMENT_STATUSES), nullable=False),
        sa.Column('payment_gateway_order_id', sa.String(length=255), nullable=True),
        sa.Column('payment_gateway_payment_id', sa.String(length=255), nullable=True),
        sa.Column('payment_signature', sa.String(length=255), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('shipping_order_id', sa.String(length=64), nullable=True),
        sa.Column('shipping_shipment_id', sa.String(length=64), nullable=True),
        sa.Column('shipping_awb_code', sa.String(length=64), nullable=True),
        sa.Column('shipping_pending_shipment_id', sa.String(length=64), nullable=True),
        sa.Column('courier_name', sa.String(length=128), nullable=True),
        sa.Column('current_location', sa.String(length=255), nullable=True),
        sa.Column('tracking_updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('shipment_status', _enum('order_shipment_status', SHIPMENT_STATUSES), nullable=False),
        sa.Column('shipment_attempts', sa.Integer(), nullable=False),
        sa.Column('shipment_next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('shipment_error', sa.Text(), nullable=True),
        sa.Column('warning', sa.Text(), nullable=True),
        sa.Column('cancelled_from', _enum('order_cancelled_from', ORDER_STATUSES), nullable=True),
        sa.Column('version', sa.Integer(), server_default='1', nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('shipping_awb_code'),
        sa.CheckConstraint(
            '(shipping_shipment_id IS NULL AND shipping_awb_code IS NULL) OR '
            '(shipping_shipment_id IS NOT NULL AND shipping_awb_code IS NOT NULL)',
            name='ck_orders_shipment_awb_pair',
        ),
        sa.CheckConstraint(
            "status NOT IN ('shipped', 'delivered') OR shipping_awb_code IS NOT NULL",
            name='ck_orders_shipped_requires_awb',
        ),
        sa.CheckConstraint('total_amount >= 0', name='ck_orders_total_non_negative'),
    )
    op.create_index('ix_orders_user_id', 'orders', ['user_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_payment_gateway_order_id', 'orders', ['payment_gateway_order_id'])
    op.create_index('ix_orders_shipping_shipment_id', 'orders', ['shipping_shipment_id'])
    op.create_index('ix_orders_shipment_status', 'orders', ['shipment_status'])
    op.create_index('ix_orders_shipment_retry', 'orders', ['shipment_status', 'shipment_next_retry_at'])

    op.create_table(
        'order_status_history',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('order_id', sa.Uuid(), nullable=False),
        sa.Column('from_status', _enum('order_history_from_status', ORDER_STATUSES), nullable=True),
        sa.Column('to_status', _enum('order_history_to_status', ORDER_STATUSES), nullable=False),
        sa.Column('actor', sa.String(length=128), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_order_status_history_order_id', 'order_status_history', ['order_id'])

    op.create_table(
        'return_requests',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('order_id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('items', JSON_TYPE, nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('status', _enum('return_status', RETURN_STATUSES), nullable=False),
        sa.Column('requires_manual_review', sa.Boolean(), nullable=False),
        sa.Column('review_reason', sa.Text(), nullable=True),
        sa.Column('pickup_order_id', sa.String(length=64), nullable=True),
        sa.Column('pickup_shipment_id', sa.String(length=64), nullable=True),
        sa.Column('pickup_awb_code', sa.String(length=64), nullable=True),
        sa.Column('refund_id', sa.String(length=255), nullable=True),
        sa.Column('refund_amount', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('refund_status', _enum('refund_status', REFUND_STATUSES), nullable=True),
        sa.Column('refund_reconciled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refund_error_code', sa.String(length=128), nullable=True),
        sa.Column('refund_error_description', sa.Text(), nullable=True),
        sa.Column('version', sa.Integer(), server_default='1', nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('refund_id'),
    )
    op.create_index('ix_return_requests_order_id', 'return_requests', ['order_id'])
    op.create_index('ix_return_requests_user_id', 'return_requests', ['user_id'])
    op.create_index('ix_return_requests_status', 'return_requests', ['status'])
    op.create_index('ix_return_requests_pickup_shipment_id', 'return_requests', ['pickup_shipment_id'])
    op.create_index('ix_return_requests_pickup_awb_code', 'return_requests', ['pickup_awb_code'])

    op.create_table(
        'return_status_history',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('return_id', sa.Uuid(), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('status', _enum('return_history_status', RETURN_STATUSES), nullable=False),
        sa.Column('actor', sa.String(length=128), nullable=False),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['return_id'], ['return_requests.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('return_id', 'sequence', name='uq_return_status_history_seq'),
    )
    op.create_index('ix_return_status_history_return_id', 'return_status_history', ['return_id'])

    op.create_table(
        'return_admin_notes',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('return_id', sa.Uuid(), nullable=False),
        sa.Column('note', sa.Text(), nullable=False),
        sa.Column('author', sa.String(length=255), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['return_id'], ['return_requests.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_return_admin_notes_return_id', 'return_admin_notes', ['return_id'])

    op.create_table(
        'processed_webhook_events',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('event_key', sa.String(length=255), nullable=False),
        sa.Column('entity_id', sa.String(length=64), nullable=True),
        sa.Column('outcome', sa.String(length=64), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'event_type', 'event_key', name='uq_processed_webhook_event'),
    )

    op.create_table(
        'webhook_log_entries',
        sa.Column('id', sa.BigInteger().with_variant(sa.Integer(), 'sqlite'), autoincrement=True, nullable=False),
        sa.Column('source', sa.String(length=64), nullable=False),
        sa.Column('headers', JSON_TYPE, nullable=False),
        sa.Column('payload', JSON_TYPE, nullable=True),
        sa.Column('raw_body', sa.Text(), nullable=True),
        sa.Column('signature_valid', sa.Boolean(), nullable=True),
        sa.Column('outcome', sa.String(length=64), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_webhook_log_entries_source', 'webhook_log_entries', ['source'])
    op.create_index('ix_webhook_log_entries_received_at', 'webhook_log_entries', ['received_at'])


def downgrade() -> None:
    """Drop all fulfillment tables."""
    op.drop_table('webhook_log_entries')
    op.drop_table('processed_webhook_events')
    op.drop_table('return_admin_notes')
    op.drop_table('return_status_history')
    op.drop_table('return_requests')
    op.drop_table('order_status_history')
    op.drop_table('orders')
    op.drop_table('users')
