"""Shopify connector tables: stores, sync state, webhook ledger, orders, products

Revision ID: shopify_connector_001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect
from sqlalchemy.dialects import postgresql


revision: str = 'shopify_connector_001'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _json():
    return sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    """Create the Shopify connector tables (idempotent)"""
    conn = op.get_bind()
    existing = set(inspect(conn).get_table_names())

    if 'shopify_stores' not in existing:
        op.create_table(
            'shopify_stores',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('shop', sa.String(255), nullable=False),
            sa.Column('access_token', sa.Text(), nullable=True),
            sa.Column('scope', sa.Text(), nullable=True),
            sa.Column('scopes', _json(), nullable=False),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('installed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('uninstalled_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('operator_id', sa.String(64), nullable=True),
            sa.Column('webhook_ids', _json(), nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint('shop', name='uq_shopify_stores_shop'),
        )
        op.create_index('idx_shopify_stores_operator_id', 'shopify_stores', ['operator_id'])
        op.create_index('idx_shopify_stores_is_active', 'shopify_stores', ['is_active'])

    if 'shopify_sync_state' not in existing:
        op.create_table(
            'shopify_sync_state',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('store_id', sa.String(36), sa.ForeignKey('shopify_stores.id', ondelete='CASCADE'), nullable=False),
            sa.Column('shop', sa.String(255), nullable=False),
            sa.Column('resource', sa.String(32), nullable=False),
            sa.Column('cursor_value', sa.DateTime(timezone=True), nullable=True),
            sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('last_run_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('last_error', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint('shop', 'resource', name='uq_shopify_sync_state_shop_resource'),
        )

    if 'shopify_webhook_events' not in existing:
        op.create_table(
            'shopify_webhook_events',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('shop', sa.String(255), nullable=False),
            sa.Column('topic', sa.String(128), nullable=False),
            sa.Column('webhook_id', sa.String(128), nullable=True),
            sa.Column('dedupe_key', sa.String(255), nullable=False),
            sa.Column('order_id', sa.String(64), nullable=True),
            sa.Column('status', sa.String(16), nullable=False, server_default='received'),
            sa.Column('attempts', sa.Integer(), nullable=False, server_default='1'),
            sa.Column('last_error', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint('shop', 'dedupe_key', name='uq_shopify_webhook_events_shop_dedupe'),
        )
        op.create_index('idx_shopify_webhook_events_order', 'shopify_webhook_events', ['shop', 'topic', 'order_id'])

    if 'shopify_orders' not in existing:
        op.create_table(
            'shopify_orders',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('operator_id', sa.String(64), nullable=False),
            sa.Column('shop', sa.String(255), nullable=False),
            sa.Column('shopify_order_id', sa.String(64), nullable=False),
            sa.Column('order_name', sa.Text(), nullable=True),
            sa.Column('order_number', sa.Integer(), nullable=True),
            sa.Column('financial_status', sa.Text(), nullable=True),
            sa.Column('fulfillment_status', sa.Text(), nullable=True),
            sa.Column('currency', sa.String(8), nullable=True),
            sa.Column('total_price', sa.Text(), nullable=True),
            sa.Column('customer_email', sa.Text(), nullable=True),
            sa.Column('created_at_shopify', sa.DateTime(timezone=True), nullable=True),
            sa.Column('updated_at_shopify', sa.DateTime(timezone=True), nullable=True),
            sa.Column('raw', _json(), nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint('operator_id', 'shop', 'shopify_order_id', name='uq_shopify_orders_operator_shop_order'),
        )
        op.create_index('idx_shopify_orders_shop_order', 'shopify_orders', ['shop', 'shopify_order_id'])

    if 'shopify_products' not in existing:
        op.create_table(
            'shopify_products',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('operator_id', sa.String(64), nullable=False),
            sa.Column('shop', sa.String(255), nullable=False),
            sa.Column('shopify_product_id', sa.String(64), nullable=False),
            sa.Column('title', sa.Text(), nullable=True),
            sa.Column('status', sa.Text(), nullable=True),
            sa.Column('vendor', sa.Text(), nullable=True),
            sa.Column('product_type', sa.Text(), nullable=True),
            sa.Column('handle', sa.Text(), nullable=True),
            sa.Column('created_at_shopify', sa.DateTime(timezone=True), nullable=True),
            sa.Column('updated_at_shopify', sa.DateTime(timezone=True), nullable=True),
            sa.Column('raw', _json(), nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint('operator_id', 'shop', 'shopify_product_id', name='uq_shopify_products_operator_shop_product'),
        )
        op.create_index('idx_shopify_products_shop_product', 'shopify_products', ['shop', 'shopify_product_id'])


def downgrade() -> None:
    op.drop_index('idx_shopify_products_shop_product', table_name='shopify_products')
    op.drop_table('shopify_products')
    op.drop_index('idx_shopify_orders_shop_order', table_name='shopify_orders')
    op.drop_table('shopify_orders')
    op.drop_index('idx_shopify_webhook_events_order', table_name='shopify_webhook_events')
    op.drop_table('shopify_webhook_events')
    op.drop_table('shopify_sync_state')
    op.drop_index('idx_shopify_stores_is_active', table_name='shopify_stores')
    op.drop_index('idx_shopify_stores_operator_id', table_name='shopify_stores')
    op.drop_table('shopify_stores')
