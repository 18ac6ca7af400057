"""catalog, cart, inventory and order tables

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa

revision = '0001_init'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'products',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('sku', sa.String(50), nullable=True, unique=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('price', sa.Numeric(12, 2), nullable=False),
        sa.Column('image_url', sa.String(500), nullable=True),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_table(
        'inventory',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('product_id', sa.Integer, sa.ForeignKey('products.id'), nullable=False),
        sa.Column('on_hand', sa.Integer, nullable=False, server_default='0'),
        sa.Column('reserved', sa.Integer, nullable=False, server_default='0'),
        sa.Column('low_stock_threshold', sa.Integer, nullable=False, server_default='10'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint('on_hand >= 0', name='ck_inventory_on_hand_non_negative'),
        sa.CheckConstraint('reserved >= 0', name='ck_inventory_reserved_non_negative'),
        sa.CheckConstraint('reserved <= on_hand', name='ck_inventory_reserved_within_on_hand'),
    )
    op.create_index('ix_inventory_product_id', 'inventory', ['product_id'], unique=True)

    op.create_table(
        'carts',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('user_id', sa.Integer, nullable=False),
    )
    op.create_index('ix_carts_user_id', 'carts', ['user_id'], unique=True)
    op.create_table(
        'cart_items',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('cart_id', sa.Integer, sa.ForeignKey('carts.id'), nullable=False),
        sa.Column('product_id', sa.Integer, nullable=False),
        sa.Column('quantity', sa.Integer, nullable=False),
        sa.Column('price', sa.Numeric(12, 2), nullable=False),
    )

    op.create_table(
        'orders',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_number', sa.String(20), nullable=False),
        sa.Column('user_id', sa.Integer, nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('ship_full_name', sa.String(200), nullable=False),
        sa.Column('ship_phone', sa.String(50), nullable=False),
        sa.Column('ship_address', sa.String(300), nullable=False),
        sa.Column('ship_city', sa.String(100), nullable=False),
        sa.Column('ship_state', sa.String(100), nullable=False),
        sa.Column('ship_country', sa.String(100), nullable=False),
        sa.Column('ship_postal_code', sa.String(20), nullable=True),
        sa.Column('subtotal', sa.Numeric(12, 2), nullable=False),
        sa.Column('shipping_fee', sa.Numeric(12, 2), nullable=False),
        sa.Column('tax', sa.Numeric(12, 2), nullable=False),
        sa.Column('discount', sa.Numeric(12, 2), nullable=False),
        sa.Column('total', sa.Numeric(12, 2), nullable=False),
        sa.Column('payment_method', sa.String(20), nullable=False),
        sa.Column('payment_status', sa.String(20), nullable=False),
        sa.Column('payment_reference', sa.String(64), nullable=False),
        sa.Column('transaction_id', sa.String(100), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refund_requested_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_orders_order_number', 'orders', ['order_number'], unique=True)
    op.create_index('ix_orders_payment_reference', 'orders', ['payment_reference'], unique=True)
    op.create_index('ix_orders_user_id', 'orders', ['user_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_payment_status', 'orders', ['payment_status'])
    op.create_index('ix_orders_created_at', 'orders', ['created_at'])

    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('position', sa.Integer, nullable=False),
        sa.Column('product_id', sa.Integer, nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('unit_price', sa.Numeric(12, 2), nullable=False),
        sa.Column('quantity', sa.Integer, nullable=False),
        sa.Column('image_url', sa.String(500), nullable=False),
        sa.CheckConstraint('quantity >= 1', name='ck_order_items_quantity_positive'),
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])

    op.create_table(
        'order_timeline',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('note', sa.Text, nullable=True),
    )
    op.create_index('ix_order_timeline_order_id', 'order_timeline', ['order_id'])

    op.create_table(
        'order_sequences',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('day', sa.Date, nullable=False),
        sa.Column('last_value', sa.Integer, nullable=False),
        sa.UniqueConstraint('day', name='uq_order_sequences_day'),
    )


def downgrade() -> None:
    op.drop_table('order_sequences')
    op.drop_table('order_timeline')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('cart_items')
    op.drop_table('carts')
    op.drop_table('inventory')
    op.drop_table('products')
