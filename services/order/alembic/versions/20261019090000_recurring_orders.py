from alembic import op
import sqlalchemy as sa

revision = "20261019090000"
down_revision = None

UTC_NOW = sa.text("(now() at time zone 'utc')")

def _money():
    return [
        sa.Column('subtotal_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('tax_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('shipping_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('discount_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('payment_method', sa.String(length=32), nullable=False, server_default=''),
    ]

def _line_columns():
    return [
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('sku', sa.String(length=64), nullable=False, server_default=''),
        sa.Column('qty', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.BigInteger(), nullable=False),
        sa.Column('line_total_cents', sa.BigInteger(), nullable=False),
        sa.Column('title_snapshot', sa.String(length=255), nullable=False),
    ]

def upgrade():
    op.create_table(
        'recurring_schedules',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_number', sa.String(length=64), nullable=False, unique=True, index=True),
        sa.Column('customer_id', sa.String(length=255), nullable=False, index=True),
        sa.Column('customer_email', sa.String(length=255), nullable=False, server_default=''),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('is_recurring', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('schedule_status', sa.String(length=16), nullable=False, server_default='active', index=True),
        sa.Column('next_delivery_at', sa.DateTime(), nullable=True, index=True),
        sa.Column('start_date', sa.DateTime(), nullable=True),
        sa.Column('end_date', sa.DateTime(), nullable=True),
        sa.Column('days_of_week', sa.JSON(), nullable=False),
        sa.Column('include_dates', sa.JSON(), nullable=False),
        sa.Column('exclude_dates', sa.JSON(), nullable=False),
        sa.Column('selected_dates', sa.JSON(), nullable=False),
        sa.Column('recurrence_notes', sa.String(length=1000), nullable=False, server_default=''),
        sa.Column('shipping_address', sa.JSON(), nullable=False),
        sa.Column('billing_address', sa.JSON(), nullable=True),
        *_money(),
        sa.Column('notes', sa.Text(), nullable=False, server_default=''),
        sa.Column('claim_token', sa.String(length=32), nullable=True),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=UTC_NOW),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=UTC_NOW),
    )
    op.create_table(
        'schedule_items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('schedule_id', sa.Integer(), sa.ForeignKey('recurring_schedules.id', ondelete='CASCADE'), nullable=False),
        *_line_columns(),
        sa.CheckConstraint('qty >= 1', name='ck_schedule_items_qty_positive'),
    )
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_number', sa.String(length=64), nullable=False, unique=True, index=True),
        sa.Column('schedule_id', sa.Integer(), sa.ForeignKey('recurring_schedules.id', ondelete='SET NULL'), nullable=True, index=True),
        sa.Column('customer_id', sa.String(length=255), nullable=False, index=True),
        sa.Column('user_email', sa.String(length=255), nullable=False, server_default=''),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('shipping_address', sa.JSON(), nullable=False),
        sa.Column('billing_address', sa.JSON(), nullable=True),
        *_money(),
        sa.Column('estimated_delivery', sa.DateTime(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=False, server_default=''),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=UTC_NOW),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=UTC_NOW),
    )
    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        *_line_columns(),
        sa.CheckConstraint('qty >= 1', name='ck_order_items_qty_positive'),
    )
    op.create_table(
        'inventory',
        sa.Column('product_id', sa.Integer(), primary_key=True),
        sa.Column('in_stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sku', sa.String(length=64), nullable=False, server_default=''),
        sa.Column('title', sa.String(length=255), nullable=False, server_default=''),
        sa.Column('price_cents', sa.BigInteger(), nullable=False, server_default='0'),
    )
    op.create_table(
        'audit_log',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('actor', sa.String(length=255), nullable=False),
        sa.Column('action', sa.String(length=64), nullable=False),
        sa.Column('entity', sa.String(length=64), nullable=False, server_default='recurring_schedule'),
        sa.Column('entity_id', sa.String(length=255), nullable=False, index=True),
        sa.Column('before', sa.JSON(), nullable=True),
        sa.Column('after', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=UTC_NOW),
    )

def downgrade():
    op.drop_table('audit_log')
    op.drop_table('inventory')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('schedule_items')
    op.drop_table('recurring_schedules')
