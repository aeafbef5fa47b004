"""Initial schema: orders, payments, order_events, invoice_sequences

Revision ID: lp0001_initial
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'lp0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('orders',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('invoice_number', sa.String(length=64), nullable=False),
    sa.Column('lane_id', sa.String(length=64), nullable=False),
    sa.Column('amount', sa.Numeric(precision=10, scale=2), nullable=False),
    sa.Column('status', sa.String(length=16), nullable=False, server_default='OPEN'),
    sa.Column('user_id', sa.Integer(), nullable=True),
    sa.Column('notes', sa.Text(), nullable=True),
    sa.Column('needs_reconciliation', sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column('reconciliation_note', sa.String(length=255), nullable=True),
    sa.Column('synced_to_zoho', sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column('zoho_sales_receipt_id', sa.String(length=64), nullable=True),
    sa.Column('sync_error', sa.Text(), nullable=True),
    sa.Column('sync_attempts', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('last_sync_attempt_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
    sa.PrimaryKeyConstraint('id'),
    sqlite_autoincrement=True
    )
    with op.batch_alter_table('orders', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_orders_invoice_number'), ['invoice_number'], unique=True)
        batch_op.create_index(batch_op.f('ix_orders_status'), ['status'], unique=False)
        batch_op.create_index(batch_op.f('ix_orders_needs_reconciliation'), ['needs_reconciliation'], unique=False)
        batch_op.create_index(batch_op.f('ix_orders_synced_to_zoho'), ['synced_to_zoho'], unique=False)
        batch_op.create_index('ix_orders_lane_created', ['lane_id', 'created_at'], unique=False)

    op.create_table('payments',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('order_id', sa.Integer(), nullable=False),
    sa.Column('provider', sa.String(length=32), nullable=False),
    sa.Column('transaction_id', sa.String(length=128), nullable=False),
    sa.Column('auth_code', sa.String(length=64), nullable=True),
    sa.Column('status', sa.String(length=16), nullable=False, server_default='PENDING'),
    sa.Column('auto_capture', sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column('amount', sa.Numeric(precision=10, scale=2), nullable=False),
    sa.Column('raw_response', sa.JSON(), nullable=True),
    sa.Column('decline_reason', sa.String(length=255), nullable=True),
    sa.Column('user_id', sa.Integer(), nullable=True),
    sa.Column('settled_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
    sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('provider', 'transaction_id', name='uq_payments_provider_txn'),
    sqlite_autoincrement=True
    )
    with op.batch_alter_table('payments', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_payments_order_id'), ['order_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_payments_transaction_id'), ['transaction_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_payments_status'), ['status'], unique=False)
        batch_op.create_index(batch_op.f('ix_payments_created_at'), ['created_at'], unique=False)

    op.create_table('order_events',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('order_id', sa.Integer(), nullable=False),
    sa.Column('payment_id', sa.Integer(), nullable=True),
    sa.Column('event_type', sa.String(length=48), nullable=False),
    sa.Column('from_status', sa.String(length=16), nullable=True),
    sa.Column('to_status', sa.String(length=16), nullable=True),
    sa.Column('actor_user_id', sa.Integer(), nullable=True),
    sa.Column('note', sa.String(length=255), nullable=True),
    sa.Column('occurred_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
    sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sqlite_autoincrement=True
    )
    with op.batch_alter_table('order_events', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_order_events_order_id'), ['order_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_order_events_payment_id'), ['payment_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_order_events_event_type'), ['event_type'], unique=False)
        batch_op.create_index('ix_order_events_order_occurred', ['order_id', 'occurred_at'], unique=False)

    op.create_table('invoice_sequences',
    sa.Column('id', sa.Integer(), nullable=False),
    sa.Column('lane_key', sa.String(length=16), nullable=False),
    sa.Column('business_date', sa.String(length=8), nullable=False),
    sa.Column('next_number', sa.Integer(), nullable=False, server_default='1'),
    sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('lane_key', 'business_date', name='uq_invoice_sequences_lane_date'),
    sqlite_autoincrement=True
    )


def downgrade():
    op.drop_table('invoice_sequences')

    with op.batch_alter_table('order_events', schema=None) as batch_op:
        batch_op.drop_index('ix_order_events_order_occurred')
        batch_op.drop_index(batch_op.f('ix_order_events_event_type'))
        batch_op.drop_index(batch_op.f('ix_order_events_payment_id'))
        batch_op.drop_index(batch_op.f('ix_order_events_order_id'))
    op.drop_table('order_events')

    with op.batch_alter_table('payments', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_payments_created_at'))
        batch_op.drop_index(batch_op.f('ix_payments_status'))
        batch_op.drop_index(batch_op.f('ix_payments_transaction_id'))
        batch_op.drop_index(batch_op.f('ix_payments_order_id'))
    op.drop_table('payments')

    with op.batch_alter_table('orders', schema=None) as batch_op:
        batch_op.drop_index('ix_orders_lane_created')
        batch_op.drop_index(batch_op.f('ix_orders_synced_to_zoho'))
        batch_op.drop_index(batch_op.f('ix_orders_needs_reconciliation'))
        batch_op.drop_index(batch_op.f('ix_orders_status'))
        batch_op.drop_index(batch_op.f('ix_orders_invoice_number'))
    op.drop_table('orders')
