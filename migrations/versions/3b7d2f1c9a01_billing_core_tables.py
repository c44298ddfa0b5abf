"""billing core: operators, agents, items, products, customers, subscriptions, transactions, counters

Revision ID: 3b7d2f1c9a01
Revises:
Create Date: 2025-06-02 10:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '3b7d2f1c9a01'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    ]


def upgrade():
    op.create_table(
        'operators',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('contact', sa.String(length=64), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        *_timestamps(),
    )

    op.create_table(
        'agents',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('operator_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('contact', sa.String(length=64), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        *_timestamps(),
        sa.ForeignKeyConstraint(['operator_id'], ['operators.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_agents_operator_id', 'agents', ['operator_id'])

    op.create_table(
        'operator_items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('operator_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('selling_price', sa.Float(), nullable=False),
        sa.Column('cost_price', sa.Float(), nullable=False, server_default=sa.text('0')),
        sa.Column('default_note', sa.String(length=255), nullable=True),
        sa.Column('position', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.ForeignKeyConstraint(['operator_id'], ['operators.id'], ondelete='CASCADE'),
        sa.CheckConstraint('selling_price > 0', name='ck_operator_items_selling_price_positive'),
    )
    op.create_index('ix_operator_items_operator_id', 'operator_items', ['operator_id'])

    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('operator_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('plan_type', sa.String(length=10), nullable=False, server_default='BASE'),
        sa.Column('customer_price', sa.Float(), nullable=False),
        sa.Column('operator_cost', sa.Float(), nullable=False, server_default=sa.text('0')),
        sa.Column('interval_value', sa.Integer(), nullable=False, server_default=sa.text('30')),
        sa.Column('interval_unit', sa.String(length=10), nullable=False, server_default='days'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        *_timestamps(),
        sa.ForeignKeyConstraint(['operator_id'], ['operators.id'], ondelete='RESTRICT'),
        sa.CheckConstraint("plan_type IN ('BASE','ADDON')", name='ck_products_plan_type_valid'),
        sa.CheckConstraint("interval_unit IN ('days','months')", name='ck_products_interval_unit_valid'),
        sa.CheckConstraint('interval_value > 0', name='ck_products_interval_value_positive'),
    )
    op.create_index('ix_products_operator_id', 'products', ['operator_id'])

    op.create_table(
        'customers',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('operator_id', sa.Integer(), nullable=False),
        sa.Column('agent_id', sa.Integer(), nullable=True),
        sa.Column('customer_code', sa.String(length=32), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('mobile', sa.String(length=16), nullable=True),
        sa.Column('locality', sa.String(length=255), nullable=True),
        sa.Column('billing_address', sa.Text(), nullable=True),
        sa.Column('remark', sa.Text(), nullable=True),
        sa.Column('connection_start_date', sa.DateTime(), nullable=True),
        sa.Column('default_extra_charge', sa.Float(), nullable=False, server_default=sa.text('0')),
        sa.Column('default_discount', sa.Float(), nullable=False, server_default=sa.text('0')),
        sa.Column('balance_amount', sa.Float(), nullable=False, server_default=sa.text('0')),
        sa.Column('last_bill_date', sa.DateTime(), nullable=True),
        sa.Column('last_bill_amount', sa.Float(), nullable=True),
        sa.Column('last_payment_amount', sa.Float(), nullable=True),
        sa.Column('last_payment_date', sa.DateTime(), nullable=True),
        sa.Column('last_payment_method', sa.String(length=20), nullable=True),
        sa.Column('earliest_expiry', sa.DateTime(), nullable=True),
        sa.Column('active_subscription_ids', sa.JSON(), nullable=False),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('deleted', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default=sa.text('1')),
        *_timestamps(),
        sa.ForeignKeyConstraint(['operator_id'], ['operators.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['agent_id'], ['agents.id'], ondelete='SET NULL'),
        sa.UniqueConstraint('operator_id', 'customer_code', name='uq_customers_operator_code'),
    )
    op.create_index('ix_customers_operator_id', 'customers', ['operator_id'])
    op.create_index('ix_customers_agent_id', 'customers', ['agent_id'])
    op.create_index('ix_customers_earliest_expiry', 'customers', ['earliest_expiry'])
    op.create_index('ix_customers_operator_active', 'customers', ['operator_id', 'active'])
    op.create_index('ix_customers_name', 'customers', ['name'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('customer_id', sa.Integer(), nullable=False),
        sa.Column('operator_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('plan_type', sa.String(length=10), nullable=False),
        sa.Column('start_date', sa.DateTime(), nullable=False),
        sa.Column('expiry_date', sa.DateTime(), nullable=False),
        sa.Column('interval_value', sa.Integer(), nullable=False),
        sa.Column('interval_unit', sa.String(length=10), nullable=False),
        sa.Column('customer_price', sa.Float(), nullable=False),
        sa.Column('operator_cost', sa.Float(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='ACTIVE'),
        sa.Column('renewal_number', sa.Integer(), nullable=False, server_default=sa.text('1')),
        sa.Column('pause_date', sa.DateTime(), nullable=True),
        sa.Column('resume_date', sa.DateTime(), nullable=True),
        sa.Column('invoice_id', sa.String(length=16), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['operator_id'], ['operators.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ondelete='RESTRICT'),
        sa.CheckConstraint(
            "status IN ('ACTIVE','EXPIRED','PAUSED','TERMINATED')",
            name='ck_subscriptions_status_valid',
        ),
    )
    op.create_index('ix_subscriptions_customer_id', 'subscriptions', ['customer_id'])
    op.create_index('ix_subscriptions_operator_id', 'subscriptions', ['operator_id'])
    op.create_index('ix_subscriptions_product_id', 'subscriptions', ['product_id'])
    op.create_index('ix_subscriptions_plan_type', 'subscriptions', ['plan_type'])
    op.create_index('ix_subscriptions_expiry_date', 'subscriptions', ['expiry_date'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
    op.create_index('ix_subscriptions_invoice_id', 'subscriptions', ['invoice_id'])
    op.create_index('ix_subscriptions_operator_expiry', 'subscriptions', ['operator_id', 'expiry_date'])
    op.create_index(
        'ix_subscriptions_operator_customer_status', 'subscriptions', ['operator_id', 'customer_id', 'status']
    )

    op.create_table(
        'transactions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('operator_id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=False),
        sa.Column('collected_by', sa.Integer(), nullable=False),
        sa.Column('collected_by_type', sa.String(length=10), nullable=False),
        sa.Column('type', sa.String(length=12), nullable=False),
        sa.Column('amount', sa.Float(), nullable=False),
        sa.Column('balance_before', sa.Float(), nullable=False),
        sa.Column('balance_after', sa.Float(), nullable=False),
        sa.Column('invoice_id', sa.String(length=16), nullable=True),
        sa.Column('receipt_number', sa.String(length=16), nullable=True),
        sa.Column('refund_id', sa.String(length=16), nullable=True),
        sa.Column('reversed_entry_id', sa.Integer(), nullable=True),
        sa.Column('product_id', sa.Integer(), nullable=True),
        sa.Column('start_date', sa.DateTime(), nullable=True),
        sa.Column('expiry_date', sa.DateTime(), nullable=True),
        sa.Column('base_amount', sa.Float(), nullable=False, server_default=sa.text('0')),
        sa.Column('extra_charge', sa.Float(), nullable=False, server_default=sa.text('0')),
        sa.Column('discount', sa.Float(), nullable=False, server_default=sa.text('0')),
        sa.Column('net_amount', sa.Float(), nullable=False, server_default=sa.text('0')),
        sa.Column('cost_of_goods_sold', sa.Float(), nullable=False, server_default=sa.text('0')),
        sa.Column('profit', sa.Float(), nullable=False, server_default=sa.text('0')),
        sa.Column('method', sa.String(length=20), nullable=True),
        sa.Column('is_opening_balance', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['operator_id'], ['operators.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['reversed_entry_id'], ['transactions.id'], ondelete='RESTRICT'),
        sa.UniqueConstraint('reversed_entry_id', name='uq_transactions_reversed_entry_id'),
        sa.CheckConstraint(
            "type IN ('INVOICE','PAYMENT','ADDON','ADJUSTMENT','REVERSAL','REFUND')",
            name='ck_transactions_type_valid',
        ),
        sa.CheckConstraint("collected_by_type IN ('Operator','Agent')", name='ck_transactions_actor_valid'),
    )
    op.create_index('ix_transactions_operator_id', 'transactions', ['operator_id'])
    op.create_index('ix_transactions_customer_id', 'transactions', ['customer_id'])
    op.create_index('ix_transactions_type', 'transactions', ['type'])
    op.create_index('ix_transactions_invoice_id', 'transactions', ['invoice_id'])
    op.create_index('ix_transactions_receipt_number', 'transactions', ['receipt_number'])
    op.create_index('ix_transactions_refund_id', 'transactions', ['refund_id'])
    op.create_index('ix_transactions_created_at', 'transactions', ['created_at'])
    op.create_index(
        'ix_transactions_operator_customer_created', 'transactions', ['operator_id', 'customer_id', 'created_at']
    )
    op.create_index('ix_transactions_operator_type_created', 'transactions', ['operator_id', 'type', 'created_at'])
    op.create_index('ix_transactions_operator_invoice', 'transactions', ['operator_id', 'invoice_id'])

    op.create_table(
        'counters',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('operator_id', sa.Integer(), nullable=True),
        sa.Column('year_month', sa.String(length=6), nullable=True),
        sa.Column('value', sa.Integer(), nullable=False, server_default=sa.text('0')),
        *_timestamps(),
        sa.ForeignKeyConstraint(['operator_id'], ['operators.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('name', name='uq_counters_name'),
    )
    op.create_index('ix_counters_operator_id', 'counters', ['operator_id'])


def downgrade():
    op.drop_index('ix_counters_operator_id', table_name='counters')
    op.drop_table('counters')

    for name in (
        'ix_transactions_operator_invoice',
        'ix_transactions_operator_type_created',
        'ix_transactions_operator_customer_created',
        'ix_transactions_created_at',
        'ix_transactions_refund_id',
        'ix_transactions_receipt_number',
        'ix_transactions_invoice_id',
        'ix_transactions_type',
        'ix_transactions_customer_id',
        'ix_transactions_operator_id',
    ):
        op.drop_index(name, table_name='transactions')
    op.drop_table('transactions')

    for name in (
        'ix_subscriptions_operator_customer_status',
        'ix_subscriptions_operator_expiry',
        'ix_subscriptions_invoice_id',
        'ix_subscriptions_status',
        'ix_subscriptions_expiry_date',
        'ix_subscriptions_plan_type',
        'ix_subscriptions_product_id',
        'ix_subscriptions_operator_id',
        'ix_subscriptions_customer_id',
    ):
        op.drop_index(name, table_name='subscriptions')
    op.drop_table('subscriptions')

    for name in (
        'ix_customers_name',
        'ix_customers_operator_active',
        'ix_customers_earliest_expiry',
        'ix_customers_agent_id',
        'ix_customers_operator_id',
    ):
        op.drop_index(name, table_name='customers')
    op.drop_table('customers')

    op.drop_index('ix_products_operator_id', table_name='products')
    op.drop_table('products')
    op.drop_index('ix_operator_items_operator_id', table_name='operator_items')
    op.drop_table('operator_items')
    op.drop_index('ix_agents_operator_id', table_name='agents')
    op.drop_table('agents')
    op.drop_table('operators')
