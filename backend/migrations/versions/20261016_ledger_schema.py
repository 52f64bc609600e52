"""Customer ledger: customers, transactions and payment_audit

Revision ID: 20261016_ledger_schema
Revises:
Create Date: 2026-10-16 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261016_ledger_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('customers',
    sa.Column('id', sa.String(length=32), nullable=False),
    sa.Column('name', sa.String(length=255), nullable=False),
    sa.Column('phone', sa.String(length=32), nullable=True),
    sa.Column('outstanding_balance', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('credit_balance', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
    sa.CheckConstraint('outstanding_balance >= 0', name='ck_customers_outstanding_non_negative'),
    sa.CheckConstraint('credit_balance >= 0', name='ck_customers_credit_non_negative'),
    sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('customers', schema=None) as batch_op:
        batch_op.create_index('ix_customers_name', ['name'], unique=False)

    op.create_table('transactions',
    sa.Column('id', sa.String(length=32), nullable=False),
    sa.Column('customer_id', sa.String(length=32), nullable=False),
    sa.Column('kind', sa.String(length=16), nullable=False),
    sa.Column('amount', sa.Integer(), nullable=False),
    sa.Column('remaining_amount', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
    sa.Column('date', sa.DateTime(timezone=True), nullable=False),
    sa.Column('description', sa.String(length=255), nullable=True),
    sa.Column('applied_to_debt', sa.Boolean(), nullable=False, server_default=sa.true()),
    sa.Column('linked_transaction_id', sa.String(length=32), nullable=True),
    sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
    sa.CheckConstraint('amount > 0', name='ck_transactions_amount_positive'),
    sa.CheckConstraint('remaining_amount >= 0', name='ck_transactions_remaining_non_negative'),
    sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], ),
    sa.ForeignKeyConstraint(['linked_transaction_id'], ['transactions.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('transactions', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_transactions_customer_id'), ['customer_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_transactions_kind'), ['kind'], unique=False)
        batch_op.create_index(batch_op.f('ix_transactions_status'), ['status'], unique=False)
        batch_op.create_index(batch_op.f('ix_transactions_is_deleted'), ['is_deleted'], unique=False)
        batch_op.create_index('ix_transactions_customer_date', ['customer_id', 'date'], unique=False)
        batch_op.create_index('ix_transactions_customer_kind_remaining', ['customer_id', 'kind', 'remaining_amount'], unique=False)

    op.create_table('payment_audit',
    sa.Column('id', sa.String(length=32), nullable=False),
    sa.Column('customer_id', sa.String(length=32), nullable=False),
    sa.Column('source_transaction_id', sa.String(length=32), nullable=False),
    sa.Column('type', sa.String(length=32), nullable=False),
    sa.Column('amount', sa.Integer(), nullable=False),
    sa.Column('metadata', sa.JSON(), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
    sa.CheckConstraint('amount > 0', name='ck_payment_audit_amount_positive'),
    sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], ),
    sa.ForeignKeyConstraint(['source_transaction_id'], ['transactions.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('payment_audit', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_payment_audit_customer_id'), ['customer_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_payment_audit_source_transaction_id'), ['source_transaction_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_payment_audit_type'), ['type'], unique=False)
        batch_op.create_index('ix_payment_audit_customer_created', ['customer_id', 'created_at'], unique=False)


def downgrade():
    with op.batch_alter_table('payment_audit', schema=None) as batch_op:
        batch_op.drop_index('ix_payment_audit_customer_created')
        batch_op.drop_index(batch_op.f('ix_payment_audit_type'))
        batch_op.drop_index(batch_op.f('ix_payment_audit_source_transaction_id'))
        batch_op.drop_index(batch_op.f('ix_payment_audit_customer_id'))
    op.drop_table('payment_audit')

    with op.batch_alter_table('transactions', schema=None) as batch_op:
        batch_op.drop_index('ix_transactions_customer_kind_remaining')
        batch_op.drop_index('ix_transactions_customer_date')
        batch_op.drop_index(batch_op.f('ix_transactions_is_deleted'))
        batch_op.drop_index(batch_op.f('ix_transactions_status'))
        batch_op.drop_index(batch_op.f('ix_transactions_kind'))
        batch_op.drop_index(batch_op.f('ix_transactions_customer_id'))
    op.drop_table('transactions')

    with op.batch_alter_table('customers', schema=None) as batch_op:
        batch_op.drop_index('ix_customers_name')
    op.drop_table('customers')
