"""Add per-customer seq to payment_audit

Revision ID: 20261016_audit_seq
Revises: 20261016_ledger_schema
Create Date: 2026-10-16
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261016_audit_seq"
down_revision = "20261016_ledger_schema"
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table("payment_audit", schema=None) as batch_op:
        batch_op.add_column(sa.Column("seq", sa.Integer(), nullable=True))

    # Number existing records per customer in their created_at order
    bind = op.get_bind()
    rows = bind.execute(sa.text(
        "SELECT id, customer_id FROM payment_audit ORDER BY customer_id, created_at, id"
    )).fetchall()
    counters = {}
    for audit_id, customer_id in rows:
        counters[customer_id] = counters.get(customer_id, 0) + 1
        bind.execute(
            sa.text("UPDATE payment_audit SET seq = :seq WHERE id = :id"),
            {"seq": counters[customer_id], "id": audit_id},
        )

    with op.batch_alter_table("payment_audit", schema=None) as batch_op:
        batch_op.alter_column("seq", existing_type=sa.Integer(), nullable=False)
        batch_op.create_index("ix_payment_audit_customer_seq", ["customer_id", "seq"], unique=False)


def downgrade():
    with op.batch_alter_table("payment_audit", schema=None) as batch_op:
        batch_op.drop_index("ix_payment_audit_customer_seq")
        batch_op.drop_column("seq")
