"""create orders and settlement_audit

Revision ID: 0001
Revises:
Create Date: 2026-10-18 12:00:00

"""
from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

order_status = sa.Enum(
    "PENDING", "AWAITING_SETTLEMENT", "PAID", "FAILED", "CANCELLED",
    name="orderstatus",
)


def upgrade() -> None:
    op.create_table(
        "orders",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("payment_reference", sa.String(length=100), nullable=False),
        sa.Column("buyer_id", sa.String(length=64), nullable=False),
        sa.Column("buyer_first_name", sa.String(length=100), nullable=True),
        sa.Column("buyer_last_name", sa.String(length=100), nullable=True),
        sa.Column("buyer_email", sa.String(length=255), nullable=True),
        sa.Column("item_name", sa.String(length=100), nullable=False),
        sa.Column("line_items", sa.Text(), nullable=False),
        sa.Column("subtotal_cents", sa.BigInteger(), nullable=False),
        sa.Column("shipping_cost_cents", sa.BigInteger(), nullable=False),
        sa.Column("tax_amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("total_amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("status", order_status, nullable=False),
        sa.Column("gateway_payment_id", sa.String(length=100), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("settled_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_orders_id", "orders", ["id"])
    op.create_index("ix_orders_payment_reference", "orders", ["payment_reference"], unique=True)
    op.create_index("ix_orders_buyer_id", "orders", ["buyer_id"])

    op.create_table(
        "settlement_audit",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("kind", sa.String(length=40), nullable=False),
        sa.Column("payment_reference", sa.String(length=100), nullable=True),
        sa.Column("order_id", sa.String(length=36), nullable=True),
        sa.Column("source_ip", sa.String(length=45), nullable=True),
        sa.Column("detail", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_settlement_audit_kind", "settlement_audit", ["kind"])
    op.create_index("ix_settlement_audit_payment_reference", "settlement_audit", ["payment_reference"])
    op.create_index("ix_settlement_audit_order_id", "settlement_audit", ["order_id"])


def downgrade() -> None:
    op.drop_table("settlement_audit")
    op.drop_table("orders")
    order_status.drop(op.get_bind(), checkfirst=True)
