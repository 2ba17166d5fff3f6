"""Create orders and payments tables.

Revision ID: 002
Revises: 001
Create Date: 2026-10-05
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_PAYMENT_STATUSES = ("unpaid", "pending", "paid", "failed", "expired", "cancelled")


def upgrade() -> None:
    op.create_table(
        "orders",
        sa.Column("order_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "client_user_id", sa.Uuid(),
            sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False,
        ),
        sa.Column(
            "professional_id", sa.Uuid(),
            sa.ForeignKey("professionals.professional_id", ondelete="RESTRICT"), nullable=True,
        ),
        sa.Column("title", sa.String(256), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("total_amount", sa.BigInteger(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "confirmed", "in_progress", "completed", "cancelled", name="orderstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column(
            "payment_status",
            sa.Enum(*_PAYMENT_STATUSES, name="paymentstatus"),
            nullable=False,
            server_default="unpaid",
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("total_amount > 0", name="ck_orders_total_positive"),
    )
    op.create_index("idx_orders_client", "orders", ["client_user_id"])

    op.create_table(
        "payments",
        sa.Column("payment_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "order_id", sa.Uuid(),
            sa.ForeignKey("orders.order_id", ondelete="RESTRICT"), nullable=False,
        ),
        sa.Column("gateway", sa.String(32), nullable=False),
        sa.Column("gateway_reference", sa.String(256), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column(
            "status",
            sa.Enum(*_PAYMENT_STATUSES, name="paymentstatus", create_type=False),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("payment_url", sa.String(2048), nullable=True),
        sa.Column("payment_method", sa.String(64), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("raw_payload", JSONB(), nullable=True),
    )
    op.create_index("ix_payments_order_id", "payments", ["order_id"])
    op.create_index("ix_payments_gateway_reference", "payments", ["gateway_reference"])


def downgrade() -> None:
    op.drop_table("payments")
    op.drop_table("orders")
    op.execute("DROP TYPE IF EXISTS paymentstatus")
    op.execute("DROP TYPE IF EXISTS orderstatus")
