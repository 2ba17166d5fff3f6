"""Create escrow accounts, terms, ledger and disputes.

Revision ID: 003
Revises: 002
Create Date: 2026-10-06
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "003"
down_revision: Union[str, None] = "002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "escrow_accounts",
        sa.Column("escrow_id", sa.Uuid(), primary_key=True),
        sa.Column("order_id", sa.Uuid(), sa.ForeignKey("orders.order_id", ondelete="RESTRICT"), unique=True, nullable=False),
        sa.Column("client_user_id", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("professional_id", sa.Uuid(), sa.ForeignKey("professionals.professional_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("professional_user_id", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("total_amount", sa.BigInteger(), nullable=False),
        sa.Column("held_amount", sa.BigInteger(), nullable=False),
        sa.Column("released_amount", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column(
            "status",
            sa.Enum("pending", "active", "completed", "disputed", "cancelled", "refunded", name="escrowstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("funded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("total_amount > 0", name="ck_escrow_total_positive"),
        sa.CheckConstraint("held_amount >= 0 AND released_amount >= 0", name="ck_escrow_non_negative"),
        sa.CheckConstraint("held_amount + released_amount <= total_amount", name="ck_escrow_conservation"),
    )
    op.create_index("ix_escrow_accounts_client_user_id", "escrow_accounts", ["client_user_id"])
    op.create_index("ix_escrow_accounts_professional_user_id", "escrow_accounts", ["professional_user_id"])

    op.create_table(
        "escrow_terms",
        sa.Column("term_id", sa.Uuid(), primary_key=True),
        sa.Column("escrow_id", sa.Uuid(), sa.ForeignKey("escrow_accounts.escrow_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("term_number", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("percentage", sa.Numeric(5, 2), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "in_progress", "completed", "approved", "released", "disputed", name="termstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("documentation", JSONB, nullable=False, server_default="[]"),
        sa.Column("approval_required", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("escrow_id", "term_number", name="uq_escrow_terms_escrow_number"),
        sa.CheckConstraint("percentage > 0 AND percentage <= 100", name="ck_escrow_terms_percentage"),
    )
    op.create_index("ix_escrow_terms_escrow_id", "escrow_terms", ["escrow_id"])

    op.create_table(
        "escrow_transactions",
        sa.Column("transaction_id", sa.Uuid(), primary_key=True),
        sa.Column("escrow_id", sa.Uuid(), sa.ForeignKey("escrow_accounts.escrow_id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "type",
            sa.Enum(
                "deposit", "release", "refund", "fee", "dispute_hold", "dispute_release",
                name="transactiontype",
            ),
            nullable=False,
        ),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("term_id", sa.Uuid(), sa.ForeignKey("escrow_terms.term_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("payment_id", sa.Uuid(), sa.ForeignKey("payments.payment_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("created_by", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("metadata", JSONB, nullable=True),
        sa.CheckConstraint("amount >= 0", name="ck_escrow_transactions_amount"),
    )
    op.create_index("ix_escrow_transactions_escrow_id", "escrow_transactions", ["escrow_id"])

    op.create_table(
        "escrow_disputes",
        sa.Column("dispute_id", sa.Uuid(), primary_key=True),
        sa.Column("escrow_id", sa.Uuid(), sa.ForeignKey("escrow_accounts.escrow_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("term_id", sa.Uuid(), sa.ForeignKey("escrow_terms.term_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("raised_by", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("reason", sa.String(256), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("evidence", JSONB, nullable=False, server_default="[]"),
        sa.Column(
            "status",
            sa.Enum("open", "under_review", "resolved", "escalated", "closed", name="disputestatus"),
            nullable=False,
            server_default="open",
        ),
        sa.Column("resolution", sa.Text(), nullable=True),
        sa.Column("resolved_by", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_escrow_disputes_escrow_id", "escrow_disputes", ["escrow_id"])

    # The ledger is append-only
    op.execute("REVOKE UPDATE, DELETE ON escrow_transactions FROM PUBLIC")


def downgrade() -> None:
    op.drop_table("escrow_disputes")
    op.drop_table("escrow_transactions")
    op.drop_table("escrow_terms")
    op.drop_table("escrow_accounts")
    op.execute("DROP TYPE IF EXISTS disputestatus")
    op.execute("DROP TYPE IF EXISTS transactiontype")
    op.execute("DROP TYPE IF EXISTS termstatus")
    op.execute("DROP TYPE IF EXISTS escrowstatus")
