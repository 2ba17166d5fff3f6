"""Create users and professionals tables.

Revision ID: 001
Revises: None
Create Date: 2026-10-05
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("user_id", sa.Uuid(), primary_key=True),
        sa.Column("email", sa.String(320), unique=True, nullable=False),
        sa.Column("display_name", sa.String(128), nullable=False),
        sa.Column("public_key", sa.String(128), unique=True, nullable=False),
        sa.Column(
            "role",
            sa.Enum("client", "professional", "admin", name="userrole"),
            nullable=False,
            server_default="client",
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "professionals",
        sa.Column("professional_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "user_id", sa.Uuid(),
            sa.ForeignKey("users.user_id", ondelete="RESTRICT"),
            unique=True, nullable=False,
        ),
        sa.Column("business_name", sa.String(256), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("balance >= 0", name="ck_professionals_balance_non_negative"),
    )


def downgrade() -> None:
    op.drop_table("professionals")
    op.drop_table("users")
    op.execute("DROP TYPE IF EXISTS userrole")
