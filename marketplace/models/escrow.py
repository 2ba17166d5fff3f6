"""Escrow account, milestone terms, ledger and dispute models."""

import enum
import uuid
from datetime import UTC, date, datetime
from decimal import Decimal

from sqlalchemy import BigInteger, Boolean, Date, DateTime, Enum, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketplace.database import Base, JSONType


class EscrowStatus(enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class TermStatus(enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    APPROVED = "approved"
    RELEASED = "released"
    DISPUTED = "disputed"


class TransactionType(enum.Enum):
    DEPOSIT = "deposit"
    RELEASE = "release"
    REFUND = "refund"
    FEE = "fee"
    DISPUTE_HOLD = "dispute_hold"
    DISPUTE_RELEASE = "dispute_release"


class DisputeStatus(enum.Enum):
    OPEN = "open"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"
    ESCALATED = "escalated"
    CLOSED = "closed"


# Forward-only term transitions. DISPUTED is reachable from every
# non-terminal state; RELEASED and DISPUTED have no way out here.
VALID_TERM_TRANSITIONS: dict[TermStatus, set[TermStatus]] = {
    TermStatus.PENDING: {TermStatus.IN_PROGRESS, TermStatus.COMPLETED, TermStatus.DISPUTED},
    TermStatus.IN_PROGRESS: {TermStatus.COMPLETED, TermStatus.DISPUTED},
    TermStatus.COMPLETED: {TermStatus.APPROVED, TermStatus.DISPUTED},
    TermStatus.APPROVED: {TermStatus.RELEASED, TermStatus.DISPUTED},
    TermStatus.RELEASED: set(),
    TermStatus.DISPUTED: set(),
}

# Accounts in these states reject every term-level operation.
FROZEN_ESCROW_STATUSES = frozenset({
    EscrowStatus.DISPUTED,
    EscrowStatus.COMPLETED,
    EscrowStatus.CANCELLED,
    EscrowStatus.REFUNDED,
})


class EscrowAccount(Base):
    __tablename__ = "escrow_accounts"

    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.order_id", ondelete="RESTRICT"), unique=True, nullable=False
    )
    client_user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    professional_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("professionals.professional_id", ondelete="RESTRICT"), nullable=True
    )
    # Snapshot of the professional's user so party checks need no join.
    professional_user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True, index=True
    )
    total_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    held_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    released_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    status: Mapped[EscrowStatus] = mapped_column(
        Enum(EscrowStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=EscrowStatus.PENDING,
    )
    funded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    terms: Mapped[list["EscrowTerm"]] = relationship(
        back_populates="escrow", order_by="EscrowTerm.term_number", lazy="selectin"
    )

    def term(self, term_id: uuid.UUID) -> "EscrowTerm | None":
        for t in self.terms:
            if t.term_id == term_id:
                return t
        return None


class EscrowTerm(Base):
    __tablename__ = "escrow_terms"
    __table_args__ = (UniqueConstraint("escrow_id", "term_number"),)

    term_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrow_accounts.escrow_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    term_number: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[TermStatus] = mapped_column(
        Enum(TermStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=TermStatus.PENDING,
    )
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    documentation: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    approval_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    escrow: Mapped[EscrowAccount] = relationship(back_populates="terms")


class EscrowTransaction(Base):
    """Append-only ledger. Never update or delete rows."""
    __tablename__ = "escrow_transactions"

    transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrow_accounts.escrow_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    type: Mapped[TransactionType] = mapped_column(
        Enum(TransactionType, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    term_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("escrow_terms.term_id", ondelete="RESTRICT"), nullable=True
    )
    payment_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("payments.payment_id", ondelete="RESTRICT"), nullable=True
    )
    created_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)


class EscrowDispute(Base):
    __tablename__ = "escrow_disputes"

    dispute_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrow_accounts.escrow_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    term_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("escrow_terms.term_id", ondelete="RESTRICT"), nullable=True
    )
    raised_by: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False
    )
    reason: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    evidence: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    status: Mapped[DisputeStatus] = mapped_column(
        Enum(DisputeStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=DisputeStatus.OPEN,
    )
    resolution: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
