"""Escrow ledger: append entries and replay them into balances.

Every money movement on an account is one EscrowTransaction. Replaying the
ledger from the first DEPOSIT must land on the account's stored held/released
figures; zero-amount entries (completion notes, dispute holds) do not move
anything.
"""

import uuid
from collections.abc import Iterable
from dataclasses import dataclass

from marketplace.models.escrow import EscrowAccount, EscrowTransaction, TransactionType
from marketplace.repositories.escrow import EscrowRepository


@dataclass
class LedgerTotals:
    held: int = 0
    released: int = 0
    refunded: int = 0
    fees: int = 0

    @property
    def deposited(self) -> int:
        return self.held + self.released + self.refunded + self.fees

    def to_dict(self) -> dict:
        return {
            "held": self.held,
            "released": self.released,
            "refunded": self.refunded,
            "fees": self.fees,
        }


def replay(transactions: Iterable[EscrowTransaction]) -> LedgerTotals:
    totals = LedgerTotals()
    for tx in transactions:
        if tx.type == TransactionType.DEPOSIT:
            totals.held += tx.amount
        elif tx.type == TransactionType.RELEASE:
            totals.held -= tx.amount
            totals.released += tx.amount
        elif tx.type == TransactionType.REFUND:
            totals.held -= tx.amount
            totals.refunded += tx.amount
        elif tx.type == TransactionType.FEE:
            totals.held -= tx.amount
            totals.fees += tx.amount
        # DISPUTE_HOLD / DISPUTE_RELEASE are audit markers only
    return totals


def matches_account(totals: LedgerTotals, escrow: EscrowAccount) -> bool:
    return (
        totals.held == escrow.held_amount
        and totals.released == escrow.released_amount
        and totals.deposited == escrow.total_amount
    )


def record(
    repo: EscrowRepository,
    escrow_id: uuid.UUID,
    tx_type: TransactionType,
    amount: int,
    description: str,
    created_by: uuid.UUID | None = None,
    term_id: uuid.UUID | None = None,
    payment_id: uuid.UUID | None = None,
    metadata: dict | None = None,
) -> EscrowTransaction:
    """Append to the ledger. The caller's unit of work commits it."""
    entry = EscrowTransaction(
        transaction_id=uuid.uuid4(),
        escrow_id=escrow_id,
        type=tx_type,
        amount=amount,
        description=description,
        term_id=term_id,
        payment_id=payment_id,
        created_by=created_by,
        metadata_=metadata,
    )
    repo.add(entry)
    return entry
