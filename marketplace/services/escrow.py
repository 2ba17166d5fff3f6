"""Milestone escrow: creation, term lifecycle, fund release and disputes.

EscrowService is the only writer of escrow accounts, terms, ledger entries and
disputes. Every mutating call is one unit of work: the account row is locked
(SELECT ... FOR UPDATE) before any status check, and the state transition,
ledger append and balance credit are committed together. Any failure rolls the
whole unit back, so a concurrent second caller always sees the post-transition
state and is rejected by the precondition checks.
"""

import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from sqlalchemy.exc import SQLAlchemyError

from marketplace.config import settings
from marketplace.errors import (
    InsufficientFunds,
    InvalidState,
    NotFound,
    StorageError,
    Unauthorized,
    ValidationFailed,
)
from marketplace.models.escrow import (
    FROZEN_ESCROW_STATUSES,
    VALID_TERM_TRANSITIONS,
    DisputeStatus,
    EscrowAccount,
    EscrowDispute,
    EscrowStatus,
    EscrowTerm,
    EscrowTransaction,
    TermStatus,
    TransactionType,
)
from marketplace.models.order import PaymentStatus
from marketplace.repositories.escrow import EscrowRepository
from marketplace.schemas.escrow import DisputeCreate, EscrowCreate, FundRelease, TermSpec
from marketplace.services import ledger
from marketplace.services.authorization import assert_party, can_release_as_admin, is_client
from marketplace.services.balance import ProfessionalBalanceLedger
from marketplace.services.ledger import LedgerTotals
from marketplace.utils.money import HUNDRED, amount_for_percentage, format_amount, percentage_sum, to_percentage

logger = logging.getLogger(__name__)


def _assert_transition(term: EscrowTerm, target: TermStatus) -> None:
    """Raise InvalidState if the term cannot move to target."""
    if target not in VALID_TERM_TRANSITIONS.get(term.status, set()):
        raise InvalidState(
            f"Term {term.term_number} cannot move from {term.status.value} to {target.value}"
        )


def _assert_not_frozen(escrow: EscrowAccount) -> None:
    if escrow.status in FROZEN_ESCROW_STATUSES:
        raise InvalidState(f"Escrow is {escrow.status.value}; term operations are not allowed")


def _activate(escrow: EscrowAccount) -> None:
    if escrow.status == EscrowStatus.PENDING:
        escrow.status = EscrowStatus.ACTIVE


def _validate_terms(specs: list[TermSpec]) -> list:
    """Validate term specs and return their percentages as two-place Decimals."""
    if not specs:
        raise ValidationFailed("At least one term is required")

    percentages = []
    for index, spec in enumerate(specs, start=1):
        if not spec.name or not spec.name.strip():
            raise ValidationFailed(f"Term {index} must have a name")
        if not spec.description or not spec.description.strip():
            raise ValidationFailed(f"Term {index} must have a description")
        try:
            pct = to_percentage(spec.percentage)
        except ValueError as e:
            raise ValidationFailed(f"Term {index}: {e}")
        if pct <= 0 or pct > HUNDRED:
            raise ValidationFailed(f"Term {index} percentage must be greater than 0 and at most 100")
        percentages.append(pct)

    total = percentage_sum(percentages)
    if total != HUNDRED:
        raise ValidationFailed(f"Term percentages must add up to exactly 100%, got {total}%")
    return percentages


class EscrowService:
    """Stateless orchestration over an injected repository."""

    def __init__(
        self,
        repo: EscrowRepository,
        balances: ProfessionalBalanceLedger | None = None,
    ) -> None:
        self.repo = repo
        self.balances = balances or ProfessionalBalanceLedger(repo)

    @asynccontextmanager
    async def _unit_of_work(self) -> AsyncIterator[None]:
        """Commit on success; roll back everything on any failure."""
        try:
            yield
            await self.repo.commit()
        except SQLAlchemyError as e:
            logger.exception("Escrow storage failure")
            await self.repo.rollback()
            raise StorageError("Escrow storage failure") from e
        except Exception:
            await self.repo.rollback()
            raise

    async def _load(self, escrow_id: uuid.UUID, *, for_update: bool = False) -> EscrowAccount:
        escrow = await self.repo.get_escrow(escrow_id, for_update=for_update)
        if escrow is None:
            raise NotFound("Escrow not found")
        return escrow

    @staticmethod
    def _term(escrow: EscrowAccount, term_id: uuid.UUID) -> EscrowTerm:
        term = escrow.term(term_id)
        if term is None:
            raise NotFound("Term not found")
        return term

    async def _reload(self, escrow_id: uuid.UUID) -> EscrowAccount:
        try:
            return await self._load(escrow_id)
        except SQLAlchemyError as e:
            logger.exception("Escrow storage failure")
            raise StorageError("Escrow storage failure") from e

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_escrow(self, data: EscrowCreate, user_id: uuid.UUID) -> EscrowAccount:
        """Create an account, its terms and the initial DEPOSIT in one commit."""
        async with self._unit_of_work():
            order = await self.repo.get_order(data.order_id)
            if order is None:
                raise NotFound("Order not found")
            if order.client_user_id != user_id:
                raise Unauthorized("Only the order's client can create its escrow")

            if data.total_amount <= 0:
                raise ValidationFailed("Total amount must be positive")
            if data.total_amount != order.total_amount:
                raise ValidationFailed(
                    f"Total amount {data.total_amount} does not match order total {order.total_amount}"
                )
            percentages = _validate_terms(data.terms)

            existing = await self.repo.get_escrow_by_order(data.order_id)
            if existing is not None:
                raise InvalidState("Escrow already exists for this order")

            professional = order.professional
            # the gateway may have confirmed payment before the escrow was opened
            paid = order.payment_status == PaymentStatus.PAID
            escrow_id = uuid.uuid4()
            terms = [
                EscrowTerm(
                    term_id=uuid.uuid4(),
                    escrow_id=escrow_id,
                    term_number=number,
                    name=spec.name.strip(),
                    description=spec.description.strip(),
                    percentage=pct,
                    amount=amount_for_percentage(data.total_amount, pct),
                    status=TermStatus.PENDING,
                    due_date=spec.due_date,
                    approval_required=spec.approval_required,
                    documentation=[],
                )
                for number, (spec, pct) in enumerate(zip(data.terms, percentages), start=1)
            ]
            escrow = EscrowAccount(
                escrow_id=escrow_id,
                order_id=order.order_id,
                client_user_id=order.client_user_id,
                professional_id=professional.professional_id if professional else None,
                professional_user_id=professional.user_id if professional else None,
                total_amount=data.total_amount,
                held_amount=data.total_amount,
                released_amount=0,
                status=EscrowStatus.ACTIVE if paid else EscrowStatus.PENDING,
                funded_at=datetime.now(UTC) if paid else None,
                terms=terms,
            )
            self.repo.add(escrow)
            # account and terms must exist before the ledger row references them
            await self.repo.flush()
            ledger.record(
                self.repo, escrow_id, TransactionType.DEPOSIT, data.total_amount,
                "Initial escrow deposit", created_by=user_id,
                metadata={"term_count": len(terms)},
            )

        logger.info(
            "Escrow %s created for order %s: %s in %d terms",
            escrow_id, data.order_id, format_amount(data.total_amount, settings.currency), len(terms),
        )
        return await self._reload(escrow_id)

    # ------------------------------------------------------------------
    # Term lifecycle
    # ------------------------------------------------------------------

    async def start_term(
        self, escrow_id: uuid.UUID, term_id: uuid.UUID, user_id: uuid.UUID
    ) -> EscrowTerm:
        """Professional begins work on a pending term."""
        async with self._unit_of_work():
            escrow = await self._load(escrow_id, for_update=True)
            assert_party(escrow, user_id, allowed="professional")
            _assert_not_frozen(escrow)
            term = self._term(escrow, term_id)
            if term.status != TermStatus.PENDING:
                raise InvalidState(f"Term {term.term_number} can only be started from pending, currently {term.status.value}")
            _assert_transition(term, TermStatus.IN_PROGRESS)

            term.status = TermStatus.IN_PROGRESS
            term.started_at = datetime.now(UTC)
            _activate(escrow)

        logger.info("Escrow %s term %d started", escrow_id, term.term_number)
        return term

    async def complete_term(
        self,
        escrow_id: uuid.UUID,
        term_id: uuid.UUID,
        documentation: list[str],
        user_id: uuid.UUID,
    ) -> EscrowTerm:
        """Professional marks a term's work as done, attaching evidence."""
        async with self._unit_of_work():
            escrow = await self._load(escrow_id, for_update=True)
            assert_party(escrow, user_id, allowed="professional")
            _assert_not_frozen(escrow)
            term = self._term(escrow, term_id)
            if term.status not in (TermStatus.PENDING, TermStatus.IN_PROGRESS):
                raise InvalidState(
                    f"Term {term.term_number} cannot be completed in status {term.status.value}"
                )
            _assert_transition(term, TermStatus.COMPLETED)
            entries = [d.strip() for d in documentation if d and d.strip()]
            if not entries:
                raise ValidationFailed("Documentation is required to complete a term")

            term.status = TermStatus.COMPLETED
            term.completed_at = datetime.now(UTC)
            term.documentation = [*(term.documentation or []), *entries]
            _activate(escrow)

            # Informational: money only moves at release.
            ledger.record(
                self.repo, escrow_id, TransactionType.RELEASE, 0,
                f"Term {term.term_number} completed: {term.name}",
                created_by=user_id, term_id=term_id,
                metadata={"event": "term_completed", "term_amount": term.amount},
            )

        logger.info("Escrow %s term %d completed by %s", escrow_id, term.term_number, user_id)
        return term

    async def approve_term(
        self, escrow_id: uuid.UUID, term_id: uuid.UUID, user_id: uuid.UUID
    ) -> EscrowTerm:
        """Client signs off on a completed term. Does not move money."""
        async with self._unit_of_work():
            escrow = await self._load(escrow_id, for_update=True)
            assert_party(escrow, user_id, allowed="client")
            _assert_not_frozen(escrow)
            term = self._term(escrow, term_id)
            if term.status != TermStatus.COMPLETED:
                raise InvalidState(
                    f"Term {term.term_number} must be completed before approval, currently {term.status.value}"
                )
            _assert_transition(term, TermStatus.APPROVED)

            term.status = TermStatus.APPROVED
            term.approved_at = datetime.now(UTC)

        logger.info("Escrow %s term %d approved", escrow_id, term.term_number)
        return term

    async def release_funds(
        self,
        escrow_id: uuid.UUID,
        term_id: uuid.UUID,
        data: FundRelease,
        user_id: uuid.UUID,
    ) -> EscrowTransaction:
        """Pay an approved term out of custody to the professional.

        Term status, account balances, the RELEASE entry and the professional
        credit are committed together. A term is released at most once.
        """
        async with self._unit_of_work():
            escrow = await self._load(escrow_id, for_update=True)
            if not is_client(escrow, user_id):
                caller = await self.repo.get_user(user_id)
                if not can_release_as_admin(caller):
                    raise Unauthorized("Only the client or an administrator can release funds")
            _assert_not_frozen(escrow)

            term = self._term(escrow, term_id)
            if term.status != TermStatus.APPROVED:
                raise InvalidState(
                    f"Term {term.term_number} must be approved before fund release, currently {term.status.value}"
                )
            _assert_transition(term, TermStatus.RELEASED)

            amount = term.amount if data.amount is None else data.amount
            if amount <= 0:
                raise ValidationFailed("Release amount must be positive")
            if amount > term.amount:
                raise ValidationFailed(
                    f"Release amount {amount} exceeds term amount {term.amount}"
                )
            if amount > escrow.held_amount:
                raise InsufficientFunds(
                    f"Insufficient held funds: {escrow.held_amount} < {amount}"
                )
            if escrow.professional_id is None:
                raise InvalidState("Escrow has no professional to release funds to")

            now = datetime.now(UTC)
            term.status = TermStatus.RELEASED
            term.released_at = now
            if data.documentation:
                term.documentation = [*(term.documentation or []), *data.documentation]

            escrow.held_amount = escrow.held_amount - amount
            escrow.released_amount = escrow.released_amount + amount

            completes = all(t.status == TermStatus.RELEASED for t in escrow.terms)
            metadata: dict = {"documentation": data.documentation or []}
            if amount < term.amount:
                metadata["unreleased_remainder"] = term.amount - amount
            if completes and escrow.held_amount > 0:
                # no term is left to release it; only an external refund can move it
                metadata["stranded_held_amount"] = escrow.held_amount
            tx = ledger.record(
                self.repo, escrow_id, TransactionType.RELEASE, amount, data.reason,
                created_by=user_id, term_id=term_id, metadata=metadata,
            )

            await self.balances.credit(escrow.professional_id, amount)

            if completes:
                escrow.status = EscrowStatus.COMPLETED
            else:
                _activate(escrow)

        logger.info(
            "Escrow %s term %d released %s to professional %s (held now %d)",
            escrow_id, term.term_number, format_amount(amount, settings.currency),
            escrow.professional_id, escrow.held_amount,
        )
        return tx

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    async def create_dispute(
        self, escrow_id: uuid.UUID, data: DisputeCreate, user_id: uuid.UUID
    ) -> EscrowDispute:
        """Freeze the account (and optionally one term) pending outside resolution."""
        async with self._unit_of_work():
            escrow = await self._load(escrow_id, for_update=True)
            assert_party(escrow, user_id)

            if escrow.status in (EscrowStatus.COMPLETED, EscrowStatus.CANCELLED, EscrowStatus.REFUNDED):
                raise InvalidState(f"Cannot dispute an escrow that is {escrow.status.value}")

            evidence = [e.strip() for e in data.evidence if e and e.strip()]
            if not evidence:
                raise ValidationFailed("Evidence is required to open a dispute")

            term = None
            if data.term_id is not None:
                term = self._term(escrow, data.term_id)
                _assert_transition(term, TermStatus.DISPUTED)

            dispute = EscrowDispute(
                dispute_id=uuid.uuid4(),
                escrow_id=escrow_id,
                term_id=data.term_id,
                raised_by=user_id,
                reason=data.reason,
                description=data.description,
                evidence=evidence,
                status=DisputeStatus.OPEN,
            )
            self.repo.add(dispute)
            await self.repo.flush()

            escrow.status = EscrowStatus.DISPUTED
            if term is not None:
                term.status = TermStatus.DISPUTED

            ledger.record(
                self.repo, escrow_id, TransactionType.DISPUTE_HOLD, 0,
                f"Dispute created: {data.reason}",
                created_by=user_id, term_id=data.term_id,
                metadata={"dispute_id": str(dispute.dispute_id)},
            )

        logger.info(
            "Dispute %s opened on escrow %s%s by %s",
            dispute.dispute_id, escrow_id,
            f" term {term.term_number}" if term is not None else "", user_id,
        )
        return dispute

    # ------------------------------------------------------------------
    # Payment events
    # ------------------------------------------------------------------

    async def confirm_deposit(
        self, order_id: uuid.UUID, payment_id: uuid.UUID | None = None
    ) -> EscrowAccount | None:
        """Deposit settled at the gateway: a pending account becomes active.

        Idempotent. Returns None when the order has no escrow yet.
        """
        async with self._unit_of_work():
            escrow = await self.repo.get_escrow_by_order(order_id, for_update=True)
            if escrow is None:
                return None
            if escrow.funded_at is None:
                escrow.funded_at = datetime.now(UTC)
                _activate(escrow)
                logger.info("Deposit confirmed for escrow %s (payment %s)", escrow.escrow_id, payment_id)
        return escrow

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_escrow(self, escrow_id: uuid.UUID, user_id: uuid.UUID) -> EscrowAccount:
        escrow = await self._load(escrow_id)
        assert_party(escrow, user_id)
        return escrow

    async def get_escrow_by_order(self, order_id: uuid.UUID, user_id: uuid.UUID) -> EscrowAccount:
        escrow = await self.repo.get_escrow_by_order(order_id)
        if escrow is None:
            raise NotFound("Escrow not found for this order")
        assert_party(escrow, user_id)
        return escrow

    async def list_user_escrows(self, user_id: uuid.UUID) -> list[EscrowAccount]:
        return await self.repo.list_for_user(user_id)

    async def get_escrow_stats(self, user_id: uuid.UUID) -> dict:
        count, total, held, released = await self.repo.totals_for_user(user_id)
        by_status = await self.repo.status_counts_for_user(user_id)
        return {
            "total_escrows": count,
            "total_amount": total,
            "held_amount": held,
            "released_amount": released,
            "status_breakdown": {status.value: n for status, n in by_status.items()},
        }

    async def list_transactions(
        self, escrow_id: uuid.UUID, user_id: uuid.UUID
    ) -> list[EscrowTransaction]:
        await self.get_escrow(escrow_id, user_id)
        return await self.repo.list_transactions(escrow_id)

    async def list_disputes(
        self, escrow_id: uuid.UUID, user_id: uuid.UUID
    ) -> list[EscrowDispute]:
        await self.get_escrow(escrow_id, user_id)
        return await self.repo.list_disputes(escrow_id)

    async def verify_ledger(
        self, escrow_id: uuid.UUID, user_id: uuid.UUID
    ) -> tuple[EscrowAccount, LedgerTotals, bool]:
        """Replay the ledger and compare it to the stored balances."""
        escrow = await self.get_escrow(escrow_id, user_id)
        totals = ledger.replay(await self.repo.list_transactions(escrow_id))
        consistent = ledger.matches_account(totals, escrow)
        if not consistent:
            logger.error(
                "Ledger mismatch on escrow %s: stored held=%d released=%d, replayed %s",
                escrow_id, escrow.held_amount, escrow.released_amount, totals.to_dict(),
            )
        return escrow, totals, consistent
