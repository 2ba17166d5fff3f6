"""EscrowService: creation, term lifecycle, release, disputes, invariants."""

import uuid

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.config import settings
from marketplace.errors import (
    InsufficientFunds,
    InvalidState,
    NotFound,
    StorageError,
    Unauthorized,
    ValidationFailed,
)
from marketplace.models.escrow import EscrowStatus, EscrowTransaction, TermStatus, TransactionType
from marketplace.models.order import PaymentStatus
from marketplace.models.user import Professional, UserRole
from marketplace.repositories.escrow import EscrowRepository
from marketplace.schemas.escrow import DisputeCreate, EscrowCreate, FundRelease
from marketplace.services import ledger
from marketplace.services.escrow import EscrowService
from tests.conftest import Party, escrow_request, make_order, make_user, term_specs

TOTAL = 1_000_000


async def _open_escrow(
    db: AsyncSession, service: EscrowService, client: Party, professional: Party,
    *percentages: str, total: int = TOTAL,
) -> tuple[uuid.UUID, list[uuid.UUID]]:
    order = await make_order(db, client, professional, total_amount=total)
    escrow = await service.create_escrow(escrow_request(order, *percentages), client.user_id)
    return escrow.escrow_id, [t.term_id for t in escrow.terms]


async def _balance(db: AsyncSession, professional: Party) -> int:
    result = await db.execute(
        select(Professional.balance).where(Professional.professional_id == professional.professional_id)
    )
    return result.scalar_one()


async def _approve(service: EscrowService, escrow_id, term_id, client: Party, professional: Party) -> None:
    await service.complete_term(escrow_id, term_id, ["site photos"], professional.user_id)
    await service.approve_term(escrow_id, term_id, client.user_id)


def _release(amount: int | None = None) -> FundRelease:
    return FundRelease(amount=amount, reason="Milestone accepted")


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_escrow_splits_terms(db_session, service, parties) -> None:
    client, professional = parties
    order = await make_order(db_session, client, professional, total_amount=TOTAL)

    escrow = await service.create_escrow(escrow_request(order, "30", "40", "30"), client.user_id)

    assert escrow.status == EscrowStatus.PENDING
    assert escrow.total_amount == TOTAL
    assert escrow.held_amount == TOTAL
    assert escrow.released_amount == 0
    assert escrow.professional_id == professional.professional_id
    assert escrow.professional_user_id == professional.user_id
    assert [t.term_number for t in escrow.terms] == [1, 2, 3]
    assert [t.amount for t in escrow.terms] == [300_000, 400_000, 300_000]
    assert all(t.status == TermStatus.PENDING for t in escrow.terms)

    entries = await service.list_transactions(escrow.escrow_id, client.user_id)
    assert len(entries) == 1
    assert entries[0].type == TransactionType.DEPOSIT
    assert entries[0].amount == TOTAL


@pytest.mark.asyncio
@pytest.mark.parametrize("percentages", [("30", "40", "29"), ("30", "40", "31"), ("50", "45")])
async def test_create_escrow_rejects_bad_percentage_sum(db_session, service, parties, percentages) -> None:
    client, professional = parties
    order = await make_order(db_session, client, professional, total_amount=TOTAL)
    order_id = order.order_id

    with pytest.raises(ValidationFailed):
        await service.create_escrow(escrow_request(order, *percentages), client.user_id)

    assert await service.repo.get_escrow_by_order(order_id) is None
    result = await db_session.execute(select(EscrowTransaction))
    assert result.scalars().all() == []


@pytest.mark.asyncio
async def test_create_escrow_two_decimal_percentages(db_session, service, parties) -> None:
    client, professional = parties
    order = await make_order(db_session, client, professional, total_amount=TOTAL)

    escrow = await service.create_escrow(escrow_request(order, "33.33", "33.33", "33.34"), client.user_id)

    assert [t.amount for t in escrow.terms] == [333_300, 333_300, 333_400]
    assert escrow.held_amount == TOTAL


@pytest.mark.asyncio
async def test_create_escrow_rejects_more_than_two_decimals(db_session, service, parties) -> None:
    client, professional = parties
    order = await make_order(db_session, client, professional, total_amount=TOTAL)

    with pytest.raises(ValidationFailed):
        await service.create_escrow(escrow_request(order, "33.333", "33.333", "33.334"), client.user_id)


@pytest.mark.asyncio
async def test_create_escrow_rejects_out_of_range_percentage(db_session, service, parties) -> None:
    client, professional = parties
    order = await make_order(db_session, client, professional, total_amount=TOTAL)

    with pytest.raises(ValidationFailed):
        await service.create_escrow(escrow_request(order, "1E+30"), client.user_id)
    with pytest.raises(NotFound):
        await service.get_escrow_by_order(order.order_id, client.user_id)


@pytest.mark.asyncio
async def test_create_escrow_rejects_zero_percentage_term(db_session, service, parties) -> None:
    client, professional = parties
    order = await make_order(db_session, client, professional, total_amount=TOTAL)

    with pytest.raises(ValidationFailed):
        await service.create_escrow(escrow_request(order, "0", "100"), client.user_id)


@pytest.mark.asyncio
async def test_create_escrow_rejects_empty_terms(db_session, service, parties) -> None:
    client, professional = parties
    order = await make_order(db_session, client, professional, total_amount=TOTAL)
    data = EscrowCreate(order_id=order.order_id, total_amount=TOTAL, terms=[])

    with pytest.raises(ValidationFailed):
        await service.create_escrow(data, client.user_id)


@pytest.mark.asyncio
async def test_create_escrow_rejects_unnamed_term(db_session, service, parties) -> None:
    client, professional = parties
    order = await make_order(db_session, client, professional, total_amount=TOTAL)
    terms = term_specs("60", "40")
    terms[1].name = "   "
    data = EscrowCreate(order_id=order.order_id, total_amount=TOTAL, terms=terms)

    with pytest.raises(ValidationFailed):
        await service.create_escrow(data, client.user_id)


@pytest.mark.asyncio
async def test_create_escrow_rejects_non_positive_total(db_session, service, parties) -> None:
    client, professional = parties
    order = await make_order(db_session, client, professional, total_amount=TOTAL)

    with pytest.raises(ValidationFailed):
        await service.create_escrow(escrow_request(order, "100", total_amount=0), client.user_id)


@pytest.mark.asyncio
async def test_create_escrow_total_must_match_order(db_session, service, parties) -> None:
    client, professional = parties
    order = await make_order(db_session, client, professional, total_amount=TOTAL)

    with pytest.raises(ValidationFailed):
        await service.create_escrow(escrow_request(order, "100", total_amount=TOTAL + 1), client.user_id)


@pytest.mark.asyncio
async def test_create_escrow_unknown_order(service, parties) -> None:
    client, _ = parties
    data = EscrowCreate(order_id=uuid.uuid4(), total_amount=TOTAL, terms=term_specs("100"))

    with pytest.raises(NotFound):
        await service.create_escrow(data, client.user_id)


@pytest.mark.asyncio
async def test_create_escrow_only_by_order_client(db_session, service, parties) -> None:
    client, professional = parties
    order = await make_order(db_session, client, professional, total_amount=TOTAL)

    with pytest.raises(Unauthorized):
        await service.create_escrow(escrow_request(order, "100"), professional.user_id)


@pytest.mark.asyncio
async def test_create_escrow_once_per_order(db_session, service, parties) -> None:
    client, professional = parties
    order = await make_order(db_session, client, professional, total_amount=TOTAL)
    data = escrow_request(order, "100")
    await service.create_escrow(data, client.user_id)

    with pytest.raises(InvalidState):
        await service.create_escrow(data, client.user_id)


# ---------------------------------------------------------------------------
# Term lifecycle
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_start_term_moves_to_in_progress(db_session, service, parties) -> None:
    client, professional = parties
    escrow_id, term_ids = await _open_escrow(db_session, service, client, professional, "50", "50")

    term = await service.start_term(escrow_id, term_ids[0], professional.user_id)

    assert term.status == TermStatus.IN_PROGRESS
    assert term.started_at is not None
    escrow = await service.get_escrow(escrow_id, client.user_id)
    assert escrow.status == EscrowStatus.ACTIVE


@pytest.mark.asyncio
async def test_start_term_only_from_pending(db_session, service, parties) -> None:
    client, professional = parties
    escrow_id, term_ids = await _open_escrow(db_session, service, client, professional, "100")
    await service.start_term(escrow_id, term_ids[0], professional.user_id)

    with pytest.raises(InvalidState):
        await service.start_term(escrow_id, term_ids[0], professional.user_id)


@pytest.mark.asyncio
async def test_complete_term_from_pending_or_in_progress(db_session, service, parties) -> None:
    client, professional = parties
    escrow_id, term_ids = await _open_escrow(db_session, service, client, professional, "50", "50")

    first = await service.complete_term(escrow_id, term_ids[0], ["drawings.pdf"], professional.user_id)
    await service.start_term(escrow_id, term_ids[1], professional.user_id)
    second = await service.complete_term(escrow_id, term_ids[1], ["permit.pdf"], professional.user_id)

    assert first.status == TermStatus.COMPLETED
    assert first.documentation == ["drawings.pdf"]
    assert second.status == TermStatus.COMPLETED
    assert second.completed_at is not None


@pytest.mark.asyncio
async def test_complete_term_records_zero_amount_entry(db_session, service, parties) -> None:
    client, professional = parties
    escrow_id, term_ids = await _open_escrow(db_session, service, client, professional, "100")

    await service.complete_term(escrow_id, term_ids[0], ["handover.pdf"], professional.user_id)

    entries = await service.list_transactions(escrow_id, client.user_id)
    completion = [e for e in entries if e.type == TransactionType.RELEASE]
    assert len(completion) == 1
    assert completion[0].amount == 0
    assert completion[0].metadata_["event"] == "term_completed"
    escrow = await service.get_escrow(escrow_id, client.user_id)
    assert escrow.held_amount == TOTAL


@pytest.mark.asyncio
async def test_complete_term_requires_documentation(db_session, service, parties) -> None:
    client, professional = parties
    escrow_id, term_ids = await _open_escrow(db_session, service, client, professional, "100")

    with pytest.raises(ValidationFailed):
        await service.complete_term(escrow_id, term_ids[0], [], professional.user_id)
    with pytest.raises(ValidationFailed):
        await service.complete_term(escrow_id, term_ids[0], ["  "], professional.user_id)


@pytest.mark.asyncio
async def test_complete_term_only_by_professional(db_session, service, parties) -> None:
    client, professional = parties
    escrow_id, term_ids = await _open_escrow(db_session, service, client, professional, "100")

    with pytest.raises(Unauthorized):
        await service.complete_term(escrow_id, term_ids[0], ["x"], client.user_id)


@pytest.mark.asyncio
async def test_complete_term_twice_rejected(db_session, service, parties) -> None:
    client, professional = parties
    escrow_id, term_ids = await _open_escrow(db_session, service, client, professional, "100")
    await service.complete_term(escrow_id, term_ids[0], ["x"], professional.user_id)

    with pytest.raises(InvalidState):
        await service.complete_term(escrow_id, term_ids[0], ["y"], professional.user_id)


@pytest.mark.asyncio
async def test_unknown_term(db_session, service, parties) -> None:
    client, professional = parties
    escrow_id, _ = await _open_escrow(db_session, service, client, professional, "100")

    with pytest.raises(NotFound):
        await service.complete_term(escrow_id, uuid.uuid4(), ["x"], professional.user_id)


@pytest.mark.asyncio
async def test_approve_pending_term_rejected(db_session, service, parties) -> None:
    client, professional = parties
    escrow_id, term_ids = await _open_escrow(db_session, service, client, professional, "100")

    with pytest.raises(InvalidState):
        await service.approve_term(escrow_id, term_ids[0], client.user_id)


@pytest.mark.asyncio
async def test_approve_only_by_client(db_session, service, parties) -> None:
    client, professional = parties
    escrow_id, term_ids = await _open_escrow(db_session, service, client, professional, "100")
    await service.complete_term(escrow_id, term_ids[0], ["x"], professional.user_id)

    with pytest.raises(Unauthorized):
        await service.approve_term(escrow_id, term_ids[0], professional.user_id)

    term = await service.approve_term(escrow_id, term_ids[0], client.user_id)
    assert term.status == TermStatus.APPROVED
    assert term.approved_at is not None


# ---------------------------------------------------------------------------
# Release
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_release_completed_term_rejected(db_session, service, parties) -> None:
    client, professional = parties
    escrow_id, term_ids = await _open_escrow(db_session, service, client, professional, "100")
    await service.complete_term(escrow_id, term_ids[0], ["x"], professional.user_id)

    with pytest.raises(InvalidState):
        await service.release_funds(escrow_id, term_ids[0], _release(), client.user_id)
    assert await _balance(db_session, professional) == 0


@pytest.mark.asyncio
async def test_approval_not_required_still_needs_approval_before_release(db_session, service, parties) -> None:
    client, professional = parties
    order = await make_order(db_session, client, professional, total_amount=TOTAL)
    data = EscrowCreate(
        order_id=order.order_id, total_amount=TOTAL,
        terms=term_specs("100", approval_required=False),
    )
    escrow = await service.create_escrow(data, client.user_id)
    escrow_id, term_id = escrow.escrow_id, escrow.terms[0].term_id
    assert escrow.terms[0].approval_required is False

    await service.complete_term(escrow_id, term_id, ["x"], professional.user_id)
    with pytest.raises(InvalidState):
        await service.release_funds(escrow_id, term_id, _release(), client.user_id)


@pytest.mark.asyncio
async def test_release_only_client_or_admin(db_session, service, parties) -> None:
    client, professional = parties
    escrow_id, term_ids = await _open_escrow(db_session, service, client, professional, "100")
    await _approve(service, escrow_id, term_ids[0], client, professional)

    with pytest.raises(Unauthorized):
        await service.release_funds(escrow_id, term_ids[0], _release(), professional.user_id)

    outsider = await make_user(db_session, UserRole.CLIENT)
    with pytest.raises(Unauthorized):
        await service.release_funds(escrow_id, term_ids[0], _release(), outsider.user_id)


@pytest.mark.asyncio
async def test_admin_can_release(db_session, service, parties) -> None:
    client, professional = parties
    admin = await make_user(db_session, UserRole.ADMIN)
    escrow_id, term_ids = await _open_escrow(db_session, service, client, professional, "100")
    await _approve(service, escrow_id, term_ids[0], client, professional)

    tx = await service.release_funds(escrow_id, term_ids[0], _release(), admin.user_id)

    assert tx.created_by == admin.user_id
    assert await _balance(db_session, professional) == TOTAL


@pytest.mark.asyncio
async def test_admin_release_can_be_disabled(db_session, service, parties) -> None:
    client, professional = parties
    admin = await make_user(db_session, UserRole.ADMIN)
    escrow_id, term_ids = await _open_escrow(db_session, service, client, professional, "100")
    await _approve(service, escrow_id, term_ids[0], client, professional)
    object.__setattr__(settings, "admin_release_enabled", False)

    with pytest.raises(Unauthorized):
        await service.release_funds(escrow_id, term_ids[0], _release(), admin.user_id)


@pytest.mark.asyncio
async def test_release_amount_bounds(db_session, service, parties) -> None:
    client, professional = parties
    escrow_id, term_ids = await _open_escrow(db_session, service, client, professional, "30", "70")
    await _approve(service, escrow_id, term_ids[0], client, professional)

    with pytest.raises(ValidationFailed):
        await service.release_funds(escrow_id, term_ids[0], _release(300_001), client.user_id)
    with pytest.raises(ValidationFailed):
        await service.release_funds(escrow_id, term_ids[0], _release(0), client.user_id)

    escrow = await service.get_escrow(escrow_id, client.user_id)
    assert escrow.held_amount == TOTAL
    assert escrow.term(term_ids[0]).status == TermStatus.APPROVED


@pytest.mark.asyncio
async def test_release_more_than_held_is_insufficient_funds(db_session, service, parties) -> None:
    client, professional = parties
    escrow_id, term_ids = await _open_escrow(db_session, service, client, professional, "100")
    await _approve(service, escrow_id, term_ids[0], client, professional)

    # Simulate custody drained outside the normal flow
    escrow = await service.repo.get_escrow(escrow_id)
    escrow.held_amount = 10
    escrow.released_amount = TOTAL - 10
    await db_session.commit()

    with pytest.raises(InsufficientFunds):
        await service.release_funds(escrow_id, term_ids[0], _release(), client.user_id)
    assert await _balance(db_session, professional) == 0


@pytest.mark.asyncio
async def test_partial_release_keeps_remainder_held(db_session, service, parties) -> None:
    client, professional = parties
    escrow_id, term_ids = await _open_escrow(db_session, service, client, professional, "30", "70")
    await _approve(service, escrow_id, term_ids[0], client, professional)

    tx = await service.release_funds(escrow_id, term_ids[0], _release(200_000), client.user_id)

    assert tx.amount == 200_000
    assert tx.metadata_["unreleased_remainder"] == 100_000
    escrow = await service.get_escrow(escrow_id, client.user_id)
    assert escrow.term(term_ids[0]).status == TermStatus.RELEASED
    assert escrow.held_amount == 800_000
    assert escrow.released_amount == 200_000
    assert await _balance(db_session, professional) == 200_000


@pytest.mark.asyncio
async def test_releasing_every_term_completes_escrow(db_session, service, parties) -> None:
    client, professional = parties
    escrow_id, term_ids = await _open_escrow(db_session, service, client, professional, "50", "50")

    for term_id in term_ids:
        await _approve(service, escrow_id, term_id, client, professional)
        await service.release_funds(escrow_id, term_id, _release(), client.user_id)

    escrow = await service.get_escrow(escrow_id, client.user_id)
    assert escrow.status == EscrowStatus.COMPLETED
    assert escrow.held_amount == 0
    assert escrow.released_amount == TOTAL
    assert await _balance(db_session, professional) == TOTAL


@pytest.mark.asyncio
async def test_rounding_leftover_marked_on_final_release(db_session, service, parties) -> None:
    client, professional = parties
    # 33.33% of 100 rounds to 33 for every term, so 1 is never allotted
    escrow_id, term_ids = await _open_escrow(
        db_session, service, client, professional, "33.33", "33.33", "33.34", total=100,
    )

    releases = []
    for term_id in term_ids:
        await _approve(service, escrow_id, term_id, client, professional)
        releases.append(await service.release_funds(escrow_id, term_id, _release(), client.user_id))

    assert [tx.amount for tx in releases] == [33, 33, 33]
    assert "stranded_held_amount" not in releases[0].metadata_
    assert releases[-1].metadata_["stranded_held_amount"] == 1
    escrow = await service.get_escrow(escrow_id, client.user_id)
    assert escrow.status == EscrowStatus.COMPLETED
    assert escrow.held_amount == 1
    assert escrow.released_amount == 99


@pytest.mark.asyncio
async def test_completed_escrow_rejects_term_operations(db_session, service, parties) -> None:
    client, professional = parties
    escrow_id, term_ids = await _open_escrow(db_session, service, client, professional, "100")
    await _approve(service, escrow_id, term_ids[0], client, professional)
    await service.release_funds(escrow_id, term_ids[0], _release(), client.user_id)

    with pytest.raises(InvalidState):
        await service.complete_term(escrow_id, term_ids[0], ["x"], professional.user_id)
    with pytest.raises(InvalidState):
        await service.create_dispute(
            escrow_id, DisputeCreate(reason="late", description="late", evidence=["mail"]), client.user_id,
        )


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_scenario_happy_path_first_term(db_session, service, parties) -> None:
    """30/40/30 on 1,000,000: releasing term 1 moves 300,000 to the professional."""
    client, professional = parties
    escrow_id, term_ids = await _open_escrow(db_session, service, client, professional, "30", "40", "30")

    await service.complete_term(escrow_id, term_ids[0], ["foundation photos"], professional.user_id)
    await service.approve_term(escrow_id, term_ids[0], client.user_id)
    tx = await service.release_funds(escrow_id, term_ids[0], _release(), client.user_id)

    assert tx.type == TransactionType.RELEASE
    assert tx.amount == 300_000
    escrow = await service.get_escrow(escrow_id, client.user_id)
    assert escrow.held_amount == 700_000
    assert escrow.released_amount == 300_000
    assert escrow.status == EscrowStatus.ACTIVE
    assert escrow.term(term_ids[0]).status == TermStatus.RELEASED
    assert await _balance(db_session, professional) == 300_000


@pytest.mark.asyncio
async def test_scenario_double_release_rejected(db_session, service, parties) -> None:
    client, professional = parties
    escrow_id, term_ids = await _open_escrow(db_session, service, client, professional, "30", "40", "30")
    await _approve(service, escrow_id, term_ids[0], client, professional)
    await service.release_funds(escrow_id, term_ids[0], _release(), client.user_id)

    with pytest.raises(InvalidState):
        await service.release_funds(escrow_id, term_ids[0], _release(), client.user_id)

    assert await _balance(db_session, professional) == 300_000
    entries = await service.list_transactions(escrow_id, client.user_id)
    releases = [e for e in entries if e.type == TransactionType.RELEASE and e.amount > 0]
    assert len(releases) == 1


@pytest.mark.asyncio
async def test_scenario_dispute_freezes_account(db_session, service, parties) -> None:
    client, professional = parties
    escrow_id, term_ids = await _open_escrow(db_session, service, client, professional, "30", "40", "30")
    await service.complete_term(escrow_id, term_ids[1], ["roof photos"], professional.user_id)

    dispute = await service.create_dispute(
        escrow_id,
        DisputeCreate(
            term_id=term_ids[1], reason="Quality", description="Roof leaks", evidence=["leak.jpg"],
        ),
        client.user_id,
    )

    assert dispute.raised_by == client.user_id
    escrow = await service.get_escrow(escrow_id, client.user_id)
    assert escrow.status == EscrowStatus.DISPUTED
    assert escrow.term(term_ids[1]).status == TermStatus.DISPUTED
    assert escrow.held_amount == TOTAL

    with pytest.raises(InvalidState):
        await service.approve_term(escrow_id, term_ids[1], client.user_id)
    with pytest.raises(InvalidState):
        await service.complete_term(escrow_id, term_ids[0], ["x"], professional.user_id)

    entries = await service.list_transactions(escrow_id, client.user_id)
    holds = [e for e in entries if e.type == TransactionType.DISPUTE_HOLD]
    assert len(holds) == 1
    assert holds[0].amount == 0


@pytest.mark.asyncio
async def test_scenario_ninety_five_percent_rejected(db_session, service, parties) -> None:
    client, professional = parties
    order = await make_order(db_session, client, professional, total_amount=TOTAL)

    with pytest.raises(ValidationFailed):
        await service.create_escrow(escrow_request(order, "30", "40", "25"), client.user_id)


@pytest.mark.asyncio
async def test_dispute_requires_evidence(db_session, service, parties) -> None:
    client, professional = parties
    escrow_id, _ = await _open_escrow(db_session, service, client, professional, "100")

    with pytest.raises(ValidationFailed):
        await service.create_dispute(
            escrow_id, DisputeCreate(reason="late", description="late", evidence=[]), professional.user_id,
        )


@pytest.mark.asyncio
async def test_dispute_on_released_term_rejected(db_session, service, parties) -> None:
    client, professional = parties
    escrow_id, term_ids = await _open_escrow(db_session, service, client, professional, "50", "50")
    await _approve(service, escrow_id, term_ids[0], client, professional)
    await service.release_funds(escrow_id, term_ids[0], _release(), client.user_id)

    with pytest.raises(InvalidState):
        await service.create_dispute(
            escrow_id,
            DisputeCreate(term_id=term_ids[0], reason="late", description="late", evidence=["mail"]),
            client.user_id,
        )
    escrow = await service.get_escrow(escrow_id, client.user_id)
    assert escrow.status == EscrowStatus.ACTIVE


# ---------------------------------------------------------------------------
# Invariants, authorization and reads
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_conservation_and_replay_hold_throughout(db_session, service, parties) -> None:
    client, professional = parties
    escrow_id, term_ids = await _open_escrow(db_session, service, client, professional, "30", "40", "30")

    async def check() -> None:
        escrow, totals, consistent = await service.verify_ledger(escrow_id, client.user_id)
        assert escrow.held_amount + escrow.released_amount == escrow.total_amount
        assert consistent
        assert totals.held == escrow.held_amount
        assert totals.released == escrow.released_amount

    await check()
    for term_id in term_ids[:2]:
        await service.complete_term(escrow_id, term_id, ["done"], professional.user_id)
        await check()
        await service.approve_term(escrow_id, term_id, client.user_id)
        await service.release_funds(escrow_id, term_id, _release(), client.user_id)
        await check()


@pytest.mark.asyncio
async def test_replay_detects_tampered_balances(db_session, service, parties) -> None:
    client, professional = parties
    escrow_id, _ = await _open_escrow(db_session, service, client, professional, "100")
    escrow = await service.repo.get_escrow(escrow_id)
    escrow.held_amount = TOTAL - 1
    await db_session.commit()

    _, _, consistent = await service.verify_ledger(escrow_id, client.user_id)
    assert not consistent


@pytest.mark.asyncio
async def test_non_party_is_unauthorized_everywhere(db_session, service, parties) -> None:
    client, professional = parties
    outsider = await make_user(db_session, UserRole.PROFESSIONAL)
    escrow_id, term_ids = await _open_escrow(db_session, service, client, professional, "100")
    order_id = (await service.get_escrow(escrow_id, client.user_id)).order_id
    term_id = term_ids[0]
    who = outsider.user_id

    calls = [
        service.get_escrow(escrow_id, who),
        service.get_escrow_by_order(order_id, who),
        service.list_transactions(escrow_id, who),
        service.list_disputes(escrow_id, who),
        service.verify_ledger(escrow_id, who),
        service.start_term(escrow_id, term_id, who),
        service.complete_term(escrow_id, term_id, ["x"], who),
        service.approve_term(escrow_id, term_id, who),
        service.release_funds(escrow_id, term_id, _release(), who),
        service.create_dispute(escrow_id, DisputeCreate(reason="r", description="d", evidence=["e"]), who),
    ]
    for call in calls:
        with pytest.raises(Unauthorized):
            await call


@pytest.mark.asyncio
async def test_non_party_unauthorized_even_when_frozen(db_session, service, parties) -> None:
    client, professional = parties
    outsider = await make_user(db_session, UserRole.CLIENT)
    escrow_id, term_ids = await _open_escrow(db_session, service, client, professional, "100")
    await service.create_dispute(
        escrow_id, DisputeCreate(reason="r", description="d", evidence=["e"]), client.user_id,
    )

    with pytest.raises(Unauthorized):
        await service.approve_term(escrow_id, term_ids[0], outsider.user_id)


@pytest.mark.asyncio
async def test_list_and_stats(db_session, service, parties) -> None:
    client, professional = parties
    first, first_terms = await _open_escrow(db_session, service, client, professional, "100")
    second, _ = await _open_escrow(db_session, service, client, professional, "50", "50", total=500_000)
    await _approve(service, first, first_terms[0], client, professional)
    await service.release_funds(first, first_terms[0], _release(), client.user_id)

    listed = await service.list_user_escrows(professional.user_id)
    assert {e.escrow_id for e in listed} == {first, second}

    stats = await service.get_escrow_stats(client.user_id)
    assert stats["total_escrows"] == 2
    assert stats["total_amount"] == 1_500_000
    assert stats["held_amount"] == 500_000
    assert stats["released_amount"] == TOTAL
    assert stats["status_breakdown"] == {"completed": 1, "pending": 1}

    outsider = await make_user(db_session, UserRole.CLIENT)
    assert await service.list_user_escrows(outsider.user_id) == []
    assert (await service.get_escrow_stats(outsider.user_id))["total_escrows"] == 0


@pytest.mark.asyncio
async def test_get_escrow_by_order_missing(service, parties) -> None:
    client, _ = parties
    with pytest.raises(NotFound):
        await service.get_escrow_by_order(uuid.uuid4(), client.user_id)


@pytest.mark.asyncio
async def test_confirm_deposit_is_idempotent(db_session, service, parties) -> None:
    client, professional = parties
    escrow_id, _ = await _open_escrow(db_session, service, client, professional, "100")
    order_id = (await service.get_escrow(escrow_id, client.user_id)).order_id

    first = await service.confirm_deposit(order_id)
    funded_at = first.funded_at.replace(tzinfo=None)
    second = await service.confirm_deposit(order_id)

    assert second.status == EscrowStatus.ACTIVE
    assert second.funded_at.replace(tzinfo=None) == funded_at
    entries = await service.list_transactions(escrow_id, client.user_id)
    assert [e.type for e in entries] == [TransactionType.DEPOSIT]
    assert await service.confirm_deposit(uuid.uuid4()) is None


def test_replay_ignores_informational_entries() -> None:
    entries = [
        EscrowTransaction(type=TransactionType.DEPOSIT, amount=1000),
        EscrowTransaction(type=TransactionType.RELEASE, amount=0),
        EscrowTransaction(type=TransactionType.RELEASE, amount=300),
        EscrowTransaction(type=TransactionType.DISPUTE_HOLD, amount=0),
    ]
    totals = ledger.replay(entries)
    assert totals.held == 700
    assert totals.released == 300


@pytest.mark.asyncio
async def test_escrow_opened_after_payment_is_funded(db_session, service, parties) -> None:
    client, professional = parties
    order = await make_order(db_session, client, professional, total_amount=TOTAL)
    order.payment_status = PaymentStatus.PAID
    await db_session.commit()

    # webhook arrived first: nothing to confirm yet
    assert await service.confirm_deposit(order.order_id) is None

    escrow = await service.create_escrow(escrow_request(order, "50", "50"), client.user_id)

    assert escrow.funded_at is not None
    assert escrow.status == EscrowStatus.ACTIVE
    assert escrow.held_amount == TOTAL


class _FailingBalances:
    async def credit(self, professional_id: uuid.UUID, amount: int) -> int:
        raise OperationalError("UPDATE professionals", {}, Exception("connection lost"))


@pytest.mark.asyncio
async def test_storage_failure_rolls_back_release(db_session, service, parties) -> None:
    client, professional = parties
    escrow_id, term_ids = await _open_escrow(db_session, service, client, professional, "100")
    await _approve(service, escrow_id, term_ids[0], client, professional)
    failing = EscrowService(EscrowRepository(db_session), balances=_FailingBalances())

    with pytest.raises(StorageError) as exc_info:
        await failing.release_funds(escrow_id, term_ids[0], _release(), client.user_id)

    assert exc_info.value.code == "internal_error"
    assert exc_info.value.status_code == 500
    escrow = await service.get_escrow(escrow_id, client.user_id)
    assert escrow.held_amount == TOTAL
    assert escrow.released_amount == 0
    assert escrow.term(term_ids[0]).status == TermStatus.APPROVED
    entries = await service.list_transactions(escrow_id, client.user_id)
    assert sum(e.amount for e in entries if e.type == TransactionType.RELEASE) == 0
    assert await _balance(db_session, professional) == 0

    # the same release goes through once storage recovers
    tx = await service.release_funds(escrow_id, term_ids[0], _release(), client.user_id)
    assert tx.amount == TOTAL
