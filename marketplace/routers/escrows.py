"""Escrow account, term lifecycle and dispute endpoints."""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.auth.middleware import AuthenticatedUser, verify_request
from marketplace.database import get_db
from marketplace.repositories.escrow import EscrowRepository
from marketplace.schemas.escrow import (
    DisputeCreate,
    DisputeResponse,
    EscrowCreate,
    EscrowResponse,
    EscrowStatsResponse,
    FundRelease,
    LedgerVerification,
    TermComplete,
    TermResponse,
    TransactionResponse,
)
from marketplace.services.escrow import EscrowService

router = APIRouter(prefix="/escrows", tags=["escrows"])


def get_escrow_service(db: AsyncSession = Depends(get_db)) -> EscrowService:
    return EscrowService(EscrowRepository(db))


@router.post("", response_model=EscrowResponse, status_code=201)
async def create_escrow(
    data: EscrowCreate,
    auth: AuthenticatedUser = Depends(verify_request),
    service: EscrowService = Depends(get_escrow_service),
) -> EscrowResponse:
    """Client opens an escrow account for an order, split into terms."""
    escrow = await service.create_escrow(data, auth.user_id)
    return EscrowResponse.model_validate(escrow)


@router.get("", response_model=list[EscrowResponse])
async def list_escrows(
    auth: AuthenticatedUser = Depends(verify_request),
    service: EscrowService = Depends(get_escrow_service),
) -> list[EscrowResponse]:
    """Accounts where the caller is client or professional, newest first."""
    escrows = await service.list_user_escrows(auth.user_id)
    return [EscrowResponse.model_validate(e) for e in escrows]


@router.get("/stats", response_model=EscrowStatsResponse)
async def escrow_stats(
    auth: AuthenticatedUser = Depends(verify_request),
    service: EscrowService = Depends(get_escrow_service),
) -> EscrowStatsResponse:
    return EscrowStatsResponse(**await service.get_escrow_stats(auth.user_id))


@router.get("/by-order/{order_id}", response_model=EscrowResponse)
async def get_escrow_by_order(
    order_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    service: EscrowService = Depends(get_escrow_service),
) -> EscrowResponse:
    escrow = await service.get_escrow_by_order(order_id, auth.user_id)
    return EscrowResponse.model_validate(escrow)


@router.get("/{escrow_id}", response_model=EscrowResponse)
async def get_escrow(
    escrow_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    service: EscrowService = Depends(get_escrow_service),
) -> EscrowResponse:
    escrow = await service.get_escrow(escrow_id, auth.user_id)
    return EscrowResponse.model_validate(escrow)


@router.get("/{escrow_id}/transactions", response_model=list[TransactionResponse])
async def list_transactions(
    escrow_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    service: EscrowService = Depends(get_escrow_service),
) -> list[TransactionResponse]:
    """Ledger entries, newest first."""
    entries = await service.list_transactions(escrow_id, auth.user_id)
    return [TransactionResponse.model_validate(tx) for tx in entries]


@router.get("/{escrow_id}/ledger/verify", response_model=LedgerVerification)
async def verify_ledger(
    escrow_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    service: EscrowService = Depends(get_escrow_service),
) -> LedgerVerification:
    """Replay the ledger and compare it with the stored balances."""
    escrow, totals, consistent = await service.verify_ledger(escrow_id, auth.user_id)
    return LedgerVerification(
        escrow_id=escrow.escrow_id,
        consistent=consistent,
        stored={
            "total": escrow.total_amount,
            "held": escrow.held_amount,
            "released": escrow.released_amount,
        },
        replayed=totals.to_dict(),
    )


@router.get("/{escrow_id}/disputes", response_model=list[DisputeResponse])
async def list_disputes(
    escrow_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    service: EscrowService = Depends(get_escrow_service),
) -> list[DisputeResponse]:
    disputes = await service.list_disputes(escrow_id, auth.user_id)
    return [DisputeResponse.model_validate(d) for d in disputes]


@router.post("/{escrow_id}/terms/{term_id}/start", response_model=TermResponse)
async def start_term(
    escrow_id: uuid.UUID,
    term_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    service: EscrowService = Depends(get_escrow_service),
) -> TermResponse:
    """Professional begins work on a pending term."""
    term = await service.start_term(escrow_id, term_id, auth.user_id)
    return TermResponse.model_validate(term)


@router.post("/{escrow_id}/terms/{term_id}/complete", response_model=TermResponse)
async def complete_term(
    escrow_id: uuid.UUID,
    term_id: uuid.UUID,
    data: TermComplete,
    auth: AuthenticatedUser = Depends(verify_request),
    service: EscrowService = Depends(get_escrow_service),
) -> TermResponse:
    """Professional submits finished work with documentation."""
    term = await service.complete_term(escrow_id, term_id, data.documentation, auth.user_id)
    return TermResponse.model_validate(term)


@router.post("/{escrow_id}/terms/{term_id}/approve", response_model=TermResponse)
async def approve_term(
    escrow_id: uuid.UUID,
    term_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    service: EscrowService = Depends(get_escrow_service),
) -> TermResponse:
    """Client approves a completed term."""
    term = await service.approve_term(escrow_id, term_id, auth.user_id)
    return TermResponse.model_validate(term)


@router.post("/{escrow_id}/terms/{term_id}/release", response_model=TransactionResponse)
async def release_funds(
    escrow_id: uuid.UUID,
    term_id: uuid.UUID,
    data: FundRelease,
    auth: AuthenticatedUser = Depends(verify_request),
    service: EscrowService = Depends(get_escrow_service),
) -> TransactionResponse:
    """Client (or an administrator) pays an approved term to the professional."""
    tx = await service.release_funds(escrow_id, term_id, data, auth.user_id)
    return TransactionResponse.model_validate(tx)


@router.post("/{escrow_id}/disputes", response_model=DisputeResponse, status_code=201)
async def create_dispute(
    escrow_id: uuid.UUID,
    data: DisputeCreate,
    auth: AuthenticatedUser = Depends(verify_request),
    service: EscrowService = Depends(get_escrow_service),
) -> DisputeResponse:
    """Either party freezes the account pending resolution."""
    dispute = await service.create_dispute(escrow_id, data, auth.user_id)
    return DisputeResponse.model_validate(dispute)
