"""Persistence boundary for the escrow core.

The service never touches the session directly; everything it reads or writes
goes through this class so a different store (or a test double) can be swapped
in without changing the state machine.
"""

import uuid

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.models.escrow import (
    EscrowAccount,
    EscrowDispute,
    EscrowStatus,
    EscrowTransaction,
)
from marketplace.models.order import Order
from marketplace.models.user import Professional, User


class EscrowRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    # --- collaborators ---

    async def get_order(self, order_id: uuid.UUID) -> Order | None:
        result = await self.db.execute(select(Order).where(Order.order_id == order_id))
        return result.scalar_one_or_none()

    async def get_user(self, user_id: uuid.UUID) -> User | None:
        result = await self.db.execute(select(User).where(User.user_id == user_id))
        return result.scalar_one_or_none()

    async def lock_professional(self, professional_id: uuid.UUID) -> Professional | None:
        result = await self.db.execute(
            select(Professional)
            .where(Professional.professional_id == professional_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    # --- escrow accounts ---

    async def get_escrow(
        self, escrow_id: uuid.UUID, *, for_update: bool = False
    ) -> EscrowAccount | None:
        """Load an account with its terms. for_update takes the row lock that
        serializes every mutation on the same account."""
        stmt = select(EscrowAccount).where(EscrowAccount.escrow_id == escrow_id)
        if for_update:
            stmt = stmt.with_for_update()
        stmt = stmt.execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_escrow_by_order(
        self, order_id: uuid.UUID, *, for_update: bool = False
    ) -> EscrowAccount | None:
        stmt = select(EscrowAccount).where(EscrowAccount.order_id == order_id)
        if for_update:
            stmt = stmt.with_for_update()
        stmt = stmt.execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: uuid.UUID) -> list[EscrowAccount]:
        result = await self.db.execute(
            select(EscrowAccount)
            .where(_party_clause(user_id))
            .order_by(EscrowAccount.created_at.desc())
        )
        return list(result.scalars().all())

    async def totals_for_user(self, user_id: uuid.UUID) -> tuple[int, int, int, int]:
        """(count, total, held, released) across the user's accounts."""
        result = await self.db.execute(
            select(
                func.count(EscrowAccount.escrow_id),
                func.coalesce(func.sum(EscrowAccount.total_amount), 0),
                func.coalesce(func.sum(EscrowAccount.held_amount), 0),
                func.coalesce(func.sum(EscrowAccount.released_amount), 0),
            ).where(_party_clause(user_id))
        )
        count, total, held, released = result.one()
        return int(count), int(total), int(held), int(released)

    async def status_counts_for_user(self, user_id: uuid.UUID) -> dict[EscrowStatus, int]:
        result = await self.db.execute(
            select(EscrowAccount.status, func.count(EscrowAccount.escrow_id))
            .where(_party_clause(user_id))
            .group_by(EscrowAccount.status)
        )
        return {status: int(count) for status, count in result.all()}

    # --- ledger and disputes ---

    async def list_transactions(self, escrow_id: uuid.UUID) -> list[EscrowTransaction]:
        result = await self.db.execute(
            select(EscrowTransaction)
            .where(EscrowTransaction.escrow_id == escrow_id)
            .order_by(EscrowTransaction.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_disputes(self, escrow_id: uuid.UUID) -> list[EscrowDispute]:
        result = await self.db.execute(
            select(EscrowDispute)
            .where(EscrowDispute.escrow_id == escrow_id)
            .order_by(EscrowDispute.created_at.desc())
        )
        return list(result.scalars().all())

    # --- unit of work ---

    def add(self, entity: object) -> None:
        self.db.add(entity)

    async def flush(self) -> None:
        await self.db.flush()

    async def commit(self) -> None:
        await self.db.commit()

    async def rollback(self) -> None:
        await self.db.rollback()

    async def refresh(self, entity: object) -> None:
        await self.db.refresh(entity)


def _party_clause(user_id: uuid.UUID):  # type: ignore[no-untyped-def]
    return or_(
        EscrowAccount.client_user_id == user_id,
        EscrowAccount.professional_user_id == user_id,
    )
