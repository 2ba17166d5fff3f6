"""Professional payable balance."""

import uuid

from marketplace.errors import NotFound, ValidationFailed
from marketplace.repositories.escrow import EscrowRepository


class ProfessionalBalanceLedger:
    """Credits a professional's balance inside the caller's transaction.

    Never commits: a credit is only valid as part of the release that caused it.
    """

    def __init__(self, repo: EscrowRepository) -> None:
        self.repo = repo

    async def credit(self, professional_id: uuid.UUID, amount: int) -> int:
        if amount <= 0:
            raise ValidationFailed("Credit amount must be positive")
        # Lock the balance row so concurrent releases to the same professional add up
        professional = await self.repo.lock_professional(professional_id)
        if professional is None:
            raise NotFound("Professional not found")
        professional.balance = professional.balance + amount
        return professional.balance
