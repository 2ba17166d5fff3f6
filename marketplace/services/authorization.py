"""Party and role checks for escrow operations."""

import uuid

from marketplace.config import settings
from marketplace.errors import Unauthorized
from marketplace.models.escrow import EscrowAccount
from marketplace.models.user import User, UserRole


def is_client(escrow: EscrowAccount, user_id: uuid.UUID) -> bool:
    return escrow.client_user_id == user_id


def is_professional(escrow: EscrowAccount, user_id: uuid.UUID) -> bool:
    return escrow.professional_user_id is not None and escrow.professional_user_id == user_id


def assert_party(
    escrow: EscrowAccount, user_id: uuid.UUID, allowed: str = "both"
) -> None:
    """Ensure user is a party to the escrow. allowed: 'client', 'professional', 'both'."""
    client = is_client(escrow, user_id)
    professional = is_professional(escrow, user_id)
    if allowed == "client" and not client:
        raise Unauthorized("Only the client can perform this action")
    if allowed == "professional" and not professional:
        raise Unauthorized("Only the assigned professional can perform this action")
    if allowed == "both" and not (client or professional):
        raise Unauthorized("Not a party to this escrow")


def can_release_as_admin(user: User | None) -> bool:
    """Admin release capability: ADMIN role, and the capability switched on."""
    if user is None or not settings.admin_release_enabled:
        return False
    return user.role == UserRole.ADMIN
