"""Ed25519 signature verification dependency for FastAPI."""

import uuid

from fastapi import Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.config import settings
from marketplace.database import get_db
from marketplace.models.user import User
from marketplace.utils.crypto import AUTH_SCHEME, is_timestamp_valid, verify_signature


class AuthenticatedUser:
    """Container for the verified caller."""

    def __init__(self, user_id: uuid.UUID, user: User) -> None:
        self.user_id = user_id
        self.user = user


async def verify_request(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> AuthenticatedUser:
    """Verify the Ed25519 signature on an incoming request."""
    auth_header = request.headers.get("Authorization")
    timestamp = request.headers.get("X-Timestamp")

    if not auth_header or not timestamp:
        raise HTTPException(status_code=403, detail="Missing authentication headers")

    # Authorization: UserSig <user_id>:<signature>
    prefix = f"{AUTH_SCHEME} "
    if not auth_header.startswith(prefix):
        raise HTTPException(status_code=403, detail="Invalid authorization scheme")

    try:
        user_id_str, signature = auth_header[len(prefix):].split(":", 1)
        user_id = uuid.UUID(user_id_str)
    except ValueError:
        raise HTTPException(status_code=403, detail="Malformed authorization header")

    if not is_timestamp_valid(timestamp, settings.signature_max_age_seconds):
        raise HTTPException(status_code=403, detail="Request timestamp expired")

    result = await db.execute(select(User).where(User.user_id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise HTTPException(status_code=403, detail="User not found")

    body = await request.body()
    if not verify_signature(user.public_key, signature, timestamp, request.method, request.url.path, body):
        raise HTTPException(status_code=403, detail="Invalid signature")

    return AuthenticatedUser(user_id=user_id, user=user)
