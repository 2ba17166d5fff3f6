"""Ed25519 request signing for marketplace users (PyNaCl)."""

import hashlib
import uuid
from datetime import UTC, datetime

from nacl.encoding import HexEncoder
from nacl.exceptions import CryptoError
from nacl.signing import SigningKey, VerifyKey

AUTH_SCHEME = "UserSig"


def generate_keypair() -> tuple[str, str]:
    """Returns (private_key_hex, public_key_hex)."""
    signing_key = SigningKey.generate()
    return (
        signing_key.encode(encoder=HexEncoder).decode(),
        signing_key.verify_key.encode(encoder=HexEncoder).decode(),
    )


def canonical_request(timestamp: str, method: str, path: str, body: bytes) -> bytes:
    """timestamp, method, path and sha256(body), newline separated."""
    digest = hashlib.sha256(body).hexdigest()
    return f"{timestamp}\n{method.upper()}\n{path}\n{digest}".encode()


def sign_request(private_key_hex: str, timestamp: str, method: str, path: str, body: bytes) -> str:
    signing_key = SigningKey(private_key_hex.encode(), encoder=HexEncoder)
    signed = signing_key.sign(canonical_request(timestamp, method, path, body), encoder=HexEncoder)
    return signed.signature.decode()


def verify_signature(
    public_key_hex: str,
    signature_hex: str,
    timestamp: str,
    method: str,
    path: str,
    body: bytes,
) -> bool:
    try:
        verify_key = VerifyKey(public_key_hex.encode(), encoder=HexEncoder)
        verify_key.verify(
            canonical_request(timestamp, method, path, body),
            HexEncoder.decode(signature_hex.encode()),
        )
    except (CryptoError, ValueError, TypeError):
        return False
    return True


def is_valid_public_key(public_key_hex: str) -> bool:
    try:
        VerifyKey(public_key_hex.encode(), encoder=HexEncoder)
    except (CryptoError, ValueError, TypeError):
        return False
    return True


def is_timestamp_valid(timestamp: str, max_age_seconds: int = 30) -> bool:
    """Timestamps must be ISO-8601 with an offset and within the window."""
    try:
        ts = datetime.fromisoformat(timestamp)
    except (ValueError, TypeError):
        return False
    if ts.tzinfo is None:
        return False
    return abs((datetime.now(UTC) - ts).total_seconds()) <= max_age_seconds


def signed_headers(
    user_id: uuid.UUID,
    private_key_hex: str,
    method: str,
    path: str,
    body: bytes = b"",
) -> dict[str, str]:
    """Headers a client sends to call an authenticated endpoint."""
    timestamp = datetime.now(UTC).isoformat()
    signature = sign_request(private_key_hex, timestamp, method, path, body)
    return {
        "Authorization": f"{AUTH_SCHEME} {user_id}:{signature}",
        "X-Timestamp": timestamp,
    }
