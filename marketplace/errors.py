"""Escrow error taxonomy.

Each kind is an HTTPException so routers can let it propagate untouched; the
`code` field gives clients a stable machine-readable kind that does not depend
on the HTTP status (ValidationFailed and InsufficientFunds share 422).
"""

from fastapi import HTTPException


class EscrowError(HTTPException):
    status_code = 400
    code = "escrow_error"

    def __init__(self, detail: str) -> None:
        super().__init__(status_code=self.status_code, detail=detail)


class NotFound(EscrowError):
    status_code = 404
    code = "not_found"


class Unauthorized(EscrowError):
    status_code = 403
    code = "unauthorized"


class InvalidState(EscrowError):
    status_code = 409
    code = "invalid_state"


class ValidationFailed(EscrowError):
    status_code = 422
    code = "validation_failed"


class InsufficientFunds(EscrowError):
    status_code = 422
    code = "insufficient_funds"


class StorageError(EscrowError):
    """Unexpected persistence failure. Never one of the domain kinds above."""
    status_code = 500
    code = "internal_error"
