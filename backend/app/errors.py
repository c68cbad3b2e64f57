"""
Error taxonomy for the ledger core.

Every failure the core reports is an HTTPException subclass carrying a stable
machine-readable `kind` next to the human `detail`, so callers can render a
specific message without parsing text. `main.py` serializes them as
`{"detail": ..., "kind": ...}`.
"""
from fastapi import HTTPException


class LedgerError(HTTPException):
    kind = "ledger_error"
    http_status = 400

    def __init__(self, detail: str):
        super().__init__(status_code=self.http_status, detail=detail)

    def to_dict(self) -> dict:
        return {"detail": self.detail, "kind": self.kind}


class ValidationError(LedgerError):
    kind = "validation_error"
    http_status = 400


class PermissionDenied(LedgerError):
    kind = "permission_denied"
    http_status = 403


class NotFound(LedgerError):
    kind = "not_found"
    http_status = 404


class LotNotFound(NotFound):
    kind = "lot_not_found"


class InvalidTransition(LedgerError):
    kind = "invalid_transition"
    http_status = 409


class LotAlreadyClaimed(LedgerError):
    kind = "lot_already_claimed"
    http_status = 409


class InsufficientQuantity(LedgerError):
    kind = "insufficient_quantity"
    http_status = 409


class PersistenceFailure(LedgerError):
    kind = "persistence_failure"
    http_status = 500
