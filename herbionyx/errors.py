# herbionyx/errors.py
"""
Error taxonomy shared by the codec, ledger gateway, assembler and orchestrator.

Every error carries a machine-readable `kind` and a human-readable `reason`
so HTTP layers and the orchestrator can report failures without string
matching.
"""

from __future__ import annotations

from typing import Any, Dict


class HerbionyxError(Exception):
    kind = "error"

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "reason": self.reason}


# -------------------------
# QR payload validation
# -------------------------
class ValidationError(HerbionyxError):
    kind = "validation"


class ParseError(ValidationError):
    kind = "parse"


class StructureError(ValidationError):
    kind = "structure"


class NetworkMismatchError(ValidationError):
    kind = "network_mismatch"


# -------------------------
# Ledger access
# -------------------------
class LedgerError(HerbionyxError):
    """`transport` is True when the ledger was never reached (retryable)."""

    kind = "ledger"

    def __init__(self, reason: str, transport: bool = False):
        super().__init__(reason)
        self.transport = transport


class TransactionError(LedgerError):
    kind = "transaction"

    def __init__(self, reason: str, receipt: Any = None, transport: bool = False):
        super().__init__(reason, transport=transport)
        self.receipt = receipt


class QueryError(LedgerError):
    kind = "query"


class LedgerTimeoutError(QueryError):
    kind = "timeout"


class NotFoundError(HerbionyxError):
    """Batch or record absent on the ledger. Not a transport failure."""

    kind = "not_found"


class MalformedRecordError(HerbionyxError):
    kind = "malformed_record"


# -------------------------
# Verification flow
# -------------------------
class ScanError(HerbionyxError):
    kind = "scan"


class InvalidTransitionError(HerbionyxError):
    kind = "invalid_transition"


def http_status(err: HerbionyxError) -> int:
    """Status code the Flask and FastAPI layers answer with for `err`."""
    if isinstance(err, LedgerTimeoutError):
        return 504
    if isinstance(err, LedgerError):
        return 502
    if isinstance(err, NotFoundError):
        return 404
    if isinstance(err, MalformedRecordError):
        return 422
    if isinstance(err, InvalidTransitionError):
        return 409
    return 400
