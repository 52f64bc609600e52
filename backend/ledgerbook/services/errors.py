# Overview: Exception taxonomy shared by the ledger services.

from __future__ import annotations


class LedgerError(Exception):
    """Base class for ledger service errors; carries customer/transaction context."""

    # HTTP status the API answers with
    status_code = 400

    def __init__(self, message: str, *, customer_id: str | None = None, transaction_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.customer_id = customer_id
        self.transaction_id = transaction_id

    def to_dict(self) -> dict:
        payload = {"error": self.message, "code": type(self).__name__}
        if self.customer_id:
            payload["customer_id"] = self.customer_id
        if self.transaction_id:
            payload["transaction_id"] = self.transaction_id
        return payload


class InvalidArgument(LedgerError):
    """Malformed input (non-positive amount, unknown kind). Nothing was written."""
    status_code = 400


class NotFound(LedgerError):
    """Unknown customer or transaction. Nothing was written."""
    status_code = 404


class ConflictExhausted(LedgerError):
    """Store contention persisted past the retry budget."""
    status_code = 409


class InvariantViolation(LedgerError):
    """A write would break a ledger invariant (e.g. audit sum above payment amount)."""
    status_code = 409
