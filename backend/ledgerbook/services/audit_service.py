# Overview: Append-only payment audit trail; recording, queries and integrity checks.

"""
Payment Audit Recorder

INVARIANTS:
- Append-only: records are inserted, never updated or deleted.
- Records are written inside the same DB transaction as the allocation they
  describe; record() flushes but never commits.
- The source transaction must already exist (flushed) before a record can
  reference it.
- For a payment: sum(payment_allocation) + sum(over_payment) never exceeds
  the payment amount, and equals it once allocation is complete.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import func

from ..extensions import db
from ..models import PaymentAudit, Transaction
from ..models import audit_metadata
from ..models.ledger import (
    KIND_PAYMENT,
    VALID_AUDIT_TYPES,
    PAYMENT_DISPOSITION_TYPES,
    AUDIT_PAYMENT_ALLOCATION,
)
from ..utils import to_utc_z
from .errors import InvalidArgument, NotFound, InvariantViolation


# Anomaly kinds reported by verify_payment()
ANOMALY_ALLOCATION_EXCEEDS_PAYMENT = "allocation_exceeds_payment"
ANOMALY_DISPOSITION_MISMATCH = "disposition_sum_mismatch"


@dataclass(frozen=True)
class AuditAnomaly:
    kind: str
    customer_id: str
    transaction_id: str
    expected: int
    actual: int
    message: str

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "customer_id": self.customer_id,
            "transaction_id": self.transaction_id,
            "expected": self.expected,
            "actual": self.actual,
            "message": self.message,
        }


@dataclass
class AuditSummary:
    customer_id: str
    total_entries: int = 0
    total_amount: int = 0
    by_type: dict[str, dict[str, int]] = field(default_factory=dict)
    earliest: datetime | None = None
    latest: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "customer_id": self.customer_id,
            "total_entries": self.total_entries,
            "total_amount": self.total_amount,
            "by_type": self.by_type,
            "date_range": (
                {"earliest": to_utc_z(self.earliest), "latest": to_utc_z(self.latest)}
                if self.earliest else None
            ),
        }


def record(
    *,
    customer_id: str,
    source_transaction_id: str,
    audit_type: str,
    amount: int,
    meta: audit_metadata.AuditMeta | None = None,
) -> PaymentAudit:
    """
    Append one audit record.

    Raises:
        InvalidArgument: unknown type or non-positive amount
        NotFound: source transaction does not exist
        InvariantViolation: the record would push a payment's audited
            total above its amount
    """
    if audit_type not in VALID_AUDIT_TYPES:
        raise InvalidArgument(
            f"Invalid audit type: {audit_type}. Must be one of {list(VALID_AUDIT_TYPES)}",
            customer_id=customer_id,
            transaction_id=source_transaction_id,
        )
    if amount <= 0:
        raise InvalidArgument(
            "Audit amount must be positive",
            customer_id=customer_id,
            transaction_id=source_transaction_id,
        )

    source = db.session.get(Transaction, source_transaction_id)
    if source is None:
        raise NotFound(
            f"Source transaction {source_transaction_id} not found",
            customer_id=customer_id,
            transaction_id=source_transaction_id,
        )

    if source.kind == KIND_PAYMENT and audit_type in PAYMENT_DISPOSITION_TYPES:
        already = disposition_total(source.id)
        if already + amount > source.amount:
            raise InvariantViolation(
                f"Audited total {already + amount} would exceed payment amount {source.amount}",
                customer_id=customer_id,
                transaction_id=source.id,
            )

    entry = PaymentAudit(
        customer_id=customer_id,
        source_transaction_id=source_transaction_id,
        type=audit_type,
        amount=amount,
        metadata_json=audit_metadata.dump(meta),
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def disposition_total(source_transaction_id: str) -> int:
    """Sum of payment_allocation + over_payment amounts for a payment."""
    total = db.session.query(
        func.coalesce(func.sum(PaymentAudit.amount), 0)
    ).filter(
        PaymentAudit.source_transaction_id == source_transaction_id,
        PaymentAudit.type.in_(PAYMENT_DISPOSITION_TYPES),
    ).scalar()
    return int(total or 0)


def has_records(source_transaction_id: str) -> bool:
    return db.session.query(PaymentAudit.id).filter_by(
        source_transaction_id=source_transaction_id
    ).first() is not None


def list_for(customer_id: str, limit: int | None = None) -> list[PaymentAudit]:
    """Audit history for a customer, most recently written first."""
    query = db.session.query(PaymentAudit).filter_by(
        customer_id=customer_id
    ).order_by(PaymentAudit.seq.desc(), PaymentAudit.id.desc())
    if limit:
        query = query.limit(limit)
    return query.all()


def list_for_transaction(transaction_id: str) -> list[PaymentAudit]:
    """Records caused by a transaction, in the order they were written."""
    return db.session.query(PaymentAudit).filter_by(
        source_transaction_id=transaction_id
    ).order_by(PaymentAudit.seq, PaymentAudit.id).all()


def list_for_customer_ledger(customer_id: str) -> list[PaymentAudit]:
    """Every record for a customer in a stable order, as input for the calculator."""
    return db.session.query(PaymentAudit).filter_by(
        customer_id=customer_id
    ).order_by(PaymentAudit.seq, PaymentAudit.id).all()


def summarize(customer_id: str) -> AuditSummary:
    """Counts and totals per audit type plus the covered date range."""
    summary = AuditSummary(customer_id=customer_id)
    for entry in list_for(customer_id):
        bucket = summary.by_type.setdefault(entry.type, {"count": 0, "amount": 0})
        bucket["count"] += 1
        bucket["amount"] += entry.amount
        summary.total_entries += 1
        summary.total_amount += entry.amount
        if summary.earliest is None or entry.created_at < summary.earliest:
            summary.earliest = entry.created_at
        if summary.latest is None or entry.created_at > summary.latest:
            summary.latest = entry.created_at
    return summary


def verify_payment(payment: Transaction, records: list[PaymentAudit] | None = None) -> list[AuditAnomaly]:
    """
    Check a payment's audit trail against its amount.

    A payment without any record is not an anomaly here (see the
    reconciliation backfill); once records exist they must account for the
    whole amount.
    """
    if records is None:
        records = list_for_transaction(payment.id)
    records = [r for r in records if r.source_transaction_id == payment.id]
    if not records:
        return []

    anomalies = []
    allocated = sum(r.amount for r in records if r.type == AUDIT_PAYMENT_ALLOCATION)
    disposed = sum(r.amount for r in records if r.type in PAYMENT_DISPOSITION_TYPES)

    if allocated > payment.amount:
        anomalies.append(AuditAnomaly(
            kind=ANOMALY_ALLOCATION_EXCEEDS_PAYMENT,
            customer_id=payment.customer_id,
            transaction_id=payment.id,
            expected=payment.amount,
            actual=allocated,
            message=f"Allocations ({allocated}) exceed payment amount ({payment.amount})",
        ))
    elif disposed != payment.amount:
        anomalies.append(AuditAnomaly(
            kind=ANOMALY_DISPOSITION_MISMATCH,
            customer_id=payment.customer_id,
            transaction_id=payment.id,
            expected=payment.amount,
            actual=disposed,
            message=f"Allocations plus over-payment ({disposed}) do not equal payment amount ({payment.amount})",
        ))
    return anomalies
