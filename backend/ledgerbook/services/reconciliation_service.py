# Overview: Drift detection and correction between cached customer balances and the ledger.

"""
Reconciliation Service

WHY: customers.outstanding_balance / credit_balance are updated incrementally
and can drift (legacy writes, manual edits, refunds larger than the debt).
Reconciliation recomputes them from the log with the balance calculator.

OPERATIONS:
- dry_run(): report Discrepancy rows, write nothing
- apply(): write computed balances back, one atomic unit per customer, and
  normalize debt statuses that disagree with remaining_amount
- backfill_audit(): synthesize legacy payment_allocation records for
  applied-to-debt payments that have none
- find_anomalies(): audit invariant violations; reported, never auto-fixed
"""

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app

from ..extensions import db
from ..models import Customer, Transaction, PaymentAudit
from ..models.audit_metadata import LegacyAllocationMeta
from ..models.ledger import (
    DEBT_KINDS,
    KIND_PAYMENT,
    STATUS_CANCELLED,
    AUDIT_PAYMENT_ALLOCATION,
)
from ..utils import utcnow
from . import audit_service
from .audit_service import AuditAnomaly
from .balance_calculator import Balances, compute_balances, derive_status
from .concurrency import lock_for_update, run_with_retry
from .errors import NotFound


ANOMALY_REMAINING_OUT_OF_RANGE = "remaining_out_of_range"


@dataclass(frozen=True)
class Discrepancy:
    customer_id: str
    stored_outstanding: int
    computed_outstanding: int
    stored_credit: int
    computed_credit: int

    def to_dict(self) -> dict:
        return {
            "customer_id": self.customer_id,
            "stored_outstanding": self.stored_outstanding,
            "computed_outstanding": self.computed_outstanding,
            "stored_credit": self.stored_credit,
            "computed_credit": self.computed_credit,
        }


@dataclass(frozen=True)
class StatusMismatch:
    customer_id: str
    transaction_id: str
    stored_status: str
    expected_status: str

    def to_dict(self) -> dict:
        return {
            "customer_id": self.customer_id,
            "transaction_id": self.transaction_id,
            "stored_status": self.stored_status,
            "expected_status": self.expected_status,
        }


@dataclass(frozen=True)
class AppliedCorrection:
    customer_id: str
    previous_outstanding: int
    outstanding: int
    previous_credit: int
    credit: int
    statuses_fixed: int = 0

    def to_dict(self) -> dict:
        return {
            "customer_id": self.customer_id,
            "previous_outstanding": self.previous_outstanding,
            "outstanding": self.outstanding,
            "previous_credit": self.previous_credit,
            "credit": self.credit,
            "statuses_fixed": self.statuses_fixed,
        }


# =============================================================================
# LEDGER LOADING
# =============================================================================

def load_customer_ledger(customer_id: str) -> tuple[list[Transaction], list[PaymentAudit]]:
    transactions = db.session.query(Transaction).filter_by(
        customer_id=customer_id
    ).order_by(Transaction.date, Transaction.id).all()
    return transactions, audit_service.list_for_customer_ledger(customer_id)


def compute_customer_balances(customer_id: str) -> Balances:
    """Balances the ledger implies for one customer, ignoring the cached fields."""
    if db.session.get(Customer, customer_id) is None:
        raise NotFound(f"Customer {customer_id} not found", customer_id=customer_id)
    transactions, audits = load_customer_ledger(customer_id)
    return compute_balances(transactions, audits)


def _customer_ids() -> list[str]:
    return [row.id for row in db.session.query(Customer.id).order_by(Customer.id).all()]


def _expected_status(txn: Transaction) -> str | None:
    """Derived status for a debt, or None when the row should be left alone."""
    if txn.is_deleted or txn.kind not in DEBT_KINDS or txn.status == STATUS_CANCELLED:
        return None
    if txn.remaining_amount < 0 or txn.remaining_amount > txn.amount:
        return None
    return derive_status(txn.amount, txn.remaining_amount)


# =============================================================================
# DRY RUN
# =============================================================================

def check_customer(customer: Customer) -> Discrepancy | None:
    transactions, audits = load_customer_ledger(customer.id)
    computed = compute_balances(transactions, audits)
    if (computed.outstanding == customer.outstanding_balance
            and computed.credit == customer.credit_balance):
        return None
    return Discrepancy(
        customer_id=customer.id,
        stored_outstanding=customer.outstanding_balance,
        computed_outstanding=computed.outstanding,
        stored_credit=customer.credit_balance,
        computed_credit=computed.credit,
    )


def find_discrepancies() -> list[Discrepancy]:
    """Compare every customer's cached balances with the ledger. Writes nothing."""
    discrepancies = []
    for customer in db.session.query(Customer).order_by(Customer.id).all():
        discrepancy = check_customer(customer)
        if discrepancy:
            discrepancies.append(discrepancy)
    return discrepancies


def dry_run() -> list[Discrepancy]:
    return find_discrepancies()


def find_status_mismatches() -> list[StatusMismatch]:
    mismatches = []
    debts = db.session.query(Transaction).filter(
        Transaction.kind.in_(DEBT_KINDS),
        Transaction.is_deleted.is_(False),
    ).order_by(Transaction.customer_id, Transaction.date, Transaction.id).all()
    for txn in debts:
        expected = _expected_status(txn)
        if expected and expected != txn.status:
            mismatches.append(StatusMismatch(
                customer_id=txn.customer_id,
                transaction_id=txn.id,
                stored_status=txn.status,
                expected_status=expected,
            ))
    return mismatches


def find_anomalies() -> list[AuditAnomaly]:
    """Invariant violations in the audit trail and debt rows."""
    anomalies = []

    payments = db.session.query(Transaction).filter(
        Transaction.kind == KIND_PAYMENT,
        Transaction.is_deleted.is_(False),
    ).order_by(Transaction.customer_id, Transaction.date, Transaction.id).all()
    for payment in payments:
        anomalies.extend(audit_service.verify_payment(payment))

    debts = db.session.query(Transaction).filter(
        Transaction.kind.in_(DEBT_KINDS),
        Transaction.is_deleted.is_(False),
        db.or_(Transaction.remaining_amount < 0, Transaction.remaining_amount > Transaction.amount),
    ).all()
    for debt in debts:
        anomalies.append(AuditAnomaly(
            kind=ANOMALY_REMAINING_OUT_OF_RANGE,
            customer_id=debt.customer_id,
            transaction_id=debt.id,
            expected=debt.amount,
            actual=debt.remaining_amount,
            message=f"remaining_amount {debt.remaining_amount} outside 0..{debt.amount}",
        ))
    return anomalies


# =============================================================================
# APPLY
# =============================================================================

def _reconcile_customer_locked(customer_id: str) -> AppliedCorrection | None:
    customer = lock_for_update(db.session.query(Customer).filter_by(id=customer_id)).first()
    if not customer:
        # Deleted between listing and locking; nothing to correct.
        return None

    transactions, audits = load_customer_ledger(customer.id)

    statuses_fixed = 0
    for txn in transactions:
        expected = _expected_status(txn)
        if expected and expected != txn.status:
            txn.status = expected
            statuses_fixed += 1

    computed = compute_balances(transactions, audits)
    previous_outstanding = customer.outstanding_balance
    previous_credit = customer.credit_balance
    balances_differ = (
        computed.outstanding != previous_outstanding
        or computed.credit != previous_credit
    )

    if not balances_differ and not statuses_fixed:
        return None

    if balances_differ:
        customer.outstanding_balance = computed.outstanding
        customer.credit_balance = computed.credit
        customer.updated_at = utcnow()

    return AppliedCorrection(
        customer_id=customer.id,
        previous_outstanding=previous_outstanding,
        outstanding=computed.outstanding,
        previous_credit=previous_credit,
        credit=computed.credit,
        statuses_fixed=statuses_fixed,
    )


def reconcile_customer(customer_id: str) -> AppliedCorrection | None:
    """Write computed balances for one customer inside its own retried unit."""
    def _op():
        correction = _reconcile_customer_locked(customer_id)
        db.session.commit()
        return correction

    return run_with_retry(_op, customer_id=customer_id)


def apply() -> list[AppliedCorrection]:
    """
    Write computed balances back for every drifted customer.

    Each customer is its own all-or-nothing unit; a version conflict (a
    concurrent ledger write) rolls that unit back and re-reads it.
    """
    corrections = []
    for customer_id in _customer_ids():
        correction = reconcile_customer(customer_id)
        if correction:
            current_app.logger.info(
                "Reconciled customer %s: outstanding %d -> %d, credit %d -> %d, %d statuses fixed",
                correction.customer_id,
                correction.previous_outstanding, correction.outstanding,
                correction.previous_credit, correction.credit,
                correction.statuses_fixed,
            )
            corrections.append(correction)
    return corrections


def normalize_statuses() -> int:
    """Fix debt statuses that disagree with remaining_amount, customer by customer."""
    fixed = 0
    for customer_id in _customer_ids():
        def _op(customer_id=customer_id):
            lock_for_update(db.session.query(Customer).filter_by(id=customer_id)).first()
            count = 0
            for txn in db.session.query(Transaction).filter_by(customer_id=customer_id).all():
                expected = _expected_status(txn)
                if expected and expected != txn.status:
                    txn.status = expected
                    count += 1
            db.session.commit()
            return count

        fixed += run_with_retry(_op, customer_id=customer_id)
    return fixed


def reconcile(*, dry_run: bool = True) -> list[Discrepancy] | list[AppliedCorrection]:
    if dry_run:
        return find_discrepancies()
    return apply()


# =============================================================================
# AUDIT BACKFILL
# =============================================================================

def payments_missing_audit() -> list[Transaction]:
    audited = db.session.query(PaymentAudit.source_transaction_id)
    return db.session.query(Transaction).filter(
        Transaction.kind == KIND_PAYMENT,
        Transaction.applied_to_debt.is_(True),
        Transaction.is_deleted.is_(False),
        ~Transaction.id.in_(audited),
    ).order_by(Transaction.date, Transaction.id).all()


def backfill_audit() -> int:
    """
    Give every applied-to-debt payment without audit records one legacy
    payment_allocation for its full amount.

    The per-debt split of such payments is unrecoverable, so the record
    carries no debt id; the balance calculator treats it exactly like the
    bare applied_to_debt flag, so balances do not move.
    """
    created = 0
    for payment in payments_missing_audit():
        def _op(payment_id=payment.id, customer_id=payment.customer_id):
            lock_for_update(db.session.query(Customer).filter_by(id=customer_id)).first()
            txn = db.session.get(Transaction, payment_id)
            if txn is None or audit_service.has_records(payment_id):
                db.session.commit()
                return 0
            audit_service.record(
                customer_id=customer_id,
                source_transaction_id=payment_id,
                audit_type=AUDIT_PAYMENT_ALLOCATION,
                amount=txn.amount,
                meta=LegacyAllocationMeta(),
            )
            db.session.commit()
            return 1

        created += run_with_retry(_op, customer_id=payment.customer_id)

    if created:
        current_app.logger.info("Backfilled %d legacy payment audit records", created)
    return created
