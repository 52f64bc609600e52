# Overview: Service-layer operations for customers and ledger transactions.

"""
Ledger Service

WHY: Single entry point for everything that writes a customer's ledger.
Forms and the API call these functions; they keep the cached customer
aggregates in step with the transaction log.

WRITE PATHS:
- sale / credit: spend existing credit first, then add the rest to
  outstanding_balance
- payment: append, then allocate in the same unit (allocation_service)
- refund: reduce outstanding_balance (never below zero)
- cancel: debt leaves the books (status -> cancelled), paid part becomes credit
- delete: tombstone, then refresh the aggregate from the calculator
- edit: change amount/date/description, then refresh the same way

Every write path locks the customer row and commits once.
"""

from __future__ import annotations

from datetime import datetime

from ..extensions import db
from ..models import Customer, Transaction
from ..models.ledger import (
    DEBT_KINDS,
    VALID_KINDS,
    KIND_PAYMENT,
    KIND_REFUND,
    STATUS_PENDING,
    STATUS_COMPLETED,
    STATUS_CANCELLED,
    AUDIT_PAYMENT_ALLOCATION,
    AUDIT_CANCELLATION_CREDIT,
)
from ..models.audit_metadata import CancellationCreditMeta
from ..utils import utcnow
from . import allocation_service, audit_service, reconciliation_service
from .allocation_service import lock_customer, require_positive_amount
from .balance_calculator import (
    Balances,
    PaymentDisposition,
    compute_balances,
    derive_status,
    payment_disposition,
)
from .concurrency import lock_for_update, run_with_retry
from .errors import InvalidArgument, NotFound


# =============================================================================
# CUSTOMERS
# =============================================================================

def create_customer(name: str, phone: str | None = None) -> Customer:
    name = (name or "").strip()
    if not name:
        raise InvalidArgument("Customer name is required")

    customer = Customer(name=name, phone=(phone or None))
    db.session.add(customer)
    db.session.commit()
    return customer


def get_customer(customer_id: str) -> Customer:
    customer = db.session.get(Customer, customer_id)
    if not customer:
        raise NotFound(f"Customer {customer_id} not found", customer_id=customer_id)
    return customer


def list_customers(limit: int | None = None) -> list[Customer]:
    query = db.session.query(Customer).order_by(Customer.name, Customer.id)
    if limit:
        query = query.limit(limit)
    return query.all()


def get_customer_balances(customer_id: str, *, computed: bool = False) -> Balances:
    """
    Cached balances for display, or (computed=True) the ledger-derived ones.
    """
    if computed:
        return reconciliation_service.compute_customer_balances(customer_id)
    customer = get_customer(customer_id)
    return Balances(outstanding=customer.outstanding_balance, credit=customer.credit_balance)


# =============================================================================
# TRANSACTION CREATION
# =============================================================================

def create_transaction(
    customer_id: str,
    kind: str,
    amount: int,
    *,
    date: datetime | None = None,
    description: str | None = None,
    applied_to_debt: bool = True,
    use_credit: bool = True,
) -> Transaction:
    """
    Append a transaction and apply its effect on the customer's balances.

    Args:
        customer_id: Owner
        kind: sale, credit, payment or refund
        amount: Positive integer, minor currency units
        date: Business date (defaults to now)
        description: Free text
        applied_to_debt: payment only; False banks the whole amount as credit
        use_credit: sale/credit only; spend existing credit first

    Returns:
        The persisted Transaction (debts reflect any credit consumed,
        payments are already allocated)

    Raises:
        InvalidArgument: unknown kind or non-positive amount
        NotFound: unknown customer
        ConflictExhausted: contention outlasted the retry budget
    """
    txn, _ = _create_transaction(
        customer_id,
        kind,
        amount,
        date=date,
        description=description,
        applied_to_debt=applied_to_debt,
        use_credit=use_credit,
    )
    return txn


def record_payment(
    customer_id: str,
    amount: int,
    *,
    date: datetime | None = None,
    description: str | None = None,
    applied_to_debt: bool = True,
) -> tuple[Transaction, allocation_service.AllocationResult]:
    """Create a payment and return it with the allocation it triggered."""
    return _create_transaction(
        customer_id,
        KIND_PAYMENT,
        amount,
        date=date,
        description=description,
        applied_to_debt=applied_to_debt,
        use_credit=False,
    )


def _create_transaction(
    customer_id: str,
    kind: str,
    amount: int,
    *,
    date: datetime | None,
    description: str | None,
    applied_to_debt: bool,
    use_credit: bool,
) -> tuple[Transaction, allocation_service.AllocationResult | None]:
    if kind not in VALID_KINDS:
        raise InvalidArgument(
            f"Invalid transaction kind: {kind}. Must be one of {list(VALID_KINDS)}",
            customer_id=customer_id,
        )
    require_positive_amount(amount, customer_id=customer_id)

    def _op():
        customer = lock_customer(customer_id)
        txn = Transaction(
            customer_id=customer.id,
            kind=kind,
            amount=amount,
            remaining_amount=amount if kind in DEBT_KINDS else 0,
            status=STATUS_PENDING if kind in DEBT_KINDS else STATUS_COMPLETED,
            date=date or utcnow(),
            description=description,
            applied_to_debt=bool(applied_to_debt) if kind == KIND_PAYMENT else False,
        )
        db.session.add(txn)
        # Audit records reference the row; it must exist first.
        db.session.flush()

        allocation = None
        if kind in DEBT_KINDS:
            if use_credit:
                allocation_service.consume_credit_for_new_debt_locked(customer, txn)
            customer.outstanding_balance += txn.remaining_amount
        elif kind == KIND_PAYMENT:
            allocation = allocation_service.allocate_payment_locked(customer, txn)
        elif kind == KIND_REFUND:
            customer.outstanding_balance = max(0, customer.outstanding_balance - amount)

        db.session.commit()
        return txn, allocation

    return run_with_retry(_op, customer_id=customer_id)



# =============================================================================
# QUERIES
# =============================================================================

def get_transaction(transaction_id: str) -> Transaction:
    txn = db.session.get(Transaction, transaction_id)
    if not txn:
        raise NotFound(f"Transaction {transaction_id} not found", transaction_id=transaction_id)
    return txn


def list_transactions(customer_id: str, *, include_deleted: bool = False) -> list[Transaction]:
    get_customer(customer_id)
    query = db.session.query(Transaction).filter_by(customer_id=customer_id)
    if not include_deleted:
        query = query.filter(Transaction.is_deleted.is_(False))
    return query.order_by(Transaction.date.desc(), Transaction.id.desc()).all()


def get_open_debts(customer_id: str) -> list[Transaction]:
    get_customer(customer_id)
    return allocation_service.get_open_debts(customer_id)


def get_audit_history(customer_id: str, limit: int | None = None):
    get_customer(customer_id)
    return audit_service.list_for(customer_id, limit=limit)


def get_payment_disposition(payment_id: str) -> PaymentDisposition:
    """How much of a payment went to debt and how much became credit."""
    payment = get_transaction(payment_id)
    if payment.kind != KIND_PAYMENT:
        raise InvalidArgument(
            f"Transaction {payment.id} is a {payment.kind}, not a payment",
            customer_id=payment.customer_id,
            transaction_id=payment.id,
        )
    return payment_disposition(payment, audit_service.list_for_transaction(payment.id))


# =============================================================================
# CANCELLATION / SOFT DELETE / EDIT
# =============================================================================

def cancel_transaction(transaction_id: str, reason: str | None = None) -> Transaction:
    """
    Cancel a sale/credit.

    The unpaid portion leaves outstanding_balance. Whatever was already paid
    on the debt (by payments or by spent credit) goes back to the customer as
    credit, recorded as a cancellation_credit entry on the debt.

    Raises:
        NotFound: unknown transaction
        InvalidArgument: not a debt, deleted, or already cancelled
    """
    txn = get_transaction(transaction_id)
    customer_id = txn.customer_id

    def _op():
        customer = lock_customer(customer_id)
        debt = _lock_transaction(transaction_id)

        if debt.kind not in DEBT_KINDS:
            raise InvalidArgument(
                f"Only sale/credit transactions can be cancelled, not {debt.kind}",
                customer_id=customer_id,
                transaction_id=transaction_id,
            )
        if debt.is_deleted:
            raise InvalidArgument("Cannot cancel a deleted transaction",
                                  customer_id=customer_id, transaction_id=transaction_id)
        if debt.status == STATUS_CANCELLED:
            raise InvalidArgument("Transaction is already cancelled",
                                  customer_id=customer_id, transaction_id=transaction_id)

        paid = debt.amount - debt.remaining_amount
        customer.outstanding_balance = max(0, customer.outstanding_balance - debt.remaining_amount)
        debt.status = STATUS_CANCELLED
        if reason:
            debt.description = f"{debt.description} [cancelled: {reason}]" if debt.description else f"[cancelled: {reason}]"

        if paid > 0:
            customer.credit_balance += paid
            audit_service.record(
                customer_id=customer.id,
                source_transaction_id=debt.id,
                audit_type=AUDIT_CANCELLATION_CREDIT,
                amount=paid,
                meta=CancellationCreditMeta(debt_transaction_id=debt.id, reason=reason),
            )

        db.session.commit()
        return debt

    return run_with_retry(_op, customer_id=customer_id)


def delete_transaction(transaction_id: str) -> Transaction:
    """
    Soft-delete a transaction and refresh the owner's balances.

    Rows whose effect is woven into other rows are refused: payments that
    retired specific debts, payments whose banked credit has since been
    spent, and debts that already received payments or credit (cancelled
    ones included, since their paid portion became credit).
    """
    txn = get_transaction(transaction_id)
    customer_id = txn.customer_id

    def _op():
        customer = lock_customer(customer_id)
        row = _lock_transaction(transaction_id)

        if row.is_deleted:
            db.session.commit()
            return row

        if row.kind == KIND_PAYMENT:
            records = audit_service.list_for_transaction(row.id)
            if any(r.type == AUDIT_PAYMENT_ALLOCATION and r.debt_transaction_id for r in records):
                raise InvalidArgument(
                    "Payment has already been allocated to debts and cannot be deleted",
                    customer_id=customer_id,
                    transaction_id=transaction_id,
                )
            banked = payment_disposition(row, records).banked_as_credit
            if banked > customer.credit_balance:
                raise InvalidArgument(
                    f"Payment banked {banked} as credit but only {customer.credit_balance} "
                    "is left unspent; it cannot be deleted",
                    customer_id=customer_id,
                    transaction_id=transaction_id,
                )
        if row.kind in DEBT_KINDS and row.remaining_amount != row.amount:
            raise InvalidArgument(
                "Debt has already been partly settled and cannot be deleted",
                customer_id=customer_id,
                transaction_id=transaction_id,
            )

        row.is_deleted = True
        row.deleted_at = utcnow()
        db.session.flush()

        _refresh_balances_locked(customer)
        db.session.commit()
        return row

    return run_with_retry(_op, customer_id=customer_id)


def update_transaction(
    transaction_id: str,
    *,
    amount: int | None = None,
    date: datetime | None = None,
    description: str | None = None,
) -> Transaction:
    """
    Edit a transaction in place and refresh the owner's balances.

    date and description can change on any live row. amount can change on:
    - sale/credit rows nothing has been applied to yet (remaining_amount
      moves with it)
    - refunds
    - payments without audit records
    An empty description clears it; None leaves a field unchanged.

    Raises:
        NotFound: unknown transaction
        InvalidArgument: nothing to change, bad amount, deleted row, or an
            amount change on a row other rows already depend on
    """
    if amount is None and date is None and description is None:
        raise InvalidArgument("Nothing to update", transaction_id=transaction_id)
    txn = get_transaction(transaction_id)
    customer_id = txn.customer_id
    if amount is not None:
        require_positive_amount(amount, customer_id=customer_id)

    def _op():
        customer = lock_customer(customer_id)
        row = _lock_transaction(transaction_id)

        if row.is_deleted:
            raise InvalidArgument("Cannot edit a deleted transaction",
                                  customer_id=customer_id, transaction_id=transaction_id)

        if amount is not None and amount != row.amount:
            _require_amount_editable(row)
            row.amount = amount
            if row.kind in DEBT_KINDS:
                row.remaining_amount = amount
                row.status = derive_status(amount, amount)
        if date is not None:
            row.date = date
        if description is not None:
            row.description = description.strip() or None

        db.session.flush()
        _refresh_balances_locked(customer)
        db.session.commit()
        return row

    return run_with_retry(_op, customer_id=customer_id)


def _require_amount_editable(row: Transaction) -> None:
    if row.kind in DEBT_KINDS:
        editable = (
            row.status != STATUS_CANCELLED
            and row.remaining_amount == row.amount
            and not audit_service.has_records(row.id)
        )
        problem = "Debt has already been settled in part or cancelled"
    elif row.kind == KIND_PAYMENT:
        editable = not audit_service.has_records(row.id)
        problem = "Payment has already been allocated"
    else:
        editable = True
        problem = None

    if not editable:
        raise InvalidArgument(
            f"{problem}; its amount cannot be changed",
            customer_id=row.customer_id,
            transaction_id=row.id,
        )


def _lock_transaction(transaction_id: str) -> Transaction:
    return lock_for_update(db.session.query(Transaction).filter_by(id=transaction_id)).first()


def _refresh_balances_locked(customer: Customer) -> None:
    transactions, audits = reconciliation_service.load_customer_ledger(customer.id)
    balances = compute_balances(transactions, audits)
    customer.outstanding_balance = balances.outstanding
    customer.credit_balance = balances.credit
