# Overview: Service-layer operations for payment allocation and credit consumption.

"""
Payment Allocation Service

WHY: A customer usually owes on several sales at once. An incoming payment
must retire those debts in a deterministic, auditable order, and anything
left over must become reusable credit.

DESIGN PRINCIPLES:
- Oldest debt first: open debts ordered by date, then id.
- One audit record per debt touched (payment_allocation), plus one
  over_payment record for the leftover. Their sum is the payment amount.
- At most one allocation pass per payment id: existing audit records for the
  payment short-circuit a second pass.
- Credit auto-consumption: a new sale/credit first spends the customer's
  credit balance (credit_applied_to_sale) before it becomes debt.
- The *_locked helpers expect the customer row to be locked by the caller
  and never commit; the public functions wrap them in one retried unit.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from ..extensions import db
from ..models import Customer, Transaction
from ..models.audit_metadata import (
    CreditConsumptionMeta,
    DebtAllocationMeta,
    OverPaymentMeta,
)
from ..models.ledger import (
    DEBT_KINDS,
    KIND_PAYMENT,
    STATUS_CANCELLED,
    AUDIT_PAYMENT_ALLOCATION,
    AUDIT_OVER_PAYMENT,
    AUDIT_CREDIT_USED,
    AUDIT_CREDIT_APPLIED_TO_SALE,
)
from . import audit_service
from .balance_calculator import derive_status
from .concurrency import lock_for_update, run_with_retry
from .errors import InvalidArgument, NotFound


@dataclass
class DebtAllocation:
    debt_transaction_id: str
    amount: int
    previous_status: str | None = None
    new_status: str | None = None
    remaining_amount: int | None = None

    def to_dict(self) -> dict:
        return {
            "debt_transaction_id": self.debt_transaction_id,
            "amount": self.amount,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "remaining_amount": self.remaining_amount,
        }


@dataclass
class AllocationResult:
    payment_transaction_id: str
    customer_id: str
    allocations: list[DebtAllocation] = field(default_factory=list)
    credit_created: int = 0
    already_allocated: bool = False

    @property
    def applied_to_debt(self) -> int:
        return sum(a.amount for a in self.allocations)

    def to_dict(self) -> dict:
        return {
            "payment_transaction_id": self.payment_transaction_id,
            "customer_id": self.customer_id,
            "allocations": [a.to_dict() for a in self.allocations],
            "applied_to_debt": self.applied_to_debt,
            "credit_created": self.credit_created,
            "already_allocated": self.already_allocated,
        }


@dataclass
class CreditApplication:
    customer_id: str
    credit_used: int = 0
    allocations: list[DebtAllocation] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "customer_id": self.customer_id,
            "credit_used": self.credit_used,
            "allocations": [a.to_dict() for a in self.allocations],
        }


# =============================================================================
# QUERIES
# =============================================================================

def open_debts_query(customer_id: str):
    """Non-deleted, non-cancelled sale/credit rows with an unpaid portion, oldest first."""
    return db.session.query(Transaction).filter(
        Transaction.customer_id == customer_id,
        Transaction.kind.in_(DEBT_KINDS),
        Transaction.remaining_amount > 0,
        Transaction.status != STATUS_CANCELLED,
        Transaction.is_deleted.is_(False),
    ).order_by(Transaction.date.asc(), Transaction.id.asc())


def get_open_debts(customer_id: str) -> list[Transaction]:
    return open_debts_query(customer_id).all()


def lock_customer(customer_id: str) -> Customer:
    customer = lock_for_update(db.session.query(Customer).filter_by(id=customer_id)).first()
    if not customer:
        raise NotFound(f"Customer {customer_id} not found", customer_id=customer_id)
    return customer


def require_positive_amount(amount, *, customer_id: str | None = None) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidArgument(
            "Amount must be a positive integer in minor currency units",
            customer_id=customer_id,
        )


# =============================================================================
# PAYMENT ALLOCATION
# =============================================================================

def allocate_payment(customer_id: str, payment_amount: int, *, payment_transaction_id: str) -> AllocationResult:
    """
    Allocate a recorded payment across the customer's open debts.

    Args:
        customer_id: Owner of the payment and debts
        payment_amount: Amount to allocate (must equal the payment's amount)
        payment_transaction_id: Already-persisted payment transaction

    Returns:
        AllocationResult (already_allocated=True if the payment was
        allocated before; nothing is changed in that case)

    Raises:
        InvalidArgument: non-positive amount, amount mismatch, or not a payment
        NotFound: unknown customer or payment
        ConflictExhausted: contention outlasted the retry budget
    """
    require_positive_amount(payment_amount, customer_id=customer_id)

    def _op():
        customer = lock_customer(customer_id)
        payment = lock_for_update(
            db.session.query(Transaction).filter_by(id=payment_transaction_id)
        ).first()
        if not payment or payment.customer_id != customer_id:
            raise NotFound(
                f"Payment {payment_transaction_id} not found for customer {customer_id}",
                customer_id=customer_id,
                transaction_id=payment_transaction_id,
            )
        if payment.kind != KIND_PAYMENT:
            raise InvalidArgument(
                f"Transaction {payment.id} is a {payment.kind}, not a payment",
                customer_id=customer_id,
                transaction_id=payment.id,
            )
        if payment.amount != payment_amount:
            raise InvalidArgument(
                f"Payment amount {payment_amount} does not match recorded amount {payment.amount}",
                customer_id=customer_id,
                transaction_id=payment.id,
            )

        result = allocate_payment_locked(customer, payment)
        db.session.commit()
        return result

    return run_with_retry(_op, customer_id=customer_id)


def allocate_payment_locked(customer: Customer, payment: Transaction) -> AllocationResult:
    """Allocation pass for a flushed payment; caller holds the customer lock and commits."""
    if audit_service.has_records(payment.id):
        return _existing_allocation(payment)

    result = AllocationResult(payment_transaction_id=payment.id, customer_id=customer.id)
    remaining_payment = payment.amount

    if payment.applied_to_debt:
        for debt in open_debts_query(customer.id).with_for_update().all():
            if remaining_payment <= 0:
                break
            take = min(debt.remaining_amount, remaining_payment)
            allocation = _retire_debt(debt, take)
            remaining_payment -= take

            audit_service.record(
                customer_id=customer.id,
                source_transaction_id=payment.id,
                audit_type=AUDIT_PAYMENT_ALLOCATION,
                amount=take,
                meta=DebtAllocationMeta(debt_transaction_id=debt.id),
            )
            result.allocations.append(allocation)

    applied = payment.amount - remaining_payment
    if applied > 0:
        customer.outstanding_balance = max(0, customer.outstanding_balance - applied)
        payment.linked_transaction_id = _primary_debt_id(result.allocations)

    if remaining_payment > 0:
        customer.credit_balance += remaining_payment
        audit_service.record(
            customer_id=customer.id,
            source_transaction_id=payment.id,
            audit_type=AUDIT_OVER_PAYMENT,
            amount=remaining_payment,
            meta=OverPaymentMeta(
                reason="excess_payment" if payment.applied_to_debt else "banked_by_request",
            ),
        )
        result.credit_created = remaining_payment

    db.session.flush()
    return result


def _retire_debt(debt: Transaction, take: int) -> DebtAllocation:
    previous_status = debt.status
    debt.remaining_amount -= take
    debt.status = derive_status(debt.amount, debt.remaining_amount)
    return DebtAllocation(
        debt_transaction_id=debt.id,
        amount=take,
        previous_status=previous_status,
        new_status=debt.status,
        remaining_amount=debt.remaining_amount,
    )


def _primary_debt_id(allocations: list[DebtAllocation]) -> str | None:
    """Debt that received the largest share; the oldest wins ties."""
    primary = None
    for allocation in allocations:
        if primary is None or allocation.amount > primary.amount:
            primary = allocation
    return primary.debt_transaction_id if primary else None


def _existing_allocation(payment: Transaction) -> AllocationResult:
    result = AllocationResult(
        payment_transaction_id=payment.id,
        customer_id=payment.customer_id,
        already_allocated=True,
    )
    for entry in audit_service.list_for_transaction(payment.id):
        if entry.type == AUDIT_PAYMENT_ALLOCATION:
            result.allocations.append(DebtAllocation(
                debt_transaction_id=entry.debt_transaction_id,
                amount=entry.amount,
            ))
        elif entry.type == AUDIT_OVER_PAYMENT:
            result.credit_created += entry.amount
    return result


# =============================================================================
# CREDIT CONSUMPTION
# =============================================================================

def consume_credit_for_new_debt_locked(customer: Customer, debt: Transaction) -> int:
    """
    Spend existing credit on a freshly created sale/credit.

    The debt must already be flushed (so the audit record can reference it)
    with remaining_amount == amount. Returns the credit consumed.
    """
    if debt.kind not in DEBT_KINDS:
        return 0
    consumed = min(customer.credit_balance, debt.remaining_amount)
    if consumed <= 0:
        return 0

    debt.remaining_amount -= consumed
    debt.status = derive_status(debt.amount, debt.remaining_amount)
    customer.credit_balance -= consumed

    audit_service.record(
        customer_id=customer.id,
        source_transaction_id=debt.id,
        audit_type=AUDIT_CREDIT_APPLIED_TO_SALE,
        amount=consumed,
        meta=CreditConsumptionMeta(debt_transaction_id=debt.id),
    )
    return consumed


def apply_credit(customer_id: str, max_amount: int | None = None) -> CreditApplication:
    """
    Spend the customer's credit balance on open debts, oldest first.

    Args:
        customer_id: Customer whose credit is applied
        max_amount: Optional cap on credit to spend

    Returns:
        CreditApplication with one entry per debt touched
    """
    if max_amount is not None:
        require_positive_amount(max_amount, customer_id=customer_id)

    def _op():
        customer = lock_customer(customer_id)
        result = apply_credit_locked(customer, max_amount)
        db.session.commit()
        return result

    return run_with_retry(_op, customer_id=customer_id)


def apply_credit_locked(customer: Customer, max_amount: int | None) -> CreditApplication:
    result = CreditApplication(customer_id=customer.id)
    budget = customer.credit_balance
    if max_amount is not None:
        budget = min(budget, max_amount)

    for debt in open_debts_query(customer.id).with_for_update().all():
        if budget <= 0:
            break
        take = min(debt.remaining_amount, budget)
        result.allocations.append(_retire_debt(debt, take))
        audit_service.record(
            customer_id=customer.id,
            source_transaction_id=debt.id,
            audit_type=AUDIT_CREDIT_USED,
            amount=take,
            meta=CreditConsumptionMeta(debt_transaction_id=debt.id),
        )
        budget -= take
        result.credit_used += take

    if result.credit_used:
        customer.credit_balance -= result.credit_used
        customer.outstanding_balance = max(0, customer.outstanding_balance - result.credit_used)

    db.session.flush()
    return result
