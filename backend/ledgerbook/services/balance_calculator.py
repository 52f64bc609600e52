# Overview: Pure balance derivation from a customer's transaction log.

"""
Balance Calculator

WHY: customers.outstanding_balance / credit_balance are a cache. This module
is the definition of what they should be, derived only from the log.

RULES (fold over non-deleted transactions, date ascending, id tie-break):
- sale / credit: outstanding += remaining_amount (the live unpaid portion, so
  payments already allocated to the debt are counted exactly once).
  Cancelled debts contribute nothing. Credit consumed by the debt
  (credit_applied_to_sale, credit_used) is subtracted from credit.
  Cancelling a debt returns its paid portion to credit (cancellation_credit).
- payment with audit records: disposition comes from the records.
  over_payment portions add to credit. Per-debt payment_allocation portions
  are already reflected in the debts' remaining_amount. Legacy allocations
  (no debt id) subtract from outstanding.
- payment without audit records (legacy rows): applied_to_debt decides
  whether the full amount reduces outstanding or becomes credit.
- refund: outstanding -= amount.
Outstanding and credit are clamped at zero after the fold.

Nothing here touches the database: inputs are any objects exposing the
model attributes, so the same functions run over ORM rows or plain records.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable

from ..models.ledger import (
    DEBT_KINDS,
    KIND_PAYMENT,
    KIND_REFUND,
    STATUS_PENDING,
    STATUS_PARTIAL,
    STATUS_COMPLETED,
    STATUS_CANCELLED,
    AUDIT_PAYMENT_ALLOCATION,
    AUDIT_OVER_PAYMENT,
    AUDIT_CANCELLATION_CREDIT,
    CREDIT_CONSUMPTION_TYPES,
)


@dataclass(frozen=True)
class Balances:
    outstanding: int
    credit: int

    def to_dict(self) -> dict:
        return {"outstanding": self.outstanding, "credit": self.credit}


@dataclass(frozen=True)
class PaymentDisposition:
    """How a payment's amount was actually used."""
    payment_transaction_id: str
    amount: int
    applied_to_debt: int
    banked_as_credit: int
    legacy: bool

    @property
    def is_mixed(self) -> bool:
        return self.applied_to_debt > 0 and self.banked_as_credit > 0

    def to_dict(self) -> dict:
        return {
            "payment_transaction_id": self.payment_transaction_id,
            "amount": self.amount,
            "applied_to_debt": self.applied_to_debt,
            "banked_as_credit": self.banked_as_credit,
            "legacy": self.legacy,
            "is_mixed": self.is_mixed,
        }


def ledger_order_key(txn) -> tuple:
    """Oldest first; id breaks ties so ordering never depends on insert order."""
    return (txn.date, txn.id)


def derive_status(amount: int, remaining_amount: int) -> str:
    """Status implied by the unpaid portion of a debt."""
    if remaining_amount <= 0:
        return STATUS_COMPLETED
    if remaining_amount < amount:
        return STATUS_PARTIAL
    return STATUS_PENDING


def _sum_amounts(records: Iterable, types: tuple) -> int:
    return sum(r.amount for r in records if r.type in types)


def _is_legacy_allocation(record) -> bool:
    return record.type == AUDIT_PAYMENT_ALLOCATION and not getattr(record, "debt_transaction_id", None)


def payment_disposition(payment, records: Iterable) -> PaymentDisposition:
    """
    Derive how much of a payment went to debt and how much became credit.

    The applied_to_debt flag is only consulted when the payment has no
    audit records at all (rows written before allocations were audited).
    """
    records = [r for r in records if r.source_transaction_id == payment.id]
    if not records:
        applied = payment.amount if payment.applied_to_debt else 0
        return PaymentDisposition(
            payment_transaction_id=payment.id,
            amount=payment.amount,
            applied_to_debt=applied,
            banked_as_credit=payment.amount - applied,
            legacy=True,
        )

    return PaymentDisposition(
        payment_transaction_id=payment.id,
        amount=payment.amount,
        applied_to_debt=_sum_amounts(records, (AUDIT_PAYMENT_ALLOCATION,)),
        banked_as_credit=_sum_amounts(records, (AUDIT_OVER_PAYMENT,)),
        legacy=any(_is_legacy_allocation(r) for r in records),
    )


def compute_balances(transactions: Iterable, audits: Iterable = ()) -> Balances:
    """
    Recompute (outstanding, credit) for one customer from scratch.

    ``transactions`` should be the customer's complete transaction set;
    soft-deleted rows are skipped here, as are audit records whose source
    transaction is not part of the live set.
    """
    live = [t for t in transactions if not t.is_deleted]
    live_ids = {t.id for t in live}

    records_by_source: dict[str, list] = defaultdict(list)
    for record in audits:
        if record.source_transaction_id in live_ids:
            records_by_source[record.source_transaction_id].append(record)

    outstanding = 0
    credit = 0

    for txn in sorted(live, key=ledger_order_key):
        records = records_by_source.get(txn.id, [])

        if txn.kind in DEBT_KINDS:
            if txn.status != STATUS_CANCELLED:
                outstanding += txn.remaining_amount
            credit -= _sum_amounts(records, CREDIT_CONSUMPTION_TYPES)
            credit += _sum_amounts(records, (AUDIT_CANCELLATION_CREDIT,))

        elif txn.kind == KIND_PAYMENT:
            if records:
                outstanding -= sum(r.amount for r in records if _is_legacy_allocation(r))
                credit += _sum_amounts(records, (AUDIT_OVER_PAYMENT,))
            elif txn.applied_to_debt:
                outstanding -= txn.amount
            else:
                credit += txn.amount

        elif txn.kind == KIND_REFUND:
            outstanding -= txn.amount

    return Balances(outstanding=max(0, outstanding), credit=max(0, credit))
