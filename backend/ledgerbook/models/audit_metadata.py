"""
Typed payloads for payment_audit.metadata.

Each audit type carries exactly the fields it needs. The JSON column stores
the dataclass as a plain dict; ``load`` picks the variant back by audit type.
Anything beyond the typed fields travels in ``extra``.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Union


@dataclass(frozen=True)
class DebtAllocationMeta:
    """Payment portion applied to one specific debt."""
    debt_transaction_id: str
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class LegacyAllocationMeta:
    """Backfilled allocation for a payment whose per-debt split is unknown."""
    legacy: bool = True
    note: str = "backfilled from applied_to_debt flag"
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class OverPaymentMeta:
    reason: str = "excess_payment"
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CreditConsumptionMeta:
    """Credit balance spent against a debt (auto on sale, or explicit)."""
    debt_transaction_id: str
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CancellationCreditMeta:
    """Paid portion of a cancelled debt handed back as credit."""
    debt_transaction_id: str
    reason: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


AuditMeta = Union[DebtAllocationMeta, LegacyAllocationMeta, OverPaymentMeta, CreditConsumptionMeta,
                  CancellationCreditMeta]


def dump(meta: AuditMeta | None) -> dict | None:
    if meta is None:
        return None
    return asdict(meta)


def load(audit_type: str, payload: dict | None) -> AuditMeta | None:
    from .ledger import (
        AUDIT_PAYMENT_ALLOCATION,
        AUDIT_OVER_PAYMENT,
        AUDIT_CANCELLATION_CREDIT,
        CREDIT_CONSUMPTION_TYPES,
    )

    payload = dict(payload or {})
    extra = payload.pop("extra", None) or {}

    if audit_type == AUDIT_PAYMENT_ALLOCATION:
        if payload.get("debt_transaction_id"):
            return DebtAllocationMeta(debt_transaction_id=payload["debt_transaction_id"], extra=extra)
        return LegacyAllocationMeta(
            note=payload.get("note", LegacyAllocationMeta.note),
            extra=extra,
        )
    if audit_type == AUDIT_OVER_PAYMENT:
        return OverPaymentMeta(reason=payload.get("reason", OverPaymentMeta.reason), extra=extra)
    if audit_type in CREDIT_CONSUMPTION_TYPES:
        return CreditConsumptionMeta(debt_transaction_id=payload.get("debt_transaction_id"), extra=extra)
    if audit_type == AUDIT_CANCELLATION_CREDIT:
        return CancellationCreditMeta(
            debt_transaction_id=payload.get("debt_transaction_id"),
            reason=payload.get("reason"),
            extra=extra,
        )
    return None
