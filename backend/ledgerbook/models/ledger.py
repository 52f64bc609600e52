from __future__ import annotations

from ..extensions import db
from ..utils import new_id, utcnow, to_utc_z
from . import audit_metadata


# =============================================================================
# TRANSACTION KINDS
# =============================================================================

KIND_SALE = "sale"
KIND_CREDIT = "credit"
KIND_PAYMENT = "payment"
KIND_REFUND = "refund"

DEBT_KINDS = (KIND_SALE, KIND_CREDIT)
VALID_KINDS = (KIND_SALE, KIND_CREDIT, KIND_PAYMENT, KIND_REFUND)


# =============================================================================
# TRANSACTION STATUS
# =============================================================================

STATUS_PENDING = "pending"
STATUS_PARTIAL = "partial"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"

VALID_STATUSES = (STATUS_PENDING, STATUS_PARTIAL, STATUS_COMPLETED, STATUS_CANCELLED)


# =============================================================================
# AUDIT TYPES
# =============================================================================

AUDIT_PAYMENT_ALLOCATION = "payment_allocation"
AUDIT_OVER_PAYMENT = "over_payment"
AUDIT_CREDIT_USED = "credit_used"
AUDIT_CREDIT_APPLIED_TO_SALE = "credit_applied_to_sale"
AUDIT_CANCELLATION_CREDIT = "cancellation_credit"

VALID_AUDIT_TYPES = (
    AUDIT_PAYMENT_ALLOCATION,
    AUDIT_OVER_PAYMENT,
    AUDIT_CREDIT_USED,
    AUDIT_CREDIT_APPLIED_TO_SALE,
    AUDIT_CANCELLATION_CREDIT,
)
PAYMENT_DISPOSITION_TYPES = (AUDIT_PAYMENT_ALLOCATION, AUDIT_OVER_PAYMENT)
CREDIT_CONSUMPTION_TYPES = (AUDIT_CREDIT_USED, AUDIT_CREDIT_APPLIED_TO_SALE)


class Transaction(db.Model):
    """
    One entry of a customer's ledger.

    sale/credit create debt (remaining_amount is the unpaid portion),
    payment settles debt or banks credit, refund reduces debt.

    IMMUTABLE HISTORY: rows are never physically deleted. is_deleted is a
    tombstone filtered out of every balance computation.
    """
    __tablename__ = "transactions"
    __table_args__ = (
        db.Index("ix_transactions_customer_date", "customer_id", "date"),
        db.Index("ix_transactions_customer_kind_remaining", "customer_id", "kind", "remaining_amount"),
        db.CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
        db.CheckConstraint("remaining_amount >= 0", name="ck_transactions_remaining_non_negative"),
    )

    id = db.Column(db.String(32), primary_key=True, default=new_id)
    customer_id = db.Column(db.String(32), db.ForeignKey("customers.id"), nullable=False, index=True)

    kind = db.Column(db.String(16), nullable=False, index=True)
    amount = db.Column(db.Integer, nullable=False)
    remaining_amount = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(16), nullable=False, default=STATUS_PENDING, index=True)

    # Business time; ordering key for allocation and balance folds
    date = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    description = db.Column(db.String(255), nullable=True)

    # Payment intent: settle debt (True) or bank as credit (False)
    applied_to_debt = db.Column(db.Boolean, nullable=False, default=True)
    # For payments: the debt that received the largest share
    linked_transaction_id = db.Column(db.String(32), db.ForeignKey("transactions.id"), nullable=True)

    is_deleted = db.Column(db.Boolean, nullable=False, default=False, index=True)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    customer = db.relationship("Customer", backref=db.backref("transactions", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_debt(self) -> bool:
        return self.kind in DEBT_KINDS

    def __repr__(self) -> str:
        return f"<Transaction id={self.id} kind={self.kind} amount={self.amount}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "kind": self.kind,
            "amount": self.amount,
            "remaining_amount": self.remaining_amount,
            "status": self.status,
            "date": to_utc_z(self.date),
            "description": self.description,
            "applied_to_debt": self.applied_to_debt,
            "linked_transaction_id": self.linked_transaction_id,
            "is_deleted": self.is_deleted,
            "deleted_at": to_utc_z(self.deleted_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }


def _next_audit_seq(context) -> int:
    """Per-customer insert counter; callers hold the customer row lock."""
    customer_id = context.get_current_parameters()["customer_id"]
    current = context.connection.execute(
        db.select(db.func.max(PaymentAudit.seq)).where(PaymentAudit.customer_id == customer_id)
    ).scalar()
    return (current or 0) + 1


class PaymentAudit(db.Model):
    """
    Append-only record of one allocation decision.

    AUDIT TYPES:
    - payment_allocation: payment portion that retired a debt
    - over_payment: payment portion banked as credit
    - credit_applied_to_sale: credit consumed by a new sale/credit
    - credit_used: credit explicitly applied to an open debt
    - cancellation_credit: paid portion of a cancelled debt returned as credit

    seq numbers a customer's records in insert order, so records written in
    the same instant keep a stable order.

    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "payment_audit"
    __table_args__ = (
        db.Index("ix_payment_audit_customer_created", "customer_id", "created_at"),
        db.Index("ix_payment_audit_customer_seq", "customer_id", "seq"),
        db.CheckConstraint("amount > 0", name="ck_payment_audit_amount_positive"),
    )

    id = db.Column(db.String(32), primary_key=True, default=new_id)
    customer_id = db.Column(db.String(32), db.ForeignKey("customers.id"), nullable=False, index=True)
    source_transaction_id = db.Column(db.String(32), db.ForeignKey("transactions.id"), nullable=False, index=True)
    seq = db.Column(db.Integer, nullable=False, default=_next_audit_seq)

    type = db.Column(db.String(32), nullable=False, index=True)
    amount = db.Column(db.Integer, nullable=False)
    # "metadata" is reserved on declarative classes
    metadata_json = db.Column("metadata", db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    source_transaction = db.relationship("Transaction", foreign_keys=[source_transaction_id])

    @property
    def meta(self) -> audit_metadata.AuditMeta | None:
        return audit_metadata.load(self.type, self.metadata_json)

    @property
    def debt_transaction_id(self) -> str | None:
        return (self.metadata_json or {}).get("debt_transaction_id")

    @property
    def is_legacy(self) -> bool:
        return bool((self.metadata_json or {}).get("legacy"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "source_transaction_id": self.source_transaction_id,
            "seq": self.seq,
            "type": self.type,
            "amount": self.amount,
            "metadata": self.metadata_json,
            "created_at": to_utc_z(self.created_at),
        }
