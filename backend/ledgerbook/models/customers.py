from __future__ import annotations

from ..extensions import db
from ..utils import new_id, utcnow, to_utc_z


class Customer(db.Model):
    """
    Customer master data plus the cached debt/credit aggregates.

    outstanding_balance and credit_balance are a materialized cache of the
    balance fold over the customer's transactions. They are updated
    incrementally by the ledger and allocation services and refreshed by
    reconciliation; the transaction log is the ground truth.
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.Index("ix_customers_name", "name"),
        db.CheckConstraint("outstanding_balance >= 0", name="ck_customers_outstanding_non_negative"),
        db.CheckConstraint("credit_balance >= 0", name="ck_customers_credit_non_negative"),
    )

    id = db.Column(db.String(32), primary_key=True, default=new_id)
    name = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(32), nullable=True)

    # Aggregates (minor currency units)
    outstanding_balance = db.Column(db.Integer, nullable=False, default=0)
    credit_balance = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Customer id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "outstanding_balance": self.outstanding_balance,
            "credit_balance": self.credit_balance,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
