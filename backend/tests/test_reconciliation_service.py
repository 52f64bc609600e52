# Overview: Pytest coverage for drift detection, correction, audit backfill and anomaly reports.

"""
Reconciliation Tests

Covers:
- dry run reports drift and writes nothing
- apply converges (a dry run afterwards is empty)
- legacy payments get exactly one backfilled record and balances hold
- status normalization and anomaly reporting
"""

from datetime import datetime, timedelta

from ledgerbook.extensions import db
from ledgerbook.models import Customer, Transaction, PaymentAudit
from ledgerbook.services import ledger_service, reconciliation_service


BASE_DATE = datetime(2026, 1, 1, 9, 0, 0)


def day(n: int) -> datetime:
    return BASE_DATE + timedelta(days=n)


def add_legacy_row(customer_id, kind, amount, *, remaining=None, applied_to_debt=True, days=0):
    """Insert a row the way pre-audit code did: no allocation, no audit trail."""
    txn = Transaction(
        customer_id=customer_id,
        kind=kind,
        amount=amount,
        remaining_amount=amount if remaining is None and kind in ("sale", "credit") else (remaining or 0),
        status="pending" if kind in ("sale", "credit") else "completed",
        date=day(days),
        applied_to_debt=applied_to_debt,
    )
    db.session.add(txn)
    db.session.commit()
    return txn


def set_cached_balances(customer_id, outstanding, credit):
    customer = db.session.get(Customer, customer_id)
    customer.outstanding_balance = outstanding
    customer.credit_balance = credit
    db.session.commit()


class TestDryRunAndApply:

    def test_clean_ledger_has_no_discrepancies(self, customer):
        ledger_service.create_transaction(customer.id, "sale", 300, date=day(0))
        ledger_service.record_payment(customer.id, 100, date=day(1))

        assert reconciliation_service.reconcile(dry_run=True) == []

    def test_dry_run_reports_without_writing(self, customer):
        ledger_service.create_transaction(customer.id, "sale", 300, date=day(0))
        set_cached_balances(customer.id, 999, 7)

        discrepancies = reconciliation_service.dry_run()

        assert len(discrepancies) == 1
        d = discrepancies[0]
        assert (d.customer_id, d.stored_outstanding, d.computed_outstanding) == (customer.id, 999, 300)
        assert (d.stored_credit, d.computed_credit) == (7, 0)
        assert db.session.get(Customer, customer.id).outstanding_balance == 999

    def test_apply_converges(self, customer, make_customer):
        other = make_customer("Bruno Costa")
        ledger_service.create_transaction(customer.id, "sale", 300, date=day(0))
        ledger_service.create_transaction(other.id, "sale", 50, date=day(0))
        set_cached_balances(customer.id, 10, 0)

        corrections = reconciliation_service.reconcile(dry_run=False)

        assert [c.customer_id for c in corrections] == [customer.id]
        assert corrections[0].previous_outstanding == 10
        assert corrections[0].outstanding == 300
        assert db.session.get(Customer, customer.id).outstanding_balance == 300
        assert reconciliation_service.reconcile(dry_run=True) == []

    def test_apply_on_clean_ledger_writes_nothing(self, customer):
        ledger_service.create_transaction(customer.id, "sale", 300, date=day(0))
        version_before = db.session.get(Customer, customer.id).version_id

        assert reconciliation_service.apply() == []
        assert db.session.get(Customer, customer.id).version_id == version_before

    def test_legacy_rows_drive_computed_balances(self, customer):
        add_legacy_row(customer.id, "sale", 500, days=0)
        add_legacy_row(customer.id, "payment", 200, days=1)
        add_legacy_row(customer.id, "payment", 80, applied_to_debt=False, days=2)

        computed = ledger_service.get_customer_balances(customer.id, computed=True)

        assert (computed.outstanding, computed.credit) == (300, 80)
        reconciliation_service.apply()
        assert ledger_service.get_customer_balances(customer.id) == computed

    def test_refund_larger_than_debt_is_repaired(self, customer):
        ledger_service.create_transaction(customer.id, "sale", 50, date=day(0))
        ledger_service.create_transaction(customer.id, "refund", 80, date=day(1))
        ledger_service.create_transaction(customer.id, "sale", 40, date=day(2))

        # Cached value clamped at the refund, the fold clamps at the end
        assert db.session.get(Customer, customer.id).outstanding_balance == 40
        assert ledger_service.get_customer_balances(customer.id, computed=True).outstanding == 10

        reconciliation_service.apply()

        assert db.session.get(Customer, customer.id).outstanding_balance == 10
        assert reconciliation_service.dry_run() == []


class TestBackfill:

    def test_backfill_adds_one_legacy_record_per_payment(self, customer):
        add_legacy_row(customer.id, "sale", 300, days=0)
        first = add_legacy_row(customer.id, "payment", 100, days=1)
        second = add_legacy_row(customer.id, "payment", 50, days=2)
        banked = add_legacy_row(customer.id, "payment", 20, applied_to_debt=False, days=3)
        reconciliation_service.apply()
        before = ledger_service.get_customer_balances(customer.id)

        created = reconciliation_service.backfill_audit()

        assert created == 2
        for payment in (first, second):
            records = db.session.query(PaymentAudit).filter_by(source_transaction_id=payment.id).all()
            assert len(records) == 1
            assert records[0].type == "payment_allocation"
            assert records[0].amount == payment.amount
            assert records[0].is_legacy
        assert db.session.query(PaymentAudit).filter_by(source_transaction_id=banked.id).count() == 0

        assert ledger_service.get_customer_balances(customer.id, computed=True) == before
        assert reconciliation_service.dry_run() == []

    def test_backfill_is_idempotent(self, customer):
        add_legacy_row(customer.id, "sale", 300, days=0)
        add_legacy_row(customer.id, "payment", 100, days=1)

        assert reconciliation_service.backfill_audit() == 1
        assert reconciliation_service.backfill_audit() == 0
        assert reconciliation_service.payments_missing_audit() == []

    def test_backfill_skips_audited_and_deleted_payments(self, customer):
        ledger_service.create_transaction(customer.id, "sale", 100, date=day(0))
        ledger_service.record_payment(customer.id, 40, date=day(1))
        deleted = add_legacy_row(customer.id, "payment", 10, days=2)
        deleted.is_deleted = True
        db.session.commit()

        assert reconciliation_service.backfill_audit() == 0


class TestStatusesAndAnomalies:

    def test_status_mismatch_reported_and_fixed(self, customer):
        sale = ledger_service.create_transaction(customer.id, "sale", 100, date=day(0))
        ledger_service.record_payment(customer.id, 100, date=day(1))
        row = db.session.get(Transaction, sale.id)
        row.status = "pending"
        db.session.commit()

        mismatches = reconciliation_service.find_status_mismatches()
        assert [(m.transaction_id, m.stored_status, m.expected_status) for m in mismatches] == [
            (sale.id, "pending", "completed"),
        ]

        corrections = reconciliation_service.apply()

        assert corrections[0].statuses_fixed == 1
        assert db.session.get(Transaction, sale.id).status == "completed"
        assert reconciliation_service.find_status_mismatches() == []

    def test_normalize_statuses(self, customer):
        sale = ledger_service.create_transaction(customer.id, "sale", 100, date=day(0))
        ledger_service.record_payment(customer.id, 40, date=day(1))
        row = db.session.get(Transaction, sale.id)
        row.status = "completed"
        db.session.commit()

        assert reconciliation_service.normalize_statuses() == 1
        assert db.session.get(Transaction, sale.id).status == "partial"
        assert reconciliation_service.normalize_statuses() == 0

    def test_cancelled_debts_are_left_alone(self, customer):
        sale = ledger_service.create_transaction(customer.id, "sale", 100, date=day(0))
        ledger_service.cancel_transaction(sale.id)

        assert reconciliation_service.find_status_mismatches() == []
        assert reconciliation_service.normalize_statuses() == 0

    def test_anomalies_reported_not_fixed(self, customer):
        sale = ledger_service.create_transaction(customer.id, "sale", 100, date=day(0))
        payment, _ = ledger_service.record_payment(customer.id, 60, date=day(1))
        db.session.add(PaymentAudit(
            customer_id=customer.id,
            source_transaction_id=payment.id,
            type="over_payment",
            amount=5,
            metadata_json={"reason": "excess_payment"},
        ))
        row = db.session.get(Transaction, sale.id)
        row.remaining_amount = 150
        db.session.commit()

        anomalies = reconciliation_service.find_anomalies()

        assert sorted(a.kind for a in anomalies) == [
            "disposition_sum_mismatch",
            reconciliation_service.ANOMALY_REMAINING_OUT_OF_RANGE,
        ]
        assert db.session.query(PaymentAudit).filter_by(source_transaction_id=payment.id).count() == 2
