# Overview: Pytest coverage for the JSON API surface.

import pytest

from ledgerbook.extensions import db
from ledgerbook.models import Customer


def create_customer(client, name="Ana Pereira"):
    response = client.post('/api/customers', json={'name': name})
    assert response.status_code == 201
    return response.json['id']


def post_transaction(client, customer_id, kind, amount, **extra):
    return client.post('/api/transactions', json={
        'customer_id': customer_id,
        'kind': kind,
        'amount': amount,
        **extra,
    })


class TestSystemRoutes:

    def test_health(self, client, db_session):
        response = client.get('/health')

        assert response.status_code == 200
        assert response.json['status'] == 'healthy'
        assert response.json['checks']['database']['details']['customers'] == 0


class TestCustomerRoutes:

    def test_create_and_fetch_customer(self, client, db_session):
        customer_id = create_customer(client)

        response = client.get(f'/api/customers/{customer_id}')

        assert response.status_code == 200
        assert response.json['name'] == 'Ana Pereira'
        assert response.json['outstanding_balance'] == 0

    def test_create_customer_requires_name(self, client, db_session):
        response = client.post('/api/customers', json={})

        assert response.status_code == 400
        assert response.json['code'] == 'InvalidArgument'

    def test_list_customers(self, client, db_session):
        create_customer(client, "Bruno")
        create_customer(client, "Ana")

        response = client.get('/api/customers?limit=1')

        assert response.status_code == 200
        assert [c['name'] for c in response.json['customers']] == ['Ana']

    def test_unknown_customer(self, client, db_session):
        response = client.get('/api/customers/nope/balances')

        assert response.status_code == 404
        assert response.json['customer_id'] == 'nope'

    def test_balances_open_debts_and_audit(self, client, db_session):
        customer_id = create_customer(client)
        post_transaction(client, customer_id, 'sale', 300, date='2026-01-01T09:00:00Z')
        post_transaction(client, customer_id, 'sale', 200, date='2026-01-02T09:00:00Z')
        post_transaction(client, customer_id, 'payment', 100, date='2026-01-03T09:00:00Z')

        balances = client.get(f'/api/customers/{customer_id}/balances')
        computed = client.get(f'/api/customers/{customer_id}/balances?computed=true')
        debts = client.get(f'/api/customers/{customer_id}/open-debts')
        audit = client.get(f'/api/customers/{customer_id}/audit')
        summary = client.get(f'/api/customers/{customer_id}/audit/summary')

        assert balances.json['outstanding'] == 400
        assert computed.json['outstanding'] == 400
        assert computed.json['computed'] is True
        assert [d['remaining_amount'] for d in debts.json['open_debts']] == [200, 200]
        assert debts.json['total_remaining'] == 400
        assert [e['type'] for e in audit.json['entries']] == ['payment_allocation']
        assert summary.json['total_amount'] == 100

    def test_apply_credit(self, client, db_session):
        customer_id = create_customer(client)
        post_transaction(client, customer_id, 'payment', 50)
        post_transaction(client, customer_id, 'sale', 80, use_credit=False)

        response = client.post(f'/api/customers/{customer_id}/apply-credit', json={'max_amount': 30})

        assert response.status_code == 200
        assert response.json['application']['credit_used'] == 30
        assert response.json['customer']['credit_balance'] == 20
        assert response.json['customer']['outstanding_balance'] == 50

    def test_apply_credit_rejects_bad_cap(self, client, db_session):
        customer_id = create_customer(client)

        response = client.post(f'/api/customers/{customer_id}/apply-credit', json={'max_amount': -1})

        assert response.status_code == 400


class TestTransactionRoutes:

    def test_payment_returns_allocation(self, client, db_session):
        customer_id = create_customer(client)
        sale = post_transaction(client, customer_id, 'sale', 100, date='2026-01-01T09:00:00Z')

        response = post_transaction(client, customer_id, 'payment', 150, date='2026-01-02T09:00:00+02:00')

        assert response.status_code == 201
        body = response.json
        assert body['transaction']['kind'] == 'payment'
        assert body['transaction']['date'] == '2026-01-02T07:00:00.000000Z'
        assert body['allocation']['applied_to_debt'] == 100
        assert body['allocation']['credit_created'] == 50
        assert body['allocation']['allocations'][0]['debt_transaction_id'] == sale.json['transaction']['id']
        assert body['customer']['credit_balance'] == 50

    def test_missing_fields(self, client, db_session):
        response = client.post('/api/transactions', json={'kind': 'sale'})

        assert response.status_code == 400

    def test_bad_date(self, client, db_session):
        customer_id = create_customer(client)

        response = post_transaction(client, customer_id, 'sale', 100, date='yesterday')

        assert response.status_code == 400
        assert db.session.get(Customer, customer_id).outstanding_balance == 0

    def test_invalid_amount(self, client, db_session):
        customer_id = create_customer(client)

        response = post_transaction(client, customer_id, 'sale', 12.5)

        assert response.status_code == 400
        assert response.json['code'] == 'InvalidArgument'

    def test_unknown_customer(self, client, db_session):
        response = post_transaction(client, 'missing', 'sale', 100)

        assert response.status_code == 404

    def test_disposition(self, client, db_session):
        customer_id = create_customer(client)
        payment = post_transaction(client, customer_id, 'payment', 70, applied_to_debt=False)
        payment_id = payment.json['transaction']['id']

        response = client.get(f'/api/transactions/{payment_id}/disposition')

        assert response.status_code == 200
        assert response.json['banked_as_credit'] == 70
        assert response.json['is_mixed'] is False

    def test_cancel_and_delete(self, client, db_session):
        customer_id = create_customer(client)
        first = post_transaction(client, customer_id, 'sale', 100).json['transaction']['id']
        second = post_transaction(client, customer_id, 'sale', 40).json['transaction']['id']

        cancelled = client.post(f'/api/transactions/{first}/cancel', json={'reason': 'void'})
        deleted = client.delete(f'/api/transactions/{second}')
        fetched = client.get(f'/api/transactions/{second}')

        assert cancelled.status_code == 200
        assert cancelled.json['transaction']['status'] == 'cancelled'
        assert deleted.status_code == 200
        assert deleted.json['customer']['outstanding_balance'] == 0
        assert fetched.json['is_deleted'] is True

    def test_cancel_twice_is_rejected(self, client, db_session):
        customer_id = create_customer(client)
        sale_id = post_transaction(client, customer_id, 'sale', 100).json['transaction']['id']
        client.post(f'/api/transactions/{sale_id}/cancel')

        response = client.post(f'/api/transactions/{sale_id}/cancel')

        assert response.status_code == 400

    def test_cancel_paid_debt_returns_credit(self, client, db_session):
        customer_id = create_customer(client)
        sale_id = post_transaction(client, customer_id, 'sale', 100).json['transaction']['id']
        post_transaction(client, customer_id, 'payment', 60)

        response = client.post(f'/api/transactions/{sale_id}/cancel')

        assert response.status_code == 200
        assert response.json['customer']['outstanding_balance'] == 0
        assert response.json['customer']['credit_balance'] == 60

    @pytest.mark.parametrize("flag", ['applied_to_debt', 'use_credit'])
    def test_flags_must_be_boolean(self, client, db_session, flag):
        customer_id = create_customer(client)

        response = post_transaction(client, customer_id, 'payment', 50, **{flag: 'false'})

        assert response.status_code == 400
        assert db.session.get(Customer, customer_id).credit_balance == 0

    def test_banked_payment_flag(self, client, db_session):
        customer_id = create_customer(client)
        post_transaction(client, customer_id, 'sale', 100)

        response = post_transaction(client, customer_id, 'payment', 50, applied_to_debt=False)

        assert response.json['allocation']['credit_created'] == 50
        assert response.json['customer']['outstanding_balance'] == 100

    def test_edit_transaction(self, client, db_session):
        customer_id = create_customer(client)
        sale_id = post_transaction(client, customer_id, 'sale', 100).json['transaction']['id']

        response = client.patch(f'/api/transactions/{sale_id}', json={
            'amount': 120,
            'date': '2026-02-01T10:00:00Z',
            'description': 'Invoice 12',
        })

        assert response.status_code == 200
        assert response.json['transaction']['remaining_amount'] == 120
        assert response.json['transaction']['date'] == '2026-02-01T10:00:00.000000Z'
        assert response.json['customer']['outstanding_balance'] == 120

    def test_edit_rejected_for_paid_debt(self, client, db_session):
        customer_id = create_customer(client)
        sale_id = post_transaction(client, customer_id, 'sale', 100).json['transaction']['id']
        post_transaction(client, customer_id, 'payment', 10)

        response = client.patch(f'/api/transactions/{sale_id}', json={'amount': 300})

        assert response.status_code == 400
        assert response.json['code'] == 'InvalidArgument'

    @pytest.mark.parametrize("body", [{}, {'date': 'soon'}, {'description': 7}])
    def test_edit_bad_input(self, client, db_session, body):
        customer_id = create_customer(client)
        sale_id = post_transaction(client, customer_id, 'sale', 100).json['transaction']['id']

        response = client.patch(f'/api/transactions/{sale_id}', json=body)

        assert response.status_code == 400

    def test_edit_unknown_transaction(self, client, db_session):
        response = client.patch('/api/transactions/missing', json={'amount': 5})

        assert response.status_code == 404


class TestReconciliationRoutes:

    def test_dry_run_then_apply(self, client, db_session):
        customer_id = create_customer(client)
        post_transaction(client, customer_id, 'sale', 100)
        customer = db.session.get(Customer, customer_id)
        customer.outstanding_balance = 5
        db.session.commit()

        dry = client.post('/api/reconciliation/run', json={})
        applied = client.post('/api/reconciliation/run', json={'dry_run': False})
        after = client.post('/api/reconciliation/run', json={'dry_run': True})

        assert dry.json['dry_run'] is True
        assert dry.json['discrepancies'][0]['computed_outstanding'] == 100
        assert applied.json['corrections'][0]['outstanding'] == 100
        assert after.json['count'] == 0

    def test_dry_run_must_be_boolean(self, client, db_session):
        response = client.post('/api/reconciliation/run', json={'dry_run': 'no'})

        assert response.status_code == 400

    def test_backfill_and_anomalies(self, client, db_session):
        backfill = client.post('/api/reconciliation/backfill-audit')
        anomalies = client.get('/api/reconciliation/anomalies')

        assert backfill.json == {'created': 0}
        assert anomalies.json == {'anomalies': [], 'status_mismatches': []}
