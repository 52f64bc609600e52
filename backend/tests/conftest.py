"""
Pytest fixtures for ledgerbook backend tests.

Provides test database setup, a customer factory, and test client.
"""

import pytest
from ledgerbook import create_app
from ledgerbook.extensions import db
from ledgerbook.models import Customer


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'LEDGER_RETRY_BACKOFF_BASE': 0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def make_customer(db_session):
    """Factory for customers; balances start at zero unless given."""
    def _make(name="Test Customer", **fields):
        customer = Customer(name=name, **fields)
        db_session.add(customer)
        db_session.commit()
        return customer
    return _make


@pytest.fixture(scope='function')
def customer(make_customer):
    return make_customer("Ana Pereira", phone="555-0100")
