"""
Pytest fixtures for back-office settlement tests.

Provides an in-memory database, a mock payment provider, and a small
marketplace: two stores, a category, a global commission rule and helpers
to place and pay orders.
"""

from datetime import datetime

import pytest

from backoffice import create_app
from backoffice.extensions import db
from backoffice.models import Category, CommissionConfig, Store
from backoffice.services.order_service import create_order
from backoffice.services.payment_provider import MockPaymentProvider
from backoffice.services.payment_service import complete_payment


@pytest.fixture(scope='session')
def provider():
    return MockPaymentProvider()


@pytest.fixture(scope='session')
def app(provider):
    """Create application for testing."""
    app = create_app(
        {
            'TESTING': True,
            'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
            'SQLALCHEMY_TRACK_MODIFICATIONS': False,
            'DB_RETRY_ATTEMPTS': 1,
            'COMMISSION_INVOICE_TAX_BPS': 2000,
            'COMMISSION_INVOICE_DUE_DAYS': 14,
        },
        payment_provider=provider,
    )

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app, provider):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        db.session.rollback()
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        provider.reset()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def store_a(db_session):
    store = Store(name="Store A", code="A", status="ACTIVE")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def store_b(db_session):
    store = Store(name="Store B", code="B", status="ACTIVE")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def category(db_session):
    category = Category(name="Books")
    db_session.add(category)
    db_session.commit()
    return category


@pytest.fixture(scope='function')
def global_commission(db_session):
    """10% platform commission, no fixed fee."""
    config = CommissionConfig(commission_rate_bps=1000, fixed_commission_cents=0, is_active=True)
    db_session.add(config)
    db_session.commit()
    return config


@pytest.fixture(scope='function')
def place_order(db_session):
    """Factory: place an order with one line per (store, amount) pair, optionally paid."""
    def _place(*store_amounts, paid=True, ordered_at=None, category_id=None):
        lines = [
            {
                "store_id": store.id,
                "product_id": index,
                "category_id": category_id,
                "quantity": 1,
                "unit_price_cents": amount,
            }
            for index, (store, amount) in enumerate(store_amounts, start=1)
        ]
        order = create_order(buyer_id=42, lines=lines, ordered_at=ordered_at or datetime(2024, 1, 15, 12, 0))
        if paid:
            order = complete_payment(order.id, f"pay_{order.order_number}")
        return order

    return _place
