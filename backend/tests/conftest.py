"""
Pytest fixtures for stockflow backend tests.

Provides the test app on in-memory SQLite, a per-test clean database and
product factories that seed stock through the ledger.
"""

import pytest

from stockflow import create_app
from stockflow.extensions import db
from stockflow.models import Notification
from stockflow.services import catalog_service


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'STOCK_CAS_BACKOFF_BASE': 0.0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


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
def make_product(db_session):
    """Factory: create a simple product with seed stock."""
    counter = {"n": 0}

    def _make(stock=10, min_stock_level=5, price_cents=1000, cost_cents=400, name=None, category="General"):
        counter["n"] += 1
        return catalog_service.create_product(
            name=name or f"Product {counter['n']}",
            sku=f"SKU-{counter['n']:04d}",
            category=category,
            price_cents=price_cents,
            cost_cents=cost_cents,
            min_stock_level=min_stock_level,
            stock=stock,
        )

    return _make


@pytest.fixture(scope='function')
def shirt(db_session):
    """Product with three variants (S=10, M=4, L=0), min level 5 each."""
    return catalog_service.create_product(
        name="Shirt",
        sku="SHIRT",
        category="Apparel",
        price_cents=2000,
        cost_cents=800,
        variants=[
            {"name": "S", "sku": "SHIRT-S", "price_cents": 2000, "cost_cents": 800, "stock": 10, "min_stock_level": 5},
            {"name": "M", "sku": "SHIRT-M", "price_cents": 2000, "cost_cents": 800, "stock": 4, "min_stock_level": 5},
            {"name": "L", "sku": "SHIRT-L", "price_cents": 2500, "cost_cents": 900, "stock": 0, "min_stock_level": 5},
        ],
    )


def notifications_of(type_):
    """Helper to fetch notifications of one type, oldest first."""
    return (
        db.session.query(Notification)
        .filter(Notification.type == type_)
        .order_by(Notification.id.asc())
        .all()
    )
