"""
Pytest fixtures for fulfillment backend tests.

Provides test database setup, product/order factories, and test client.
"""

import pytest

from fulfillment import create_app
from fulfillment.extensions import db
from fulfillment.models import Order, OrderItem, Product
from fulfillment.services import packing_service


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'RESTOCK_ON_CANCEL': False,
        'BARCODE_PREFIX': 'KK',
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


@pytest.fixture(autouse=True)
def clear_unsaved_progress():
    """Session ids repeat across tests once tables are wiped."""
    packing_service._unsaved_progress.clear()
    yield
    packing_service._unsaved_progress.clear()


@pytest.fixture(scope='function')
def make_product(db_session):
    """Factory: insert a product directly (bypasses the duplicate check)."""
    counter = {"n": 0}

    def _make(name=None, quantity=5, price_cents=150000, barcode=None):
        counter["n"] += 1
        product = Product(
            name=name or f"Ikat Dupatta {counter['n']}",
            barcode=barcode or f"TEST{counter['n']:04d}",
            price_cents=price_cents,
            quantity=quantity,
        )
        db_session.add(product)
        db_session.commit()
        return product

    return _make


@pytest.fixture(scope='function')
def make_order(db_session):
    """
    Factory: insert an order in any status with line items.

    lines is a list of (product, quantity). Stock is not touched; use
    checkout_service.place_order when the ledger matters.
    """
    def _make(lines, status="paid", **fields):
        order = Order(
            status=status,
            customer_name=fields.pop("customer_name", "Meera Rao"),
            customer_phone=fields.pop("customer_phone", "+91 98450 00000"),
            total_amount_cents=sum(p.price_cents * qty for p, qty in lines),
            **fields,
        )
        order.items = [
            OrderItem(
                product_id=p.id,
                position=i,
                name=p.name,
                price_cents=p.price_cents,
                quantity=qty,
                barcode=p.barcode,
            )
            for i, (p, qty) in enumerate(lines)
        ]
        db_session.add(order)
        db_session.commit()
        return order

    return _make


@pytest.fixture(scope='function')
def customer():
    return {
        "name": "Meera Rao",
        "phone": "+91 98450 00000",
        "email": "meera@example.com",
        "address": "12 Temple Street, Mysuru",
    }


@pytest.fixture(scope='function')
def cart_line():
    """Factory: one checkout cart line for a product."""
    def _line(product, quantity=1, price=None):
        return {
            "product_id": product.id,
            "quantity": quantity,
            "price_at_add_time_cents": product.price_cents if price is None else price,
        }

    return _line
