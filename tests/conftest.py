# tests/conftest.py
# ---------------------------------------------------------------------
# - Every test gets a fresh app on an in-memory SQLite database
# - Service tests run inside an app context (config drives chunking/paging)
# - Record factories build upload-shaped dicts with sensible defaults
# ---------------------------------------------------------------------

import pytest

from config import TestingConfig
from retail_analytics import create_app, db


@pytest.fixture()
def app():
    app = create_app(TestingConfig)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def session(app):
    return db.session


@pytest.fixture()
def make_sale():
    def _make(**overrides):
        sale = {
            'date': '2024-07-10',
            'sku': 'ABC-123',
            'quantity': 1,
            'price': 100,
            'amount': 100,
            'channel': 'ecommerce',
            'user': 'online',
        }
        sale.update(overrides)
        return sale
    return _make


@pytest.fixture()
def make_return():
    def _make(**overrides):
        ret = {
            'date': '2024-07-12',
            'order_reference': 'ORD-1',
            'sku': 'ABC-123',
            'quantity': 1,
            'amount': -100,
            'reason': 'RESO',
            'channel': 'ecommerce',
        }
        ret.update(overrides)
        return ret
    return _make


@pytest.fixture()
def catalog():
    return [
        {'sku': 'ABC-123', 'brand': 'Nike', 'purchase_price': 50, 'sell_price': 120, 'category': 'calzature'},
        {'sku': 'XYZ 9', 'brand': 'Gucci', 'purchase_price': 200, 'sell_price': 500},
    ]
