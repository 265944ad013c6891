"""Pytest fixtures for the mlFor backend tests."""

import os

# Settings are read once at import time; these must exist before any app module loads
os.environ.setdefault("PAYSTACK_BASE_URL", "https://api.paystack.test")
os.environ.setdefault("PAYSTACK_SECRET_KEY", "sk_test_secret")
os.environ.setdefault("PAYSTACK_PUBLIC_KEY", "pk_test_public")
os.environ.setdefault("PAYSTACK_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest

from app.core.deps import build_engine
from app.core.rate_limit import TokenBucketLimiter
from app.models.product_model import Product
from app.models.user_model import User
from app.services.order_ledger import OrderLedger
from app.services.payment_ledger import PaymentLedger
from app.services.stock import StockAdjuster

from fakes import WEBHOOK_SECRET, FakeGateway, MemoryDocumentStore, make_draft


@pytest.fixture
def products():
    store = MemoryDocumentStore("products")
    for product in (
        Product(id="tee-black", name="Black Tee", price=5000, count_in_stock=10),
        Product(id="hoodie", name="Heavy Hoodie", price=15000, count_in_stock=1),
    ):
        store.create(product.id, product.model_dump())
    return store


@pytest.fixture
def orders_store():
    return MemoryDocumentStore("orders")


@pytest.fixture
def payments_store():
    return MemoryDocumentStore("payments")


@pytest.fixture
def stock(products):
    return StockAdjuster(products)


@pytest.fixture
def order_ledger(orders_store, stock):
    return OrderLedger(orders_store, stock)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def payment_ledger(payments_store, order_ledger, gateway):
    return PaymentLedger(payments_store, order_ledger, gateway)


@pytest.fixture
def paid_calls():
    """(reference, order_id) for every paid hook invocation."""
    return []


@pytest.fixture
def engine(orders_store, payments_store, products, gateway, paid_calls):
    return build_engine(
        orders_store,
        payments_store,
        products,
        gateway,
        WEBHOOK_SECRET,
        limiter=TokenBucketLimiter(capacity=100, window_seconds=60),
        on_paid=[lambda payment, order: paid_calls.append((payment.id, order.id))],
    )


@pytest.fixture
def buyer():
    return User(id="user-1", email="buyer@example.com", full_name="Ada Buyer")


@pytest.fixture
def stranger():
    return User(id="user-2", email="stranger@example.com")


@pytest.fixture
def admin():
    return User(id="admin-1", email="admin@mlfor.ng", is_admin=True)


@pytest.fixture
def order(engine, buyer):
    """A Pending, unpaid 12,000 order with stock already reserved."""
    return engine.orders.checkout(buyer, make_draft())
