import os

# Must be set before shared.utils builds its Settings
os.environ["STORE_BACKEND"] = "memory"
os.environ["RATE_LIMIT_ENABLED"] = "false"

from decimal import Decimal

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from shared.utils import create_access_token
from app.backend import create_memory_backend
from app.memory_store import InMemoryDatabase
from app.models import CartDB, CartItemDB, OrderDB, OrderItemDB, OrderStatus, ProductDB


@pytest.fixture
def db():
    return InMemoryDatabase(lock_timeout=0.5)


@pytest.fixture
def backend(db):
    return create_memory_backend(db)


@pytest.fixture
def engine(backend):
    return backend.engine


@pytest.fixture
def make_product(db):
    def _make(name="Keyboard", price="10.00", quantity=5, in_stock=None):
        return db.add_product(ProductDB(
            name=name,
            price=Decimal(price),
            quantity=quantity,
            in_stock=quantity > 0 if in_stock is None else in_stock,
        ))
    return _make


@pytest.fixture
def make_cart(db):
    def _make(user_id, *lines):
        items = [
            CartItemDB(product_id=product.id, quantity=quantity, price=product.price, name=product.name)
            for product, quantity in lines
        ]
        return db.add_cart(CartDB(user_id=user_id, items=items))
    return _make


@pytest.fixture
def make_order(db):
    """Insert an order directly, bypassing placement. Lines are (name, price, quantity)."""
    def _make(user_id, status=OrderStatus.PENDING, lines=(("Widget", "10.00", 1),)):
        items = [
            OrderItemDB(
                product_id=str(ObjectId()),
                name=name,
                price=Decimal(price),
                quantity=quantity,
                subtotal=Decimal(price) * quantity,
            )
            for name, price, quantity in lines
        ]
        return db.add_order(OrderDB(
            user_id=user_id,
            items=items,
            total_amount=sum((i.subtotal for i in items), Decimal("0")),
            status=status,
        ))
    return _make


@pytest.fixture
def product_state(db):
    def _state(product_id):
        product = db.committed("products", product_id)
        return product.quantity, product.in_stock
    return _state


@pytest.fixture
def client(backend):
    from app.main import app, get_backend

    app.dependency_overrides[get_backend] = lambda: backend
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    def _headers(user_id, role="user"):
        token = create_access_token({"sub": user_id, "role": role})
        return {"Authorization": f"Bearer {token}"}
    return _headers
