from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest
from bson import Decimal128, ObjectId
from pymongo.errors import AutoReconnect, DuplicateKeyError, OperationFailure, PyMongoError

from app.errors import (
    InsufficientStockError,
    OrderNotFoundError,
    ProductNotFoundError,
    StaleWriteError,
    TransactionAbortedError,
)
from app.models import OrderDB, OrderItemDB, OrderStatus
from app.mongo_store import (
    MongoCartStore,
    MongoOrderStore,
    MongoProductStore,
    MongoTransactionManager,
    MongoUnitOfWork,
    from_bson,
    order_from_doc,
    order_to_doc,
    str_to_oid,
)


class FakeTransaction:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    def start_transaction(self):
        return FakeTransaction()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeClient:
    async def start_session(self):
        return FakeSession()


class FakeCursor:
    def __init__(self, docs):
        self.docs = list(docs)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self.docs:
            raise StopAsyncIteration
        return self.docs.pop(0)


class FakeCollection:
    """Answers each driver call with a canned result and records its arguments."""

    def __init__(self, **results):
        self.results = results
        self.calls = []

    def _answer(self, name, *args, **kwargs):
        self.calls.append((name, args, kwargs))
        result = self.results.get(name)
        if isinstance(result, Exception):
            raise result
        return result

    async def find_one(self, *args, **kwargs):
        return self._answer("find_one", *args, **kwargs)

    async def find_one_and_update(self, *args, **kwargs):
        return self._answer("find_one_and_update", *args, **kwargs)

    async def update_one(self, *args, **kwargs):
        return self._answer("update_one", *args, **kwargs)

    async def count_documents(self, *args, **kwargs):
        return self._answer("count_documents", *args, **kwargs)

    def aggregate(self, pipeline):
        self.calls.append(("aggregate", (pipeline,), {}))
        return FakeCursor(self.results.get("aggregate", []))

    def called(self, name):
        return [(args, kwargs) for call, args, kwargs in self.calls if call == name]


def fake_db(**collections):
    return SimpleNamespace(**collections)


def product_doc(oid, quantity=2, in_stock=True):
    return {"_id": oid, "name": "Lamp", "price": Decimal128("5.00"), "quantity": quantity, "in_stock": in_stock}


def sample_order():
    return OrderDB(
        user_id="user-1",
        items=[OrderItemDB(
            product_id=str(ObjectId()), name="Desk", price=Decimal("120.50"), quantity=2, subtotal=Decimal("241.00")
        )],
        total_amount=Decimal("241.00"),
        status=OrderStatus.CONFIRMED,
        created_at=datetime(2024, 5, 1, tzinfo=timezone.utc),
    )


def test_str_to_oid():
    oid = ObjectId()
    assert str_to_oid(str(oid)) == oid
    assert str_to_oid("not-an-id") is None
    assert str_to_oid(None) is None


def test_order_document_layout():
    doc = order_to_doc(sample_order())

    assert "_id" not in doc
    assert doc["status"] == "confirmed"
    assert doc["total_amount"] == Decimal128("241.00")
    assert doc["items"][0]["price"] == Decimal128("120.50")
    assert doc["items"][0]["subtotal"] == Decimal128("241.00")


def test_order_from_stored_document():
    oid = ObjectId()
    doc = {"_id": oid, **order_to_doc(sample_order())}

    order = order_from_doc(doc)

    assert order.id == str(oid)
    assert order.status == OrderStatus.CONFIRMED
    assert order.total_amount == Decimal("241.00")
    assert order.items[0].name == "Desk"


def test_from_bson_converts_nested_values():
    oid = ObjectId()
    assert from_bson({"a": [Decimal128("1.5"), oid], "b": "x"}) == {"a": [Decimal("1.5"), str(oid)], "b": "x"}


@pytest.mark.parametrize("error, commit_unknown", [
    (PyMongoError("write conflict", error_labels=["TransientTransactionError"]), False),
    (PyMongoError("commit timed out", error_labels=["UnknownTransactionCommitResult"]), True),
    (AutoReconnect("primary stepped down"), False),
])
@pytest.mark.asyncio
async def test_transaction_failures_become_retryable_aborts(error, commit_unknown):
    manager = MongoTransactionManager(FakeClient())

    with pytest.raises(TransactionAbortedError) as exc:
        async with manager.begin():
            raise error

    assert exc.value.commit_unknown is commit_unknown
    assert exc.value.retryable is True
    assert exc.value.__cause__ is error


@pytest.mark.asyncio
async def test_non_transient_driver_errors_propagate():
    manager = MongoTransactionManager(FakeClient())

    with pytest.raises(OperationFailure):
        async with manager.begin():
            raise OperationFailure("bad query", code=2)


@pytest.mark.asyncio
async def test_domain_errors_pass_through_transaction():
    manager = MongoTransactionManager(FakeClient())

    with pytest.raises(InsufficientStockError):
        async with manager.begin() as uow:
            assert isinstance(uow.session, FakeSession)
            raise InsufficientStockError("p1", "Lamp", 0, 1)


@pytest.mark.asyncio
async def test_decrement_is_a_single_conditional_write():
    oid = ObjectId()
    products = FakeCollection(find_one_and_update=product_doc(oid, quantity=1))
    uow = MongoUnitOfWork(FakeSession())

    product = await MongoProductStore(fake_db(products=products)).decrement_quantity(str(oid), 3, uow)

    assert product.id == str(oid)
    assert product.quantity == 1
    assert product.price == Decimal("5.00")
    (query, pipeline), kwargs = products.called("find_one_and_update")[0]
    assert query == {"_id": oid, "in_stock": True, "quantity": {"$gte": 3}}
    assert pipeline[1] == {"$set": {"in_stock": {"$gt": ["$quantity", 0]}}}
    assert kwargs["session"] is uow.session
    assert products.called("find_one") == []


@pytest.mark.asyncio
async def test_decrement_miss_on_missing_product():
    oid = ObjectId()
    products = FakeCollection(find_one_and_update=None, find_one=None)

    with pytest.raises(ProductNotFoundError):
        await MongoProductStore(fake_db(products=products)).decrement_quantity(
            str(oid), 1, MongoUnitOfWork(FakeSession())
        )


@pytest.mark.asyncio
async def test_decrement_miss_on_short_stock_reports_current_quantity():
    oid = ObjectId()
    products = FakeCollection(find_one_and_update=None, find_one=product_doc(oid, quantity=1))

    with pytest.raises(InsufficientStockError) as exc:
        await MongoProductStore(fake_db(products=products)).decrement_quantity(
            str(oid), 3, MongoUnitOfWork(FakeSession())
        )

    assert (exc.value.available, exc.value.requested, exc.value.name) == (1, 3, "Lamp")


@pytest.mark.asyncio
async def test_decrement_with_malformed_id_never_queries():
    products = FakeCollection()

    with pytest.raises(ProductNotFoundError):
        await MongoProductStore(fake_db(products=products)).decrement_quantity(
            "not-an-id", 1, MongoUnitOfWork(FakeSession())
        )

    assert products.calls == []


@pytest.mark.asyncio
async def test_cart_clear_filters_on_version():
    carts = FakeCollection(update_one=SimpleNamespace(matched_count=0))
    store = MongoCartStore(fake_db(carts=carts))

    with pytest.raises(StaleWriteError):
        await store.clear("user-1", MongoUnitOfWork(FakeSession()), expected_version=4)

    (query, update), _ = carts.called("update_one")[0]
    assert query == {"user_id": "user-1", "version": 4}
    assert update["$inc"] == {"version": 1}
    assert update["$set"]["items"] == []


@pytest.mark.asyncio
async def test_cart_clear_without_version_tolerates_missing_cart():
    carts = FakeCollection(update_one=SimpleNamespace(matched_count=0))

    await MongoCartStore(fake_db(carts=carts)).clear("user-1", MongoUnitOfWork(FakeSession()))

    (query, _), _ = carts.called("update_one")[0]
    assert query == {"user_id": "user-1"}


@pytest.mark.asyncio
async def test_get_or_create_reads_cart_after_losing_insert_race():
    existing = {"_id": ObjectId(), "user_id": "user-1", "items": [], "version": 3}
    carts = FakeCollection(
        find_one_and_update=DuplicateKeyError("E11000 duplicate key error", code=11000),
        find_one=existing,
    )

    cart = await MongoCartStore(fake_db(carts=carts)).get_or_create("user-1")

    assert cart.id == str(existing["_id"])
    assert cart.version == 3
    assert carts.called("find_one")[0][0] == ({"user_id": "user-1"},)


@pytest.mark.parametrize("count, error", [(0, OrderNotFoundError), (1, StaleWriteError)])
@pytest.mark.asyncio
async def test_order_update_miss_tells_missing_from_stale(count, error):
    oid = ObjectId()
    orders = FakeCollection(find_one_and_update=None, count_documents=count)
    order = sample_order().model_copy(update={"id": str(oid), "status": OrderStatus.SHIPPED})

    with pytest.raises(error):
        await MongoOrderStore(fake_db(orders=orders)).update(order, expected_status=OrderStatus.CONFIRMED)

    (query, update), _ = orders.called("find_one_and_update")[0]
    assert query == {"_id": oid, "status": "confirmed"}
    assert update["$set"]["status"] == "shipped"


@pytest.mark.asyncio
async def test_order_update_returns_stored_document():
    oid = ObjectId()
    stored = {"_id": oid, **order_to_doc(sample_order()), "status": "shipped"}
    orders = FakeCollection(find_one_and_update=stored)
    order = sample_order().model_copy(update={"id": str(oid), "status": OrderStatus.SHIPPED})

    updated = await MongoOrderStore(fake_db(orders=orders)).update(order, expected_status=OrderStatus.CONFIRMED)

    assert updated.status == OrderStatus.SHIPPED
    assert orders.called("count_documents") == []


@pytest.mark.asyncio
async def test_status_aggregation_converts_decimal128_and_orders_by_lifecycle():
    orders = FakeCollection(aggregate=[
        {"_id": "cancelled", "count": 1, "total_amount": Decimal128("50.00")},
        {"_id": "pending", "count": 2, "total_amount": Decimal128("20.10")},
    ])

    groups = await MongoOrderStore(fake_db(orders=orders)).aggregate_by_status()

    assert [(g.status, g.count, g.total_amount) for g in groups] == [
        (OrderStatus.PENDING, 2, Decimal("20.10")),
        (OrderStatus.CANCELLED, 1, Decimal("50.00")),
    ]
    (pipeline,), _ = orders.called("aggregate")[0]
    assert pipeline[0]["$group"]["total_amount"] == {"$sum": "$total_amount"}


@pytest.mark.asyncio
async def test_reserve_leaves_locking_to_the_server():
    products = FakeCollection()

    await MongoProductStore(fake_db(products=products)).reserve([str(ObjectId())], MongoUnitOfWork(FakeSession()))

    assert products.calls == []
