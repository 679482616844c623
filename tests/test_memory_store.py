import gc
from decimal import Decimal

import pytest

from app.errors import StaleWriteError, TransactionAbortedError
from app.memory_store import InMemoryDatabase, MemoryTransactionManager, MemoryUnitOfWork
from app.models import CartItemDB, ProductDB


@pytest.mark.asyncio
async def test_staged_writes_are_invisible_until_commit(backend, db, make_product):
    product = make_product(quantity=5)

    async with backend.transactions.begin() as uow:
        await backend.products.decrement_quantity(product.id, 2, uow)
        assert (await backend.products.get(product.id, uow)).quantity == 3
        assert (await backend.products.get(product.id)).quantity == 5

    assert (await backend.products.get(product.id)).quantity == 3


@pytest.mark.asyncio
async def test_exception_rolls_back_every_write(backend, make_product, make_cart, product_state, db):
    product = make_product(quantity=5)
    make_cart("user-1", (product, 1))

    with pytest.raises(RuntimeError):
        async with backend.transactions.begin() as uow:
            await backend.products.decrement_quantity(product.id, 5, uow)
            await backend.carts.clear("user-1", uow)
            raise RuntimeError("boom")

    assert product_state(product.id) == (5, True)
    assert len(db.committed("carts", "user-1").items) == 1


@pytest.mark.asyncio
async def test_locks_are_released_after_rollback(backend, make_product):
    product = make_product(quantity=5)

    with pytest.raises(RuntimeError):
        async with backend.transactions.begin() as uow:
            await backend.products.decrement_quantity(product.id, 1, uow)
            raise RuntimeError("boom")

    async with backend.transactions.begin() as uow:
        await backend.products.decrement_quantity(product.id, 1, uow)


@pytest.mark.asyncio
async def test_lock_wait_times_out_as_retryable_abort():
    db = InMemoryDatabase(lock_timeout=0.05)
    product = db.add_product(ProductDB(name="Lamp", price=Decimal("5"), quantity=3))
    holder = MemoryUnitOfWork(db)
    await holder.lock("products", product.id)

    with pytest.raises(TransactionAbortedError) as exc:
        async with MemoryTransactionManager(db).begin() as waiter:
            await waiter.lock("orders", "o-2")
            await waiter.lock("products", product.id)

    assert exc.value.retryable is True
    assert exc.value.status_code == 503
    # The waiter released what it held
    async with MemoryTransactionManager(db).begin() as again:
        await again.lock("orders", "o-2")
    holder.rollback()


def test_staging_requires_the_lock(db, make_product):
    product = make_product()
    uow = MemoryUnitOfWork(db)

    with pytest.raises(RuntimeError):
        uow.stage("products", product.id, product)


@pytest.mark.asyncio
async def test_cart_clear_checks_version(backend, make_product, make_cart, db):
    product = make_product()
    cart = make_cart("user-1", (product, 1))

    with pytest.raises(StaleWriteError):
        async with backend.transactions.begin() as uow:
            await backend.carts.clear("user-1", uow, expected_version=cart.version + 1)

    assert len(db.committed("carts", "user-1").items) == 1


@pytest.mark.asyncio
async def test_cart_save_rejects_stale_copy(backend, make_product):
    product = make_product()
    stale = await backend.carts.get_or_create("user-1")
    fresh = await backend.carts.get_or_create("user-1")

    fresh.items.append(CartItemDB(product_id=product.id, quantity=1, price=product.price, name=product.name))
    saved = await backend.carts.save_items(fresh)
    assert saved.version == fresh.version + 1

    with pytest.raises(StaleWriteError):
        await backend.carts.save_items(stale)


@pytest.mark.asyncio
async def test_get_or_create_keeps_existing_cart(backend, make_product, make_cart):
    product = make_product()
    cart = make_cart("user-1", (product, 2))

    loaded = await backend.carts.get_or_create("user-1")

    assert loaded.id == cart.id
    assert loaded.items[0].quantity == 2


@pytest.mark.asyncio
async def test_restore_of_missing_product_is_a_no_op(backend):
    async with backend.transactions.begin() as uow:
        assert await backend.products.restore_quantity("missing", 1, uow) is None


@pytest.mark.asyncio
async def test_ping(backend):
    assert await backend.transactions.ping() == "in-memory"


@pytest.mark.asyncio
async def test_released_locks_are_dropped(engine, db, make_product, make_cart):
    product = make_product(quantity=5)
    for user in ("user-1", "user-2"):
        make_cart(user, (product, 1))

    async with engine.transactions.begin() as uow:
        await engine.products.reserve([product.id], uow)
        assert db.lock_count == 1

    await engine.place_order("user-1")
    order = await engine.place_order("user-2")
    await engine.cancel_order(order.id, "user-2")
    gc.collect()

    assert db.lock_count == 0
