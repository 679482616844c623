"""In-process store backend.

Writes made through a unit of work are staged and only become visible on
commit. Any document a unit of work writes stays locked until that unit
commits or rolls back, so a competing writer re-reads committed state after
the lock is released. Lock waits are bounded by ``lock_timeout``, which also
turns lock-order deadlocks into a retryable abort.
"""
import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Tuple
from bson import ObjectId
from pydantic import BaseModel

from shared.utils import utcnow
from app.errors import (
    InsufficientStockError,
    OrderNotFoundError,
    ProductNotFoundError,
    StaleWriteError,
    TransactionAbortedError,
)
from app.models import (
    STATUS_ORDER,
    CartDB,
    OrderDB,
    OrderFilters,
    OrderStatus,
    ProductDB,
    StatusGroup,
)

logger = logging.getLogger(__name__)

PRODUCTS = "products"
CARTS = "carts"
ORDERS = "orders"

Key = Tuple[str, str]


async def _io():
    # Store calls are suspension points, same as a network round trip.
    await asyncio.sleep(0)


def new_id() -> str:
    return str(ObjectId())


class InMemoryDatabase:
    def __init__(self, lock_timeout: float = 5.0):
        self.lock_timeout = lock_timeout
        self.collections: Dict[str, Dict[str, BaseModel]] = {
            PRODUCTS: {},
            CARTS: {},
            ORDERS: {},
        }
        # A lock lives as long as a unit of work holds it or waits on it
        self._locks: "weakref.WeakValueDictionary[Key, asyncio.Lock]" = weakref.WeakValueDictionary()

    def lock_for(self, key: Key) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @property
    def lock_count(self) -> int:
        return len(self._locks)

    def committed(self, collection: str, key: str):
        doc = self.collections[collection].get(key)
        return doc.model_copy(deep=True) if doc is not None else None

    # Direct inserts for the catalog side and for fixtures.

    def add_product(self, product: ProductDB) -> ProductDB:
        if product.id is None:
            product = product.model_copy(update={"id": new_id()})
        self.collections[PRODUCTS][product.id] = product.model_copy(deep=True)
        return product

    def add_cart(self, cart: CartDB) -> CartDB:
        if cart.id is None:
            cart = cart.model_copy(update={"id": new_id()})
        self.collections[CARTS][cart.user_id] = cart.model_copy(deep=True)
        return cart

    def add_order(self, order: OrderDB) -> OrderDB:
        if order.id is None:
            order = order.model_copy(update={"id": new_id()})
        self.collections[ORDERS][order.id] = order.model_copy(deep=True)
        return order


class MemoryUnitOfWork:
    def __init__(self, db: InMemoryDatabase):
        self.db = db
        self._staged: Dict[Key, BaseModel] = {}
        self._held: Dict[Key, asyncio.Lock] = {}

    async def lock(self, collection: str, key: str):
        if (collection, key) in self._held:
            return
        lock = self.db.lock_for((collection, key))
        try:
            await asyncio.wait_for(lock.acquire(), self.db.lock_timeout)
        except asyncio.TimeoutError:
            raise TransactionAbortedError(f"timed out waiting for lock on {collection} {key}")
        self._held[(collection, key)] = lock

    def read(self, collection: str, key: str):
        doc = self._staged.get((collection, key))
        if doc is None:
            return self.db.committed(collection, key)
        return doc.model_copy(deep=True)

    def stage(self, collection: str, key: str, doc: BaseModel):
        if (collection, key) not in self._held:
            raise RuntimeError(f"write to {collection} {key} without holding its lock")
        self._staged[(collection, key)] = doc.model_copy(deep=True)

    def commit(self):
        for (collection, key), doc in self._staged.items():
            self.db.collections[collection][key] = doc
        self._staged.clear()
        self._release()

    def rollback(self):
        self._staged.clear()
        self._release()

    def _release(self):
        for lock in self._held.values():
            lock.release()
        self._held.clear()


class MemoryTransactionManager:
    def __init__(self, db: InMemoryDatabase):
        self.db = db

    @asynccontextmanager
    async def begin(self):
        uow = MemoryUnitOfWork(self.db)
        try:
            yield uow
        except BaseException:
            uow.rollback()
            raise
        else:
            uow.commit()

    async def ping(self) -> str:
        return "in-memory"


class MemoryProductStore:
    def __init__(self, db: InMemoryDatabase):
        self.db = db

    async def get(self, product_id: str, uow: Optional[MemoryUnitOfWork] = None) -> Optional[ProductDB]:
        await _io()
        if uow is not None:
            return uow.read(PRODUCTS, product_id)
        return self.db.committed(PRODUCTS, product_id)

    async def reserve(self, product_ids: List[str], uow: MemoryUnitOfWork) -> None:
        await _io()
        for product_id in product_ids:
            await uow.lock(PRODUCTS, product_id)

    async def decrement_quantity(self, product_id: str, amount: int, uow: MemoryUnitOfWork) -> ProductDB:
        await _io()
        await uow.lock(PRODUCTS, product_id)
        product = uow.read(PRODUCTS, product_id)
        if product is None:
            raise ProductNotFoundError(product_id)
        if not product.in_stock or product.quantity < amount:
            raise InsufficientStockError(product_id, product.name, product.quantity, amount)

        product.quantity -= amount
        product.in_stock = product.quantity > 0
        product.updated_at = utcnow()
        uow.stage(PRODUCTS, product_id, product)
        return product

    async def restore_quantity(self, product_id: str, amount: int, uow: MemoryUnitOfWork) -> Optional[ProductDB]:
        await _io()
        await uow.lock(PRODUCTS, product_id)
        product = uow.read(PRODUCTS, product_id)
        if product is None:
            return None

        product.quantity += amount
        product.in_stock = True
        product.updated_at = utcnow()
        uow.stage(PRODUCTS, product_id, product)
        return product


class MemoryCartStore:
    def __init__(self, db: InMemoryDatabase):
        self.db = db
        self.transactions = MemoryTransactionManager(db)

    async def get(self, user_id: str, uow: Optional[MemoryUnitOfWork] = None) -> Optional[CartDB]:
        await _io()
        if uow is not None:
            return uow.read(CARTS, user_id)
        return self.db.committed(CARTS, user_id)

    async def clear(self, user_id: str, uow: MemoryUnitOfWork, expected_version: Optional[int] = None) -> None:
        await _io()
        await uow.lock(CARTS, user_id)
        cart = uow.read(CARTS, user_id)
        if cart is None:
            return
        if expected_version is not None and cart.version != expected_version:
            raise StaleWriteError("cart", user_id)

        cart.items = []
        cart.version += 1
        cart.updated_at = utcnow()
        uow.stage(CARTS, user_id, cart)

    async def get_or_create(self, user_id: str) -> CartDB:
        await _io()
        async with self.transactions.begin() as uow:
            await uow.lock(CARTS, user_id)
            cart = uow.read(CARTS, user_id)
            if cart is None:
                cart = CartDB(id=new_id(), user_id=user_id, items=[])
                uow.stage(CARTS, user_id, cart)
        return cart

    async def save_items(self, cart: CartDB) -> CartDB:
        await _io()
        async with self.transactions.begin() as uow:
            await uow.lock(CARTS, cart.user_id)
            current = uow.read(CARTS, cart.user_id)
            if current is None or current.version != cart.version:
                raise StaleWriteError("cart", cart.user_id)
            saved = current.model_copy(
                update={"items": list(cart.items), "version": cart.version + 1, "updated_at": utcnow()}
            )
            uow.stage(CARTS, cart.user_id, saved)
        return saved


class MemoryOrderStore:
    def __init__(self, db: InMemoryDatabase):
        self.db = db
        self.transactions = MemoryTransactionManager(db)

    async def create(self, order: OrderDB, uow: MemoryUnitOfWork) -> OrderDB:
        await _io()
        created = order.model_copy(update={"id": new_id()})
        await uow.lock(ORDERS, created.id)
        uow.stage(ORDERS, created.id, created)
        return created

    async def get(self, order_id: str, uow: Optional[MemoryUnitOfWork] = None) -> Optional[OrderDB]:
        await _io()
        if uow is not None:
            return uow.read(ORDERS, order_id)
        return self.db.committed(ORDERS, order_id)

    async def update(
        self,
        order: OrderDB,
        uow: Optional[MemoryUnitOfWork] = None,
        expected_status: Optional[OrderStatus] = None,
    ) -> OrderDB:
        if uow is None:
            async with self.transactions.begin() as own:
                return await self.update(order, own, expected_status)

        await _io()
        await uow.lock(ORDERS, order.id)
        current = uow.read(ORDERS, order.id)
        if current is None:
            raise OrderNotFoundError(order.id)
        if expected_status is not None and current.status != expected_status:
            raise StaleWriteError("order", order.id)

        # Items and totals are a snapshot; only the lifecycle fields move.
        updated = current.model_copy(update={"status": order.status, "updated_at": order.updated_at})
        uow.stage(ORDERS, order.id, updated)
        return updated

    def _newest_first(self, orders: List[OrderDB]) -> List[OrderDB]:
        return sorted(reversed(orders), key=lambda o: o.created_at, reverse=True)

    async def list_by_user(self, user_id: str) -> List[OrderDB]:
        await _io()
        orders = [o for o in self.db.collections[ORDERS].values() if o.user_id == user_id]
        return [o.model_copy(deep=True) for o in self._newest_first(orders)]

    async def list_all(self, filters: OrderFilters, page: int, limit: int) -> Tuple[List[OrderDB], int]:
        await _io()
        orders = [
            o for o in self.db.collections[ORDERS].values()
            if (filters.status is None or o.status == filters.status)
            and (filters.user_id is None or o.user_id == filters.user_id)
        ]
        skip = (page - 1) * limit
        page_items = self._newest_first(orders)[skip:skip + limit]
        return [o.model_copy(deep=True) for o in page_items], len(orders)

    async def aggregate_by_status(self) -> List[StatusGroup]:
        await _io()
        groups: Dict[OrderStatus, StatusGroup] = {}
        for order in self.db.collections[ORDERS].values():
            group = groups.setdefault(
                order.status, StatusGroup(status=order.status, count=0, total_amount=0)
            )
            group.count += 1
            group.total_amount += order.total_amount
        return [groups[s] for s in STATUS_ORDER if s in groups]
