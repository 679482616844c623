import logging
from typing import Optional
from motor.motor_asyncio import AsyncIOMotorClient

from shared.utils import Settings, get_db_client
from app.carts import CartService
from app.engine import OrderTransactionEngine
from app.memory_store import (
    InMemoryDatabase,
    MemoryCartStore,
    MemoryOrderStore,
    MemoryProductStore,
    MemoryTransactionManager,
)
from app.mongo_store import (
    MongoCartStore,
    MongoOrderStore,
    MongoProductStore,
    MongoTransactionManager,
    ensure_indexes,
)
from app.stores import CartStore, OrderStore, ProductInventoryStore, TransactionManager

logger = logging.getLogger(__name__)


class Backend:
    """The three stores plus their transaction manager, wired for one process."""

    def __init__(
        self,
        products: ProductInventoryStore,
        carts: CartStore,
        orders: OrderStore,
        transactions: TransactionManager,
        client: Optional[AsyncIOMotorClient] = None,
        database=None,
    ):
        self.products = products
        self.carts = carts
        self.orders = orders
        self.transactions = transactions
        self.client = client
        self.database = database
        self.engine = OrderTransactionEngine(products, carts, orders, transactions)
        self.cart_service = CartService(carts, products)

    async def prepare(self):
        if self.client is not None:
            await ensure_indexes(self.database)

    def close(self):
        if self.client is not None:
            self.client.close()


def create_memory_backend(db: Optional[InMemoryDatabase] = None, lock_timeout: float = 5.0) -> Backend:
    db = db or InMemoryDatabase(lock_timeout=lock_timeout)
    return Backend(
        products=MemoryProductStore(db),
        carts=MemoryCartStore(db),
        orders=MemoryOrderStore(db),
        transactions=MemoryTransactionManager(db),
        database=db,
    )


def create_mongo_backend(url: str, db_name: str) -> Backend:
    client = get_db_client(url)
    db = client[db_name]
    return Backend(
        products=MongoProductStore(db),
        carts=MongoCartStore(db),
        orders=MongoOrderStore(db),
        transactions=MongoTransactionManager(client),
        client=client,
        database=db,
    )


def create_backend(settings: Settings) -> Backend:
    if settings.STORE_BACKEND == "memory":
        logger.warning("Using in-memory stores, data is lost on restart")
        return create_memory_backend(lock_timeout=settings.LOCK_TIMEOUT_SECONDS)
    if settings.STORE_BACKEND == "mongo":
        return create_mongo_backend(settings.MONGO_URL, settings.MONGO_DB)
    raise ValueError(f"Unknown STORE_BACKEND '{settings.STORE_BACKEND}'")
