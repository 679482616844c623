"""MongoDB store backend (Motor).

Order placement and cancellation run inside a multi-document transaction, so
the server has to be a replica set or a sharded cluster. Money is stored as
Decimal128; ids are ObjectIds on disk and strings in the domain.
"""
import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional, Tuple
from bson import Decimal128, ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorClientSession
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError, PyMongoError

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


# --- Helpers ---
def str_to_oid(id: str) -> Optional[ObjectId]:
    # ObjectId(None) would mint a fresh id
    if not isinstance(id, str):
        return None
    try:
        return ObjectId(id)
    except InvalidId:
        return None

def to_bson(value: Any) -> Any:
    if isinstance(value, Decimal):
        return Decimal128(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: to_bson(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_bson(v) for v in value]
    return value

def from_bson(value: Any) -> Any:
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {k: from_bson(v) for k, v in value.items()}
    if isinstance(value, list):
        return [from_bson(v) for v in value]
    return value

def product_from_doc(doc: dict) -> ProductDB:
    return ProductDB.model_validate(from_bson(doc))

def cart_from_doc(doc: dict) -> CartDB:
    return CartDB.model_validate(from_bson(doc))

def order_from_doc(doc: dict) -> OrderDB:
    return OrderDB.model_validate(from_bson(doc))

def order_to_doc(order: OrderDB) -> dict:
    return to_bson(order.model_dump(by_alias=True, exclude={"id"}))

def _session(uow) -> Optional[AsyncIOMotorClientSession]:
    return uow.session if uow is not None else None

def _is_transient(exc: PyMongoError) -> bool:
    return isinstance(exc, ConnectionFailure) or exc.has_error_label("TransientTransactionError")


# --- Transactions ---
class MongoUnitOfWork:
    def __init__(self, session: AsyncIOMotorClientSession):
        self.session = session


class MongoTransactionManager:
    def __init__(self, client: AsyncIOMotorClient):
        self.client = client

    @asynccontextmanager
    async def begin(self):
        try:
            async with await self.client.start_session() as session:
                async with session.start_transaction():
                    yield MongoUnitOfWork(session)
        except PyMongoError as exc:
            if exc.has_error_label("UnknownTransactionCommitResult"):
                logger.error("Commit outcome unknown", extra={"error_code": "transaction_aborted"})
                raise TransactionAbortedError(str(exc), commit_unknown=True) from exc
            if _is_transient(exc):
                logger.warning("Transaction aborted", extra={"error_code": "transaction_aborted"})
                raise TransactionAbortedError(str(exc)) from exc
            raise

    async def ping(self) -> str:
        try:
            await self.client.admin.command("ping")
            return "connected"
        except PyMongoError:
            return "disconnected"


# --- Stores ---
class MongoProductStore:
    def __init__(self, db):
        self.collection = db.products

    async def get(self, product_id: str, uow: Optional[MongoUnitOfWork] = None) -> Optional[ProductDB]:
        oid = str_to_oid(product_id)
        if oid is None:
            return None
        doc = await self.collection.find_one({"_id": oid}, session=_session(uow))
        return product_from_doc(doc) if doc else None

    async def reserve(self, product_ids: List[str], uow: MongoUnitOfWork) -> None:
        # The server locks documents on write and aborts one side of a write conflict
        return None

    async def decrement_quantity(self, product_id: str, amount: int, uow: MongoUnitOfWork) -> ProductDB:
        oid = str_to_oid(product_id)
        if oid is None:
            raise ProductNotFoundError(product_id)

        # Check and decrement in one conditional write; in_stock follows the new quantity.
        doc = await self.collection.find_one_and_update(
            {"_id": oid, "in_stock": True, "quantity": {"$gte": amount}},
            [
                {"$set": {"quantity": {"$subtract": ["$quantity", amount]}, "updated_at": utcnow()}},
                {"$set": {"in_stock": {"$gt": ["$quantity", 0]}}},
            ],
            return_document=ReturnDocument.AFTER,
            session=uow.session,
        )
        if doc is not None:
            return product_from_doc(doc)

        current = await self.collection.find_one({"_id": oid}, session=uow.session)
        if current is None:
            raise ProductNotFoundError(product_id)
        raise InsufficientStockError(product_id, current.get("name"), current.get("quantity", 0), amount)

    async def restore_quantity(self, product_id: str, amount: int, uow: MongoUnitOfWork) -> Optional[ProductDB]:
        oid = str_to_oid(product_id)
        if oid is None:
            return None
        doc = await self.collection.find_one_and_update(
            {"_id": oid},
            {"$inc": {"quantity": amount}, "$set": {"in_stock": True, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
            session=uow.session,
        )
        return product_from_doc(doc) if doc else None


class MongoCartStore:
    def __init__(self, db):
        self.collection = db.carts

    async def get(self, user_id: str, uow: Optional[MongoUnitOfWork] = None) -> Optional[CartDB]:
        doc = await self.collection.find_one({"user_id": user_id}, session=_session(uow))
        return cart_from_doc(doc) if doc else None

    async def clear(self, user_id: str, uow: MongoUnitOfWork, expected_version: Optional[int] = None) -> None:
        query = {"user_id": user_id}
        if expected_version is not None:
            query["version"] = expected_version
        result = await self.collection.update_one(
            query,
            {"$set": {"items": [], "updated_at": utcnow()}, "$inc": {"version": 1}},
            session=uow.session,
        )
        if result.matched_count == 0 and expected_version is not None:
            raise StaleWriteError("cart", user_id)

    async def get_or_create(self, user_id: str) -> CartDB:
        fresh = CartDB(user_id=user_id, items=[])
        try:
            doc = await self.collection.find_one_and_update(
                {"user_id": user_id},
                {"$setOnInsert": to_bson(fresh.model_dump(exclude={"id", "user_id"}))},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            # A concurrent upsert for the same user inserted first
            doc = await self.collection.find_one({"user_id": user_id})
        return cart_from_doc(doc)

    async def save_items(self, cart: CartDB) -> CartDB:
        now = utcnow()
        result = await self.collection.update_one(
            {"user_id": cart.user_id, "version": cart.version},
            {
                "$set": {"items": to_bson([i.model_dump() for i in cart.items]), "updated_at": now},
                "$inc": {"version": 1},
            },
        )
        if result.matched_count == 0:
            raise StaleWriteError("cart", cart.user_id)
        return cart.model_copy(update={"version": cart.version + 1, "updated_at": now})


class MongoOrderStore:
    def __init__(self, db):
        self.collection = db.orders

    async def create(self, order: OrderDB, uow: MongoUnitOfWork) -> OrderDB:
        result = await self.collection.insert_one(order_to_doc(order), session=uow.session)
        return order.model_copy(update={"id": str(result.inserted_id)})

    async def get(self, order_id: str, uow: Optional[MongoUnitOfWork] = None) -> Optional[OrderDB]:
        oid = str_to_oid(order_id)
        if oid is None:
            return None
        doc = await self.collection.find_one({"_id": oid}, session=_session(uow))
        return order_from_doc(doc) if doc else None

    async def update(
        self,
        order: OrderDB,
        uow: Optional[MongoUnitOfWork] = None,
        expected_status: Optional[OrderStatus] = None,
    ) -> OrderDB:
        oid = str_to_oid(order.id)
        if oid is None:
            raise OrderNotFoundError(order.id)
        query = {"_id": oid}
        if expected_status is not None:
            query["status"] = expected_status.value

        doc = await self.collection.find_one_and_update(
            query,
            {"$set": {"status": order.status.value, "updated_at": order.updated_at}},
            return_document=ReturnDocument.AFTER,
            session=_session(uow),
        )
        if doc is not None:
            return order_from_doc(doc)

        exists = await self.collection.count_documents({"_id": oid}, session=_session(uow))
        if not exists:
            raise OrderNotFoundError(order.id)
        raise StaleWriteError("order", order.id)

    async def list_by_user(self, user_id: str) -> List[OrderDB]:
        cursor = self.collection.find({"user_id": user_id}).sort("created_at", DESCENDING)
        return [order_from_doc(doc) async for doc in cursor]

    async def list_all(self, filters: OrderFilters, page: int, limit: int) -> Tuple[List[OrderDB], int]:
        query = {}
        if filters.status:
            query["status"] = filters.status.value
        if filters.user_id:
            query["user_id"] = filters.user_id

        skip = (page - 1) * limit
        total = await self.collection.count_documents(query)
        cursor = self.collection.find(query).sort("created_at", DESCENDING).skip(skip).limit(limit)
        docs = await cursor.to_list(length=limit)
        return [order_from_doc(doc) for doc in docs], total

    async def aggregate_by_status(self) -> List[StatusGroup]:
        cursor = self.collection.aggregate([
            {
                "$group": {
                    "_id": "$status",
                    "count": {"$sum": 1},
                    "total_amount": {"$sum": "$total_amount"},
                }
            }
        ])
        groups = {}
        async for doc in cursor:
            doc = from_bson(doc)
            status = OrderStatus(doc["_id"])
            groups[status] = StatusGroup(status=status, count=doc["count"], total_amount=doc["total_amount"])
        return [groups[s] for s in STATUS_ORDER if s in groups]


async def ensure_indexes(db):
    await db.carts.create_index("user_id", unique=True)
    await db.orders.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    await db.orders.create_index("status")
    await db.orders.create_index([("user_id", ASCENDING), ("status", ASCENDING)])
    await db.orders.create_index("items.product_id")
