"""Store interfaces the order engine depends on.

Every write that must be part of an atomic order operation takes the unit of
work explicitly. Reads accept it optionally so they observe the writes made
earlier in the same unit.
"""
from typing import AsyncContextManager, List, Optional, Protocol, Tuple

from app.models import CartDB, OrderDB, OrderFilters, OrderStatus, ProductDB, StatusGroup


class UnitOfWork(Protocol):
    """Opaque handle for one atomic unit. Backends attach their own state."""


class TransactionManager(Protocol):
    def begin(self) -> AsyncContextManager[UnitOfWork]:
        """Commit on normal exit, roll back and re-raise on exception."""
        ...

    async def ping(self) -> str:
        ...


class ProductInventoryStore(Protocol):
    async def get(self, product_id: str, uow: Optional[UnitOfWork] = None) -> Optional[ProductDB]:
        ...

    async def reserve(self, product_ids: List[str], uow: UnitOfWork) -> None:
        """Claim the products for ``uow`` before any of them is written.

        Callers pass ids in sorted order so competing units claim them in
        the same sequence.
        """
        ...

    async def decrement_quantity(self, product_id: str, amount: int, uow: UnitOfWork) -> ProductDB:
        """Raises InsufficientStockError instead of going below zero."""
        ...

    async def restore_quantity(self, product_id: str, amount: int, uow: UnitOfWork) -> Optional[ProductDB]:
        """Returns None when the product no longer exists."""
        ...


class CartStore(Protocol):
    async def get(self, user_id: str, uow: Optional[UnitOfWork] = None) -> Optional[CartDB]:
        ...

    async def clear(self, user_id: str, uow: UnitOfWork, expected_version: Optional[int] = None) -> None:
        ...

    async def get_or_create(self, user_id: str) -> CartDB:
        ...

    async def save_items(self, cart: CartDB) -> CartDB:
        """Replace the item list if ``cart.version`` is still current."""
        ...


class OrderStore(Protocol):
    async def create(self, order: OrderDB, uow: UnitOfWork) -> OrderDB:
        ...

    async def get(self, order_id: str, uow: Optional[UnitOfWork] = None) -> Optional[OrderDB]:
        ...

    async def update(
        self,
        order: OrderDB,
        uow: Optional[UnitOfWork] = None,
        expected_status: Optional[OrderStatus] = None,
    ) -> OrderDB:
        ...

    async def list_by_user(self, user_id: str) -> List[OrderDB]:
        ...

    async def list_all(self, filters: OrderFilters, page: int, limit: int) -> Tuple[List[OrderDB], int]:
        ...

    async def aggregate_by_status(self) -> List[StatusGroup]:
        ...
