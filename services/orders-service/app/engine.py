"""Order placement, cancellation and lifecycle.

Placement and cancellation each run in a single unit of work spanning the
product, cart and order stores: either every write becomes visible or none
does. Failures are never retried here; transient aborts surface as
``TransactionAbortedError`` and the caller decides.
"""
import logging
from decimal import Decimal
from typing import List, Optional, Tuple

from shared.utils import utcnow
from app.errors import (
    EmptyCartError,
    InsufficientStockError,
    InvalidCancelStateError,
    InvalidStatusError,
    InvalidStatusTransitionError,
    OrderAccessDeniedError,
    OrderNotFoundError,
    ProductNotFoundError,
    UnauthorizedCancelError,
)
from app.models import (
    OrderDB,
    OrderFilters,
    OrderItemDB,
    OrderStatistics,
    OrderStatus,
    can_transition,
)
from app.stores import CartStore, OrderStore, ProductInventoryStore, TransactionManager

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


def parse_status(value) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise InvalidStatusError(value, [s.value for s in OrderStatus])


class OrderTransactionEngine:
    def __init__(
        self,
        products: ProductInventoryStore,
        carts: CartStore,
        orders: OrderStore,
        transactions: TransactionManager,
    ):
        self.products = products
        self.carts = carts
        self.orders = orders
        self.transactions = transactions

    async def place_order(self, user_id: str) -> OrderDB:
        """Turn the user's cart into a pending order.

        Products are claimed in id order, then stock for every line is
        checked and decremented in cart order. The order is created from
        price/name snapshots and the cart is emptied, all in one unit of work.
        """
        async with self.transactions.begin() as uow:
            cart = await self.carts.get(user_id, uow)
            if cart is None or not cart.items:
                raise EmptyCartError(user_id)
            await self.products.reserve(sorted({line.product_id for line in cart.items}), uow)

            items: List[OrderItemDB] = []
            for line in cart.items:
                product = await self.products.get(line.product_id, uow)
                if product is None:
                    raise ProductNotFoundError(line.product_id)
                if not product.in_stock or product.quantity < line.quantity:
                    raise InsufficientStockError(product.id, product.name, product.quantity, line.quantity)

                updated = await self.products.decrement_quantity(product.id, line.quantity, uow)
                items.append(OrderItemDB.snapshot(updated, line.quantity))

            total_amount = sum((item.subtotal for item in items), Decimal("0"))
            order = await self.orders.create(
                OrderDB(user_id=user_id, items=items, total_amount=total_amount, status=OrderStatus.PENDING),
                uow,
            )
            await self.carts.clear(user_id, uow, expected_version=cart.version)

        logger.info(
            "Order placed",
            extra={
                "order_id": order.id,
                "user_id": user_id,
                "item_count": len(items),
                "total_amount": total_amount,
            },
        )
        return order

    async def cancel_order(self, order_id: str, requesting_user_id: str) -> OrderDB:
        """Cancel a pending order owned by the caller and put its stock back."""
        async with self.transactions.begin() as uow:
            order = await self.orders.get(order_id, uow)
            if order is None:
                raise OrderNotFoundError(order_id)
            if order.user_id != requesting_user_id:
                raise UnauthorizedCancelError(order_id)
            if order.status != OrderStatus.PENDING:
                raise InvalidCancelStateError(order_id, order.status)
            await self.products.reserve(sorted({item.product_id for item in order.items}), uow)

            for item in order.items:
                restored = await self.products.restore_quantity(item.product_id, item.quantity, uow)
                if restored is None:
                    logger.warning(
                        "Product removed from catalog, stock not restored",
                        extra={"order_id": order_id, "product_id": item.product_id},
                    )

            cancelled = await self.orders.update(
                order.model_copy(update={"status": OrderStatus.CANCELLED, "updated_at": utcnow()}),
                uow,
                expected_status=order.status,
            )

        logger.info("Order cancelled", extra={"order_id": order_id, "user_id": requesting_user_id})
        return cancelled

    async def update_order_status(self, order_id: str, new_status) -> OrderDB:
        """Administrative transition, a single-document conditional write."""
        requested = parse_status(new_status)
        order = await self.orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        if not can_transition(order.status, requested):
            raise InvalidStatusTransitionError(order_id, order.status, requested)

        updated = await self.orders.update(
            order.model_copy(update={"status": requested, "updated_at": utcnow()}),
            expected_status=order.status,
        )
        logger.info(
            "Order status updated",
            extra={"order_id": order_id, "status": requested.value},
        )
        return updated

    async def get_order_statistics(self) -> OrderStatistics:
        groups = await self.orders.aggregate_by_status()
        return OrderStatistics(
            total_orders=sum(g.count for g in groups),
            total_revenue=sum(
                (g.total_amount for g in groups if g.status != OrderStatus.CANCELLED),
                Decimal("0"),
            ),
            by_status=groups,
        )

    # --- Queries ---

    async def get_user_orders(self, user_id: str) -> List[OrderDB]:
        return await self.orders.list_by_user(user_id)

    async def get_order(self, order_id: str, requesting_user_id: str, is_admin: bool = False) -> OrderDB:
        order = await self.orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        if not is_admin and order.user_id != requesting_user_id:
            raise OrderAccessDeniedError(order_id)
        return order

    async def list_orders(
        self,
        status: Optional[str] = None,
        user_id: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[OrderDB], int, int, int]:
        """Admin listing, newest first. Returns (orders, total, page, limit)."""
        filters = OrderFilters(
            status=parse_status(status) if status else None,
            user_id=user_id or None,
        )
        page = max(1, page)
        limit = min(MAX_PAGE_SIZE, max(1, limit))
        orders, total = await self.orders.list_all(filters, page, limit)
        return orders, total, page, limit
