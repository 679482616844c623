import logging

from app.errors import (
    CartItemNotFoundError,
    InsufficientStockError,
    InvalidQuantityError,
    ProductNotFoundError,
)
from app.models import CartDB, CartItemDB, ProductDB
from app.stores import CartStore, ProductInventoryStore

logger = logging.getLogger(__name__)


class CartService:
    """Cart editing. Never touches inventory; stock is only reserved by placing an order."""

    def __init__(self, carts: CartStore, products: ProductInventoryStore):
        self.carts = carts
        self.products = products

    async def get_cart(self, user_id: str) -> CartDB:
        return await self.carts.get_or_create(user_id)

    async def add_item(self, user_id: str, product_id: str, quantity: int) -> CartDB:
        if quantity < 1:
            raise InvalidQuantityError(quantity)
        product = await self._available_product(product_id)
        cart = await self.carts.get_or_create(user_id)

        for item in cart.items:
            if item.product_id == product_id:
                self._check_stock(product, item.quantity + quantity)
                item.quantity += quantity
                # Refresh the snapshot on every add
                item.price = product.price
                item.name = product.name
                break
        else:
            self._check_stock(product, quantity)
            cart.items.append(
                CartItemDB(product_id=product_id, quantity=quantity, price=product.price, name=product.name)
            )

        logger.info("Cart item added", extra={"user_id": user_id, "product_id": product_id})
        return await self.carts.save_items(cart)

    async def update_item(self, user_id: str, product_id: str, quantity: int) -> CartDB:
        if quantity < 1:
            raise InvalidQuantityError(quantity)
        cart = await self.carts.get_or_create(user_id)

        item = next((i for i in cart.items if i.product_id == product_id), None)
        if item is None:
            raise CartItemNotFoundError(product_id)
        product = await self._available_product(product_id)
        self._check_stock(product, quantity)
        item.quantity = quantity

        return await self.carts.save_items(cart)

    async def remove_item(self, user_id: str, product_id: str) -> CartDB:
        cart = await self.carts.get_or_create(user_id)
        cart.items = [i for i in cart.items if i.product_id != product_id]
        return await self.carts.save_items(cart)

    async def clear(self, user_id: str) -> CartDB:
        cart = await self.carts.get_or_create(user_id)
        cart.items = []
        return await self.carts.save_items(cart)

    async def _available_product(self, product_id: str) -> ProductDB:
        product = await self.products.get(product_id)
        if product is None:
            raise ProductNotFoundError(product_id)
        return product

    @staticmethod
    def _check_stock(product: ProductDB, wanted: int):
        if not product.in_stock or product.quantity < wanted:
            raise InsufficientStockError(product.id, product.name, product.quantity, wanted)
