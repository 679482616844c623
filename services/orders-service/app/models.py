from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, List, Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator

from shared.utils import utcnow


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


# Strictly forward, no skips; delivered and cancelled are terminal.
VALID_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

STATUS_ORDER = list(OrderStatus)


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return new in VALID_TRANSITIONS[current]


def is_terminal(status: OrderStatus) -> bool:
    return not VALID_TRANSITIONS[status]


class ProductDB(BaseModel):
    """Inventory view of a catalog product. Only quantity/in_stock are written here."""

    id: Optional[str] = Field(None, alias="_id")
    name: str
    price: Decimal = Field(..., ge=0)
    quantity: int = Field(0, ge=0)
    in_stock: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True)


class CartItemDB(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    price: Decimal = Field(..., ge=0) # Snapshot
    name: Optional[str] = None


class CartDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    user_id: str
    items: List[CartItemDB] = []
    version: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(populate_by_name=True)

    @property
    def total(self) -> Decimal:
        return sum((i.price * i.quantity for i in self.items), Decimal("0"))


class OrderItemDB(BaseModel):
    product_id: str
    name: str
    price: Decimal = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    subtotal: Decimal = Field(..., ge=0)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def snapshot(cls, product: ProductDB, quantity: int) -> "OrderItemDB":
        return cls(
            product_id=product.id,
            name=product.name,
            price=product.price,
            quantity=quantity,
            subtotal=product.price * quantity,
        )

    @model_validator(mode="after")
    def check_subtotal(self):
        if self.subtotal != self.price * self.quantity:
            raise ValueError("subtotal must equal price * quantity")
        return self


class OrderDB(BaseModel):
    id: Optional[str] = Field(None, alias="_id")
    user_id: str
    items: List[OrderItemDB] = Field(..., min_length=1)
    total_amount: Decimal = Field(..., ge=0)
    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="after")
    def check_total(self):
        if self.total_amount != sum((i.subtotal for i in self.items), Decimal("0")):
            raise ValueError("total_amount must equal the sum of item subtotals")
        return self


class StatusGroup(BaseModel):
    status: OrderStatus
    count: int
    total_amount: Decimal


class OrderStatistics(BaseModel):
    total_orders: int
    total_revenue: Decimal
    by_status: List[StatusGroup]


class OrderFilters(BaseModel):
    status: Optional[OrderStatus] = None
    user_id: Optional[str] = None
