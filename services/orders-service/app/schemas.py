import math
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from decimal import Decimal
from datetime import datetime
from shared.security_config import sanitize_input

from app.models import CartDB, OrderDB, OrderStatus

class CartItemAdd(BaseModel):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)

    @field_validator('product_id')
    def sanitize_product_id(cls, v):
        return sanitize_input(v)

class CartItemUpdate(BaseModel):
    quantity: int = Field(..., gt=0)

class CartItemResponse(BaseModel):
    product_id: str
    quantity: int
    price: Decimal
    name: Optional[str] = None

class CartResponse(BaseModel):
    user_id: str
    items: List[CartItemResponse]
    updated_at: datetime
    total: Decimal

    @classmethod
    def from_cart(cls, cart: CartDB) -> "CartResponse":
        return cls(
            user_id=cart.user_id,
            items=[CartItemResponse(**i.model_dump()) for i in cart.items],
            updated_at=cart.updated_at,
            total=cart.total,
        )

class OrderStatusUpdate(BaseModel):
    # Kept as a plain string so unknown values reach the engine and come back as 400
    status: str

    @field_validator('status')
    def sanitize_status(cls, v):
        return sanitize_input(v)

class OrderItemResponse(BaseModel):
    product_id: str
    name: str
    price: Decimal
    quantity: int
    subtotal: Decimal

class OrderResponse(BaseModel):
    id: str
    user_id: str
    items: List[OrderItemResponse]
    total_amount: Decimal
    status: OrderStatus
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_order(cls, order: OrderDB) -> "OrderResponse":
        return cls(**order.model_dump(exclude={"items"}), items=[
            OrderItemResponse(**i.model_dump()) for i in order.items
        ])

class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        return cls(page=page, limit=limit, total=total, pages=math.ceil(total / limit))

class OrderListResponse(BaseModel):
    orders: List[OrderResponse]
    pagination: Pagination

class StatusGroupResponse(BaseModel):
    status: OrderStatus
    count: int
    total_amount: Decimal

class OrderStatisticsResponse(BaseModel):
    total_orders: int
    total_revenue: Decimal
    by_status: List[StatusGroupResponse]
