from fastapi import FastAPI, Depends, HTTPException, status, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from typing import Optional, List
import os
import sys

# Add the parent directory to sys.path to resolve shared imports
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "../../../")))

from shared.utils import (
    settings, utcnow, SuccessResponse, ErrorResponse, HealthResponse,
    ForbiddenException, require_auth
)
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware, limiter

from app.schemas import (
    CartItemAdd, CartItemUpdate, CartResponse,
    OrderResponse, OrderListResponse, OrderStatusUpdate, OrderStatisticsResponse, Pagination
)
from app.backend import Backend, create_backend
from app.carts import CartService
from app.engine import OrderTransactionEngine
from app.errors import ErrorKind, OrderError

# Setup Logging
logger = setup_logging("orders-service", settings.LOG_LEVEL)

app = FastAPI(title="Orders Service")

# Security Setup
setup_rate_limiting(app)
app.add_middleware(SecurityHeadersMiddleware)

# Middleware
app.add_middleware(RequestLoggingMiddleware, service_name="orders-service")

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def startup_backend():
    app.state.backend = create_backend(settings)
    await app.state.backend.prepare()
    logger.info(f"Orders service started with {settings.STORE_BACKEND} stores")

@app.on_event("shutdown")
async def shutdown_backend():
    app.state.backend.close()

@app.exception_handler(OrderError)
async def order_error_handler(request: Request, exc: OrderError):
    extra = {
        "request_id": getattr(request.state, "request_id", None),
        "error_code": exc.code,
        "error_kind": exc.kind.value,
    }
    if exc.kind == ErrorKind.TRANSIENT:
        logger.error(exc.message, extra=extra)
    else:
        logger.warning(exc.message, extra=extra)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=exc.message, details=exc.details()).model_dump(mode="json"),
    )

# --- Dependencies ---
def get_backend(request: Request) -> Backend:
    return request.app.state.backend

def get_engine(backend: Backend = Depends(get_backend)) -> OrderTransactionEngine:
    return backend.engine

def get_cart_service(backend: Backend = Depends(get_backend)) -> CartService:
    return backend.cart_service

async def get_current_user(request: Request, payload: dict = Depends(require_auth)) -> dict:
    request.state.user_id = payload["sub"]
    return payload

async def get_admin_user(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") != "admin":
        raise ForbiddenException("Admin access required")
    return user

# --- Endpoints ---

# Cart
@app.get("/cart", response_model=SuccessResponse[CartResponse])
async def get_cart(user: dict = Depends(get_current_user), carts: CartService = Depends(get_cart_service)):
    cart = await carts.get_cart(user["sub"])
    return SuccessResponse(data=CartResponse.from_cart(cart))

@app.post("/cart/items", response_model=SuccessResponse[CartResponse])
async def add_to_cart(
    item: CartItemAdd,
    user: dict = Depends(get_current_user),
    carts: CartService = Depends(get_cart_service)
):
    cart = await carts.add_item(user["sub"], item.product_id, item.quantity)
    return SuccessResponse(data=CartResponse.from_cart(cart), message="Item added to cart")

@app.put("/cart/items/{product_id}", response_model=SuccessResponse[CartResponse])
async def update_cart_item(
    product_id: str,
    update: CartItemUpdate,
    user: dict = Depends(get_current_user),
    carts: CartService = Depends(get_cart_service)
):
    cart = await carts.update_item(user["sub"], product_id, update.quantity)
    return SuccessResponse(data=CartResponse.from_cart(cart))

@app.delete("/cart/items/{product_id}", response_model=SuccessResponse[CartResponse])
async def remove_cart_item(
    product_id: str,
    user: dict = Depends(get_current_user),
    carts: CartService = Depends(get_cart_service)
):
    cart = await carts.remove_item(user["sub"], product_id)
    return SuccessResponse(data=CartResponse.from_cart(cart))

@app.delete("/cart", response_model=SuccessResponse[CartResponse])
async def clear_cart(user: dict = Depends(get_current_user), carts: CartService = Depends(get_cart_service)):
    cart = await carts.clear(user["sub"])
    return SuccessResponse(data=CartResponse.from_cart(cart), message="Cart cleared")

# Orders
@app.post("/orders", response_model=SuccessResponse[OrderResponse], status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.ORDER_RATE_LIMIT)
async def create_order(
    request: Request,
    user: dict = Depends(get_current_user),
    engine: OrderTransactionEngine = Depends(get_engine)
):
    order = await engine.place_order(user["sub"])
    return SuccessResponse(data=OrderResponse.from_order(order), message="Order created successfully")

@app.get("/orders", response_model=SuccessResponse[List[OrderResponse]])
async def list_my_orders(
    user: dict = Depends(get_current_user),
    engine: OrderTransactionEngine = Depends(get_engine)
):
    orders = await engine.get_user_orders(user["sub"])
    return SuccessResponse(data=[OrderResponse.from_order(o) for o in orders])

@app.get("/orders/{order_id}", response_model=SuccessResponse[OrderResponse])
async def get_order(
    order_id: str,
    user: dict = Depends(get_current_user),
    engine: OrderTransactionEngine = Depends(get_engine)
):
    order = await engine.get_order(order_id, user["sub"], is_admin=user.get("role") == "admin")
    return SuccessResponse(data=OrderResponse.from_order(order))

@app.patch("/orders/{order_id}/cancel", response_model=SuccessResponse[OrderResponse])
@limiter.limit(settings.ORDER_RATE_LIMIT)
async def cancel_order(
    order_id: str,
    request: Request,
    user: dict = Depends(get_current_user),
    engine: OrderTransactionEngine = Depends(get_engine)
):
    order = await engine.cancel_order(order_id, user["sub"])
    return SuccessResponse(data=OrderResponse.from_order(order), message="Order cancelled successfully")

# Admin
@app.get("/admin/orders", response_model=SuccessResponse[OrderListResponse])
async def list_all_orders(
    status_filter: Optional[str] = Query(None, alias="status"),
    user_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    admin: dict = Depends(get_admin_user),
    engine: OrderTransactionEngine = Depends(get_engine)
):
    orders, total, page, limit = await engine.list_orders(status_filter, user_id, page, limit)
    return SuccessResponse(data=OrderListResponse(
        orders=[OrderResponse.from_order(o) for o in orders],
        pagination=Pagination.build(page, limit, total)
    ))

@app.get("/admin/orders/statistics", response_model=SuccessResponse[OrderStatisticsResponse])
async def order_statistics(
    admin: dict = Depends(get_admin_user),
    engine: OrderTransactionEngine = Depends(get_engine)
):
    stats = await engine.get_order_statistics()
    return SuccessResponse(data=OrderStatisticsResponse(**stats.model_dump()))

@app.patch("/admin/orders/{order_id}/status", response_model=SuccessResponse[OrderResponse])
async def update_order_status(
    order_id: str,
    status_update: OrderStatusUpdate,
    admin: dict = Depends(get_admin_user),
    engine: OrderTransactionEngine = Depends(get_engine)
):
    order = await engine.update_order_status(order_id, status_update.status)
    return SuccessResponse(data=OrderResponse.from_order(order), message="Order status updated successfully")

@app.get("/health", response_model=HealthResponse)
async def health_check(backend: Backend = Depends(get_backend)):
    db_status = await backend.transactions.ping()

    if db_status == "disconnected":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service Unhealthy"
        )

    return HealthResponse(
        service="orders-service",
        status="healthy",
        timestamp=utcnow(),
        version="1.0.0",
        database=db_status,
        dependencies={"store_backend": settings.STORE_BACKEND}
    )
