"""Typed failures raised by the order engine and its stores.

Callers branch on the exception class or on ``kind``; messages are for
humans only. ``details()`` is what ends up in the HTTP error body.
"""
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import status


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    AUTHORIZATION = "authorization"
    TRANSIENT = "transient"


class OrderError(Exception):
    kind: ErrorKind = ErrorKind.VALIDATION
    code: str = "order_error"
    status_code: int = status.HTTP_400_BAD_REQUEST
    retryable: bool = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def context(self) -> Dict[str, Any]:
        return {}

    def details(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "code": self.code,
            "retryable": self.retryable,
            **self.context(),
        }


# --- Validation ---

class EmptyCartError(OrderError):
    code = "empty_cart"

    def __init__(self, user_id: str):
        super().__init__("Cannot create order from empty cart")
        self.user_id = user_id


class InvalidStatusError(OrderError):
    code = "invalid_status"

    def __init__(self, value: Any, allowed):
        super().__init__(f"Invalid status '{value}'. Must be one of: {', '.join(allowed)}")
        self.value = value
        self.allowed = list(allowed)

    def context(self):
        return {"value": self.value, "allowed": self.allowed}


class InvalidQuantityError(OrderError):
    code = "invalid_quantity"

    def __init__(self, quantity: int):
        super().__init__("Quantity must be at least 1")
        self.quantity = quantity


# --- Conflict ---

class InsufficientStockError(OrderError):
    kind = ErrorKind.CONFLICT
    code = "insufficient_stock"

    def __init__(self, product_id: str, name: Optional[str], available: int, requested: int):
        super().__init__(
            f"Insufficient stock for {name or product_id}. "
            f"Available: {available}, Requested: {requested}"
        )
        self.product_id = product_id
        self.name = name
        self.available = available
        self.requested = requested

    def context(self):
        return {
            "product_id": self.product_id,
            "available": self.available,
            "requested": self.requested,
        }


class InvalidCancelStateError(OrderError):
    kind = ErrorKind.CONFLICT
    code = "invalid_cancel_state"

    def __init__(self, order_id: str, current_status):
        current = getattr(current_status, "value", current_status)
        super().__init__(
            f"Cannot cancel order with status: {current}. Only pending orders can be cancelled."
        )
        self.order_id = order_id
        self.current_status = current

    def context(self):
        return {"order_id": self.order_id, "current_status": self.current_status}


class InvalidStatusTransitionError(OrderError):
    kind = ErrorKind.CONFLICT
    code = "invalid_status_transition"

    def __init__(self, order_id: str, current_status, requested_status):
        current = getattr(current_status, "value", current_status)
        requested = getattr(requested_status, "value", requested_status)
        super().__init__(f"Invalid status transition from {current} to {requested}")
        self.order_id = order_id
        self.current_status = current
        self.requested_status = requested

    def context(self):
        return {
            "order_id": self.order_id,
            "current_status": self.current_status,
            "requested_status": self.requested_status,
        }


class StaleWriteError(OrderError):
    """The document changed between read and conditional write."""

    kind = ErrorKind.CONFLICT
    code = "stale_write"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, collection: str, key: str):
        super().__init__(f"{collection} {key} was modified concurrently, reload and retry")
        self.collection = collection
        self.key = key

    def context(self):
        return {"collection": self.collection, "key": self.key}


# --- Not found ---

class ProductNotFoundError(OrderError):
    kind = ErrorKind.NOT_FOUND
    code = "product_not_found"
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, product_id: str):
        super().__init__(f"Product {product_id} not found")
        self.product_id = product_id

    def context(self):
        return {"product_id": self.product_id}


class OrderNotFoundError(OrderError):
    kind = ErrorKind.NOT_FOUND
    code = "order_not_found"
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, order_id: str):
        super().__init__("Order not found")
        self.order_id = order_id

    def context(self):
        return {"order_id": self.order_id}


class CartItemNotFoundError(OrderError):
    kind = ErrorKind.NOT_FOUND
    code = "cart_item_not_found"
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, product_id: str):
        super().__init__("Item not found in cart")
        self.product_id = product_id

    def context(self):
        return {"product_id": self.product_id}


# --- Authorization ---

class UnauthorizedCancelError(OrderError):
    kind = ErrorKind.AUTHORIZATION
    code = "unauthorized_cancel"
    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, order_id: str):
        super().__init__("Unauthorized to cancel this order")
        self.order_id = order_id


class OrderAccessDeniedError(OrderError):
    kind = ErrorKind.AUTHORIZATION
    code = "order_access_denied"
    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, order_id: str):
        super().__init__("Access denied. You can only view your own orders.")
        self.order_id = order_id


# --- Transient ---

class TransactionAbortedError(OrderError):
    """The unit of work could not commit. Nothing it wrote is visible.

    When ``commit_unknown`` is set the commit may or may not have been
    applied and the caller has to check state before resubmitting.
    """

    kind = ErrorKind.TRANSIENT
    code = "transaction_aborted"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True

    def __init__(self, reason: str, commit_unknown: bool = False):
        super().__init__(f"Transaction aborted: {reason}")
        self.reason = reason
        self.commit_unknown = commit_unknown

    def context(self):
        return {"commit_unknown": self.commit_unknown}
