"""Exceptions raised by the checkout and settlement pipeline.

Each error carries the HTTP status it maps to; the Flask error handler in
``src.main`` renders them with ``to_dict()``.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class CheckoutError(Exception):
    """Base exception for all checkout/payment errors."""

    status_code = 400
    code = "CHECKOUT_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(CheckoutError):
    """Raised when a request body is malformed or a field is out of range."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message, {"field": field} if field else None)


class NotFound(CheckoutError):
    status_code = 404
    code = "NOT_FOUND"


class ItemNotFound(NotFound):
    """Raised when a cart line references a book that does not exist."""

    code = "ITEM_NOT_FOUND"

    def __init__(self, book_id: Any):
        self.book_id = book_id
        super().__init__(f"Book not found: {book_id}", {"bookId": book_id})


class OrderNotFound(NotFound):
    code = "ORDER_NOT_FOUND"

    def __init__(self, order_ref: Any):
        self.order_ref = order_ref
        super().__init__(f"Order not found: {order_ref}", {"orderId": order_ref})


class InsufficientStock(CheckoutError):
    """Raised when a physical line asks for more units than are available."""

    code = "INSUFFICIENT_STOCK"

    def __init__(self, book_id: int, title: str, requested: int, available: int):
        self.book_id = book_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for '{title}': requested {requested}, available {available}",
            {"bookId": book_id, "requested": requested, "available": available},
        )


class PromotionInvalid(CheckoutError):
    """Raised when a discount or referral code cannot be applied."""

    code = "PROMOTION_INVALID"

    def __init__(self, promo_code: str, reason: str):
        self.promo_code = promo_code
        self.reason = reason
        super().__init__(f"Code {promo_code} cannot be applied: {reason}", {"promoCode": promo_code, "reason": reason})


class SignatureMismatch(CheckoutError):
    """Raised when an inbound gateway callback fails checksum verification."""

    code = "SIGNATURE_MISMATCH"

    def __init__(self, message: str = "Callback signature verification failed"):
        super().__init__(message)


class Forbidden(CheckoutError):
    status_code = 403
    code = "FORBIDDEN"


class GatewayMisconfigured(CheckoutError):
    """Raised when merchant credentials are missing from settings."""

    status_code = 500
    code = "GATEWAY_MISCONFIGURED"

    def __init__(self, missing: str):
        self.missing = missing
        super().__init__(f"Payment gateway is not configured: missing {missing}")


class GatewayError(CheckoutError):
    """Raised on a provider non-success answer or a transport failure."""

    status_code = 502
    code = "GATEWAY_ERROR"

    def __init__(self, operation: str, reason: str, http_status: Optional[int] = None):
        self.operation = operation
        self.reason = reason
        self.http_status = http_status
        super().__init__(
            "Payment gateway is unavailable, please try again",
            {"operation": operation, "reason": reason},
        )
