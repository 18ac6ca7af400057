"""Checkout and settlement error taxonomy.

Every error carries the HTTP status the API layer renders it with, a stable
machine-readable ``code`` and a ``details`` mapping with enough context for
the caller to retry (which product, how much is available, ...).
"""
from typing import Any, Dict, Optional


class CheckoutError(Exception):
    status_code: int = 400
    code: str = "checkout_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class InsufficientStock(CheckoutError):
    status_code = 409
    code = "insufficient_stock"

    def __init__(self, product_id: int, requested: int, available: int, name: Optional[str] = None):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        label = name or f"product {product_id}"
        super().__init__(
            f"Insufficient stock for {label}. Only {available} available",
            {"product_id": product_id, "requested": requested, "available": available},
        )


class InsufficientOnHand(CheckoutError):
    status_code = 409
    code = "insufficient_on_hand"

    def __init__(self, product_id: int, requested: int, on_hand: int):
        self.product_id = product_id
        self.requested = requested
        self.on_hand = on_hand
        super().__init__(
            f"Cannot deduct {requested} of product {product_id}: only {on_hand} on hand",
            {"product_id": product_id, "requested": requested, "on_hand": on_hand},
        )


class ProductUnavailable(CheckoutError):
    status_code = 400
    code = "product_unavailable"

    def __init__(self, product_id: int, name: Optional[str] = None):
        self.product_id = product_id
        super().__init__(
            f"Product {name or product_id} is not available",
            {"product_id": product_id},
        )


class EmptyCart(CheckoutError):
    status_code = 400
    code = "empty_cart"

    def __init__(self, user_id: int):
        super().__init__("Cart is empty", {"user_id": user_id})


class OrderNotFound(CheckoutError):
    status_code = 404
    code = "order_not_found"

    def __init__(self, **lookup: Any):
        super().__init__("Order not found", lookup)


class InvalidStateTransition(CheckoutError):
    status_code = 409
    code = "invalid_state_transition"

    def __init__(self, message: str, current: Optional[str] = None, requested: Optional[str] = None):
        details = {}
        if current is not None:
            details["current"] = current
        if requested is not None:
            details["requested"] = requested
        super().__init__(message, details)


class InvalidSignature(CheckoutError):
    status_code = 401
    code = "invalid_signature"

    def __init__(self):
        super().__init__("Invalid signature")


class DuplicatePaymentEvent(CheckoutError):
    """Raised inside settlement when an outcome was already applied.

    Never leaves the settlement processor: it is converted into a no-op that
    returns the unchanged order.
    """
    status_code = 200
    code = "duplicate_payment_event"

    def __init__(self, reference: str, payment_status: str):
        self.reference = reference
        self.payment_status = payment_status
        super().__init__(
            f"Payment {reference} already {payment_status}",
            {"reference": reference, "payment_status": payment_status},
        )


class GatewayUnavailable(CheckoutError):
    status_code = 502
    code = "gateway_unavailable"

    def __init__(self, message: str = "Payment gateway unavailable", upstream_status: Optional[int] = None):
        self.upstream_status = upstream_status
        details = {"upstream_status": upstream_status} if upstream_status is not None else {}
        super().__init__(message, details)


class PricingMismatch(CheckoutError):
    status_code = 500
    code = "pricing_mismatch"

    def __init__(self, expected, actual):
        super().__init__(
            f"Order total {actual} does not match computed total {expected}",
            {"expected": str(expected), "actual": str(actual)},
        )


class InvalidRefundAmount(CheckoutError):
    status_code = 400
    code = "invalid_refund_amount"

    def __init__(self, amount, total):
        super().__init__(
            f"Refund amount {amount} must be greater than 0 and at most the order total {total}",
            {"amount": str(amount), "total": str(total)},
        )
