"""Payment settlement: the only writer of terminal payment outcomes.

Order state machine (payment status / order status)::

    pending/pending --success--> completed/confirmed --refund--> refunded/cancelled
    pending/pending --failure--> failed/failed
    pending/pending --cancel---> pending/cancelled

Both entry points (synchronous verify and the gateway webhook) converge on
``apply_success`` / ``apply_failure``. Those flip the order with a
compare-and-swap on ``(payment_status, status) == ('pending', 'pending')``
inside the settlement transaction, so a duplicate webhook or a verify call
racing a webhook for the same reference applies the outcome exactly once:
the loser sees zero rows updated and becomes a no-op.

The gateway is never called while a database transaction is open.
"""
from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Dict, Any
import json
import threading

from sqlalchemy.orm import Session

from checkout_service.core_settings import get_settings, Settings
from checkout_service.domain.models import Order, OrderStatus, PaymentStatus, utcnow
from checkout_service.domain.errors import (
    CheckoutError, DuplicatePaymentEvent, GatewayUnavailable, InvalidSignature,
    InvalidStateTransition, InvalidRefundAmount,
)
from checkout_service.infrastructure.paystack import PaystackClient, to_minor_units
from .cart import CartSnapshot
from .inventory import InventoryStore
from .orders import OrderLedger
from shared.core import get_logger, set_request_context

logger = get_logger(__name__)

PENDING = {"payment_status": PaymentStatus.PENDING.value, "status": OrderStatus.PENDING.value}


class SettlementMetrics:
    """Process-wide counters surfaced on /metrics.

    The webhook always acknowledges the gateway, so failures inside it are
    only visible here and in the logs.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._counts = Counter()

    def incr(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counts[name] += amount

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return {
                name: self._counts.get(name, 0)
                for name in (
                    "settlements_applied", "duplicate_events", "stale_events",
                    "webhook_errors", "ignored_events", "invalid_signatures",
                    "refunds_completed", "refunds_manual",
                )
            }

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()


settlement_metrics = SettlementMetrics()


@dataclass
class SettlementResult:
    order: Order
    outcome: str  # "success" | "failed"
    applied: bool
    reason: Optional[str] = None


@dataclass
class RefundResult:
    order: Order
    refunded: bool
    message: str
    instructions: list = field(default_factory=list)


def manual_refund_instructions(order: Order) -> list:
    return [
        "1. Log in to Paystack Dashboard",
        "2. Go to Transactions",
        f"3. Find transaction: {order.transaction_id}",
        "4. Click Refund",
        "5. Enter amount and reason",
        "6. Confirm refund",
    ]


class StaleSettlement(CheckoutError):
    """Order left the expected state before an outcome or refund could be recorded."""
    status_code = 409
    code = "stale_settlement"


class SettlementProcessor:
    def __init__(self, db: Session, gateway: PaystackClient, settings: Optional[Settings] = None,
                 metrics: SettlementMetrics = settlement_metrics):
        self.db = db
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.metrics = metrics
        self.ledger = OrderLedger(db)
        self.inventory = InventoryStore(db)
        self.carts = CartSnapshot(db)

    def _end_read(self) -> None:
        # Close the read transaction before talking to the gateway
        self.db.commit()

    # --- payment initialization ---

    def initialize_payment(self, order_id: int, user_id: int, email: str) -> Dict[str, str]:
        order = self.ledger.get(order_id, user_id=user_id)
        if order.payment_status == PaymentStatus.COMPLETED.value:
            raise InvalidStateTransition("Order has already been paid", current=order.payment_status)
        if order.status in (OrderStatus.CANCELLED.value, OrderStatus.FAILED.value):
            raise InvalidStateTransition("Cannot pay for cancelled or failed order", current=order.status)
        self._end_read()

        set_request_context(payment_reference=order.payment_reference)
        data = self.gateway.initialize(
            email,
            order.total,
            order.payment_reference,
            {
                "order_id": str(order.id),
                "order_number": order.order_number,
                "user_id": str(user_id),
                "cancel_action": f"{self.settings.FRONTEND_URL}/orders",
            },
        )
        logger.info(f"Payment initialized for order {order.order_number}")
        return data

    # --- outcome transitions ---

    def _guard(self, order: Order, target: PaymentStatus) -> None:
        """Idempotency guard: raise unless the order is still pending/pending."""
        if order.payment_status == target.value:
            raise DuplicatePaymentEvent(order.payment_reference, order.payment_status)
        if order.payment_status != PaymentStatus.PENDING.value or order.status != OrderStatus.PENDING.value:
            raise StaleSettlement(
                f"Order {order.order_number} is {order.status}/{order.payment_status}; "
                f"{target.value} outcome not applied",
                {"reference": order.payment_reference, "status": order.status,
                 "payment_status": order.payment_status},
            )

    def _settle(self, reference: str, target: PaymentStatus, values: Dict[str, Any],
                apply, reason: Optional[str] = None) -> SettlementResult:
        outcome = "success" if target == PaymentStatus.COMPLETED else "failed"
        set_request_context(payment_reference=reference)
        order = self.ledger.get_by_reference(reference)
        try:
            self._guard(order, target)
            if not self.ledger.compare_and_set(order, PENDING, **values):
                # Lost the race; the refreshed row tells us why
                self._guard(order, target)
                raise StaleSettlement(f"Order {order.order_number} changed concurrently")
            apply(order)
            self.db.commit()
        except DuplicatePaymentEvent as exc:
            self.db.rollback()
            self.metrics.incr("duplicate_events")
            logger.info(f"Payment already processed: {exc.message}")
            return SettlementResult(order, outcome, applied=False)
        except StaleSettlement as exc:
            self.db.rollback()
            self.metrics.incr("stale_events")
            logger.warning(f"Manual reconciliation needed: {exc.message}", extra={"extra_fields": exc.details})
            return SettlementResult(order, outcome, applied=False, reason=exc.message)
        except Exception:
            self.db.rollback()
            raise
        self.metrics.incr("settlements_applied")
        return SettlementResult(order, outcome, applied=True, reason=reason)

    def apply_success(self, reference: str, transaction_id: Optional[str]) -> SettlementResult:
        def confirm(order: Order) -> None:
            order.record(OrderStatus.CONFIRMED, "Payment confirmed")
            for item in order.items:
                self.inventory.deduct(item.product_id, item.quantity)
            self.carts.clear(order.user_id)
            logger.info(f"Payment processed successfully: {reference}")

        values = {
            "payment_status": PaymentStatus.COMPLETED.value,
            "status": OrderStatus.CONFIRMED.value,
            "transaction_id": transaction_id,
            "paid_at": utcnow(),
        }
        return self._settle(reference, PaymentStatus.COMPLETED, values, confirm)

    def apply_failure(self, reference: str, reason: Optional[str] = None) -> SettlementResult:
        reason = reason or "Payment failed"

        def fail(order: Order) -> None:
            order.record(OrderStatus.FAILED, reason)
            for item in order.items:
                self.inventory.release(item.product_id, item.quantity)
            logger.info(f"Payment marked as failed: {reference} ({reason})")

        values = {"payment_status": PaymentStatus.FAILED.value, "status": OrderStatus.FAILED.value}
        return self._settle(reference, PaymentStatus.FAILED, values, fail, reason=reason)

    # --- entry points ---

    def verify_payment(self, reference: str, user_id: Optional[int] = None) -> SettlementResult:
        """Ask the gateway for the outcome of ``reference`` and apply it.

        With ``user_id`` the reference must belong to that buyer; ownership is
        checked before the gateway is contacted.
        """
        set_request_context(payment_reference=reference)
        if user_id is not None:
            self.ledger.get_by_reference(reference, user_id=user_id)
            self._end_read()
        result = self.gateway.verify(reference)
        if result.succeeded:
            settled = self.apply_success(reference, result.transaction_id)
            expected = to_minor_units(settled.order.total)
            if result.amount and result.amount != expected:
                logger.warning(
                    f"Paid amount mismatch for {reference}",
                    extra={"extra_fields": {"paid": result.amount, "expected": expected}},
                )
            return settled
        return self.apply_failure(reference, result.gateway_response or f"Payment {result.status}")

    def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Authenticate and apply one gateway notification.

        Only a bad signature is surfaced. Everything after authentication is
        acknowledged with success so the gateway does not retry-storm; errors
        go to the log and the ``webhook_errors`` counter.
        """
        if not self.gateway.verify_signature(raw_body, signature):
            self.metrics.incr("invalid_signatures")
            logger.warning("Webhook rejected: invalid signature")
            raise InvalidSignature()

        try:
            event = json.loads(raw_body)
            name = event.get("event")
            data = event.get("data") or {}
            reference = data.get("reference")
            if reference:
                set_request_context(payment_reference=reference)

            if name == "charge.success":
                transaction_id = data.get("id")
                self.apply_success(reference, str(transaction_id) if transaction_id is not None else None)
            elif name == "charge.failed":
                self.apply_failure(reference, data.get("gateway_response") or data.get("gatewayResponse"))
            elif name in ("transfer.success", "transfer.failed", "refund.processed", "refund.failed"):
                self.metrics.incr("ignored_events")
                logger.info(f"Refund notification received: {name}", extra={"extra_fields": {"data": data}})
            else:
                self.metrics.incr("ignored_events")
                logger.info(f"Unhandled webhook event: {name}")
        except Exception:
            self.db.rollback()
            self.metrics.incr("webhook_errors")
            logger.error("Webhook handling failed", exc_info=True)
        return {"success": True}

    # --- cancellation & refund ---

    def cancel_order(self, order_id: int, reason: Optional[str] = None, user_id: Optional[int] = None) -> Order:
        order = self.ledger.get(order_id, user_id=user_id)
        set_request_context(payment_reference=order.payment_reference)
        try:
            if not order.can_be_cancelled or not self.ledger.compare_and_set(
                order, PENDING, status=OrderStatus.CANCELLED.value
            ):
                raise InvalidStateTransition(
                    "Order cannot be cancelled at this stage",
                    current=order.status, requested=OrderStatus.CANCELLED.value,
                )
            for item in order.items:
                self.inventory.release(item.product_id, item.quantity)
            order.record(OrderStatus.CANCELLED, reason or "Order cancelled by user")
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(f"Order {order.order_number} cancelled")
        return order

    def initiate_refund(self, order_id: int, amount: Optional[Decimal] = None,
                        reason: str = "Refund requested") -> RefundResult:
        order = self.ledger.get(order_id)
        set_request_context(payment_reference=order.payment_reference)
        if order.payment_status == PaymentStatus.REFUNDED.value:
            self._end_read()
            logger.info(f"Refund already completed for order {order.order_number}")
            return RefundResult(order, refunded=True, message="Order already refunded")
        if order.payment_status != PaymentStatus.COMPLETED.value:
            raise InvalidStateTransition("Cannot refund unpaid order", current=order.payment_status)

        refund_amount = Decimal(amount) if amount is not None else order.total
        if refund_amount <= 0 or refund_amount > order.total:
            raise InvalidRefundAmount(refund_amount, order.total)

        # Claim the refund before contacting the gateway so duplicate
        # requests cannot trigger a second gateway refund
        claimed = self.ledger.compare_and_set(
            order,
            {"payment_status": PaymentStatus.COMPLETED.value, "refund_requested_at": None},
            refund_requested_at=utcnow(),
        )
        if not claimed:
            self.db.rollback()
            if order.payment_status == PaymentStatus.REFUNDED.value:
                return RefundResult(order, refunded=True, message="Order already refunded")
            raise InvalidStateTransition("Refund already in progress", current=order.payment_status)
        self.db.commit()

        try:
            self.gateway.refund(order.transaction_id, refund_amount, reason)
        except GatewayUnavailable as exc:
            self.ledger.compare_and_set(
                order, {"payment_status": PaymentStatus.COMPLETED.value}, refund_requested_at=None
            )
            self.db.commit()
            self.metrics.incr("refunds_manual")
            logger.warning(f"Automatic refund failed for order {order.order_number}: {exc.message}")
            return RefundResult(
                order, refunded=False, message=exc.message,
                instructions=manual_refund_instructions(order),
            )

        try:
            if not self.ledger.compare_and_set(
                order,
                {"payment_status": PaymentStatus.COMPLETED.value},
                payment_status=PaymentStatus.REFUNDED.value,
                status=OrderStatus.CANCELLED.value,
            ):
                # Gateway accepted the refund but the row moved; the claim stays
                # set so no second refund is attempted
                raise StaleSettlement(
                    f"Order {order.order_number} changed while its refund was in flight",
                    {"reference": order.payment_reference, "transaction_id": order.transaction_id,
                     "amount": str(refund_amount)},
                )
            order.record(OrderStatus.CANCELLED, f"Refunded: {reason}")
            self.db.commit()
        except StaleSettlement as exc:
            self.db.rollback()
            self.metrics.incr("stale_events")
            logger.error(f"Manual reconciliation needed: {exc.message}", extra={"extra_fields": exc.details})
            raise
        except Exception:
            self.db.rollback()
            raise
        self.metrics.incr("refunds_completed")
        logger.info(f"Refund of {refund_amount} initiated for order {order.order_number}")
        return RefundResult(order, refunded=True, message="Refund initiated successfully")
