from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload
from datetime import date
from typing import Optional, Iterable, Mapping, Any
import secrets
import string
import time

from checkout_service.domain.models import (
    Order, OrderItem, OrderSequence, OrderStatus, PaymentStatus, PaymentMethod, Pricing, utcnow,
)
from checkout_service.domain.errors import OrderNotFound, InvalidStateTransition
from .schemas import ShippingAddress, LineSnapshot
from shared.core import get_logger

logger = get_logger(__name__)

_REFERENCE_ALPHABET = string.ascii_uppercase + string.digits

# Fulfilment moves an admin may apply by hand. Payment-owned states
# (pending, confirmed, failed) and cancellation go through settlement.
ADMIN_TRANSITIONS = {
    OrderStatus.CONFIRMED.value: {OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED},
    OrderStatus.PROCESSING.value: {OrderStatus.SHIPPED, OrderStatus.DELIVERED},
    OrderStatus.SHIPPED.value: {OrderStatus.DELIVERED},
}


class OrderLedger:
    def __init__(self, db: Session):
        self.db = db

    @staticmethod
    def generate_payment_reference() -> str:
        """Generate a payment reference in format PAY-<epoch ms>-<9 chars>"""
        suffix = "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(9))
        return f"PAY-{int(time.time() * 1000)}-{suffix}"

    def next_order_number(self, day: Optional[date] = None) -> str:
        """Generate the next order number in format ORD-YYYYMMDD-NNNNN.

        The per-day counter row is incremented and read in one statement
        inside the caller's transaction, so concurrent checkouts can never
        observe the same value.
        """
        day = day or utcnow().date()
        bump = (
            update(OrderSequence)
            .where(OrderSequence.day == day)
            .values(last_value=OrderSequence.last_value + 1)
            .returning(OrderSequence.last_value)
            .execution_options(synchronize_session=False)
        )
        value = self.db.execute(bump).scalar_one_or_none()
        if value is None:
            try:
                with self.db.begin_nested():
                    self.db.add(OrderSequence(day=day, last_value=1))
                value = 1
            except IntegrityError:
                # Another checkout created today's row first
                value = self.db.execute(bump).scalar_one()
        return f"ORD-{day:%Y%m%d}-{value:05d}"

    def create(
        self,
        user_id: int,
        lines: Iterable[LineSnapshot],
        shipping: ShippingAddress,
        pricing: Pricing,
        payment_method: PaymentMethod = PaymentMethod.PAYSTACK,
    ) -> Order:
        """Insert a pending order. Flushes, never commits."""
        pricing.validate()
        order = Order(
            order_number=self.next_order_number(),
            user_id=user_id,
            status=OrderStatus.PENDING.value,
            ship_full_name=shipping.full_name,
            ship_phone=shipping.phone,
            ship_address=shipping.address,
            ship_city=shipping.city,
            ship_state=shipping.state,
            ship_country=shipping.country,
            ship_postal_code=shipping.postal_code,
            subtotal=pricing.subtotal,
            shipping_fee=pricing.shipping,
            tax=pricing.tax,
            discount=pricing.discount,
            total=pricing.total,
            payment_method=payment_method.value,
            payment_status=PaymentStatus.PENDING.value,
            payment_reference=self.generate_payment_reference(),
        )
        for position, line in enumerate(lines):
            order.items.append(OrderItem(
                position=position,
                product_id=line.product_id,
                name=line.name,
                unit_price=line.unit_price,
                quantity=line.quantity,
                image_url=line.image_url,
            ))
        order.record(OrderStatus.PENDING, "Order created")
        self.db.add(order)
        self.db.flush()
        return order

    # --- lookups ---

    def _query(self):
        return select(Order).options(selectinload(Order.items), selectinload(Order.timeline))

    def get(self, order_id: int, user_id: Optional[int] = None) -> Order:
        stmt = self._query().where(Order.id == order_id)
        if user_id is not None:
            stmt = stmt.where(Order.user_id == user_id)
        order = self.db.execute(stmt).scalar_one_or_none()
        if order is None:
            raise OrderNotFound(order_id=order_id)
        return order

    def get_by_number(self, order_number: str, user_id: Optional[int] = None) -> Order:
        stmt = self._query().where(Order.order_number == order_number)
        if user_id is not None:
            stmt = stmt.where(Order.user_id == user_id)
        order = self.db.execute(stmt).scalar_one_or_none()
        if order is None:
            raise OrderNotFound(order_number=order_number)
        return order

    def get_by_reference(self, reference: str, user_id: Optional[int] = None) -> Order:
        stmt = self._query().where(Order.payment_reference == reference)
        if user_id is not None:
            stmt = stmt.where(Order.user_id == user_id)
        order = self.db.execute(stmt).scalar_one_or_none()
        if order is None:
            raise OrderNotFound(reference=reference)
        return order

    def list_for_user(self, user_id: int) -> list[Order]:
        return list(self.db.execute(
            self._query().where(Order.user_id == user_id).order_by(Order.created_at.desc(), Order.id.desc())
        ).scalars())

    def list_all(self) -> list[Order]:
        """Every order, newest first. Admin view, unpaginated."""
        return list(self.db.execute(
            self._query().order_by(Order.created_at.desc(), Order.id.desc())
        ).scalars())

    # --- state changes ---

    def compare_and_set(self, order: Order, expected: Mapping[str, Any], **values: Any) -> bool:
        """Apply ``values`` only if the row still matches ``expected``.

        Returns False when another unit of work changed the order first; the
        in-session instance is refreshed either way.
        """
        stmt = update(Order).where(Order.id == order.id)
        for column, value in expected.items():
            stmt = stmt.where(getattr(Order, column) == value)
        values.setdefault("updated_at", utcnow())
        result = self.db.execute(stmt.values(**values).execution_options(synchronize_session=False))
        self.db.expire(order, list(values) + list(expected))
        return result.rowcount == 1

    def update_status(self, order_id: int, status: OrderStatus, note: Optional[str] = None) -> Order:
        """Admin fulfilment update (confirmed -> processing -> shipped -> delivered)."""
        order = self.get(order_id)
        current = order.status
        if status not in ADMIN_TRANSITIONS.get(current, set()):
            raise InvalidStateTransition(
                f"Cannot move order {order.order_number} from {current} to {status.value}",
                current=current, requested=status.value,
            )
        if not self.compare_and_set(order, {"status": current}, status=status.value):
            raise InvalidStateTransition(
                f"Order {order.order_number} changed concurrently", current=order.status, requested=status.value
            )
        order.record(status, note)
        self.db.commit()
        logger.info(f"Order {order.order_number} moved {current} -> {status.value}")
        return order

    # --- reporting ---

    def stats(self) -> dict:
        breakdown = self.db.execute(
            select(Order.status, func.count(Order.id), func.coalesce(func.sum(Order.total), 0))
            .group_by(Order.status)
        ).all()
        total_orders = self.db.execute(select(func.count(Order.id))).scalar_one()
        revenue = self.db.execute(
            select(func.coalesce(func.sum(Order.total), 0))
            .where(Order.payment_status == PaymentStatus.COMPLETED.value)
        ).scalar_one()
        return {
            "total_orders": total_orders,
            "total_revenue": float(revenue),
            "status_breakdown": [
                {"status": status, "count": count, "total_amount": float(amount)}
                for status, count, amount in breakdown
            ],
        }
