"""Checkout: cart -> reserved inventory -> pending order, all or nothing.

Steps run in one database transaction:

1. snapshot the buyer's cart (``EmptyCart`` when there is nothing in it)
2. check every product is active and has enough available stock
3. reserve every line with an atomic conditional update
4. snapshot current catalog price/name/image per line
5. price the order (free shipping above the threshold, no tax, no discount)
6. draw the order number and payment reference
7. insert the pending order with its first timeline entry
8. commit

Any exception before the commit rolls back every reservation and the order
insert together.
"""
from sqlalchemy.orm import Session
from decimal import Decimal
from typing import Optional

from checkout_service.core_settings import get_settings, Settings
from checkout_service.domain.models import Order, Pricing
from checkout_service.domain.errors import EmptyCart, ProductUnavailable, InsufficientStock
from .cart import CartSnapshot, Catalog
from .inventory import InventoryStore
from .orders import OrderLedger
from .schemas import ShippingAddress, LineSnapshot
from shared.core import get_logger

logger = get_logger(__name__)


class CheckoutCoordinator:
    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.carts = CartSnapshot(db)
        self.catalog = Catalog(db)
        self.inventory = InventoryStore(db)
        self.ledger = OrderLedger(db)

    def price(self, subtotal: Decimal) -> Pricing:
        if subtotal >= self.settings.FREE_SHIPPING_THRESHOLD:
            shipping = Decimal("0")
        else:
            shipping = self.settings.FLAT_SHIPPING_FEE
        return Pricing.compute(subtotal, shipping).validate()

    def create_order(self, user_id: int, shipping: ShippingAddress) -> Order:
        try:
            order = self._create_order(user_id, shipping)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(
            f"Order {order.order_number} created for user {user_id}",
            extra={"extra_fields": {
                "order_number": order.order_number,
                "reference": order.payment_reference,
                "total": str(order.total),
                "lines": len(order.items),
            }},
        )
        return order

    def _create_order(self, user_id: int, shipping: ShippingAddress) -> Order:
        lines = self.carts.lines(user_id)
        if not lines:
            raise EmptyCart(user_id)

        products = self.catalog.products([line.product_id for line in lines])
        for line in lines:
            product = products.get(line.product_id)
            if product is None or not product.is_active:
                raise ProductUnavailable(line.product_id, product.name if product else None)
            available = self.inventory.available(line.product_id)
            if available < line.quantity:
                raise InsufficientStock(line.product_id, line.quantity, available, product.name)

        # The pre-check above is advisory; reserve() re-checks atomically
        for line in lines:
            try:
                self.inventory.reserve(line.product_id, line.quantity)
            except InsufficientStock as exc:
                raise InsufficientStock(
                    exc.product_id, exc.requested, exc.available, products[line.product_id].name
                ) from exc

        snapshots = [
            LineSnapshot(
                product_id=line.product_id,
                name=products[line.product_id].name,
                unit_price=Decimal(products[line.product_id].price),
                quantity=line.quantity,
                image_url=products[line.product_id].image_url or "",
            )
            for line in lines
        ]
        subtotal = sum((s.unit_price * s.quantity for s in snapshots), Decimal("0"))
        return self.ledger.create(user_id, snapshots, shipping, self.price(subtotal))
