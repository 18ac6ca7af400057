"""Cart and catalog boundary.

Carts and products are owned by other parts of the store; checkout only
reads a snapshot of the buyer's cart and the current catalog rows, and
settlement clears the cart once payment succeeds.
"""
from sqlalchemy import select, delete
from sqlalchemy.orm import Session
from dataclasses import dataclass

from checkout_service.domain.models import Cart, CartItem, Product


@dataclass(frozen=True)
class CartLine:
    product_id: int
    quantity: int


class CartSnapshot:
    def __init__(self, db: Session):
        self.db = db

    def lines(self, user_id: int) -> list[CartLine]:
        """Cart lines in insertion order, duplicate products merged."""
        rows = self.db.execute(
            select(CartItem.product_id, CartItem.quantity)
            .join(Cart, Cart.id == CartItem.cart_id)
            .where(Cart.user_id == user_id)
            .order_by(CartItem.id)
        ).all()
        merged: dict[int, int] = {}
        for product_id, quantity in rows:
            if quantity > 0:
                merged[product_id] = merged.get(product_id, 0) + quantity
        return [CartLine(product_id, quantity) for product_id, quantity in merged.items()]

    def clear(self, user_id: int) -> None:
        cart_id = select(Cart.id).where(Cart.user_id == user_id).scalar_subquery()
        self.db.execute(
            delete(CartItem).where(CartItem.cart_id == cart_id).execution_options(synchronize_session=False)
        )


class Catalog:
    def __init__(self, db: Session):
        self.db = db

    def products(self, product_ids: list[int]) -> dict[int, Product]:
        if not product_ids:
            return {}
        rows = self.db.execute(select(Product).where(Product.id.in_(product_ids))).scalars()
        return {p.id: p for p in rows}
