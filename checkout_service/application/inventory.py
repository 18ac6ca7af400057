"""Inventory store: per-product ``on_hand`` / ``reserved`` counters.

Every mutation is a single conditional UPDATE so that concurrent callers on
the same product are linearized by the database; nothing here reads a
counter and writes it back. The store never commits: it runs inside the
caller's unit of work.
"""
from sqlalchemy import select, update, case
from sqlalchemy.orm import Session
from typing import Optional

from checkout_service.domain.models import Inventory
from checkout_service.domain.errors import InsufficientStock, InsufficientOnHand, ProductUnavailable
from shared.core import get_logger

logger = get_logger(__name__)


def _check_quantity(qty: int) -> None:
    if not isinstance(qty, int) or isinstance(qty, bool) or qty < 1:
        raise ValueError(f"quantity must be a positive integer, got {qty!r}")


class InventoryStore:
    def __init__(self, db: Session):
        self.db = db

    def get(self, product_id: int) -> Optional[Inventory]:
        return self.db.execute(
            select(Inventory).where(Inventory.product_id == product_id)
        ).scalar_one_or_none()

    def available(self, product_id: int) -> int:
        record = self.get(product_id)
        return record.available if record else 0

    def _execute(self, stmt) -> int:
        result = self.db.execute(stmt.execution_options(synchronize_session=False))
        # Counters changed underneath any loaded Inventory instances
        for obj in list(self.db.identity_map.values()):
            if isinstance(obj, Inventory):
                self.db.expire(obj)
        return result.rowcount

    def reserve(self, product_id: int, qty: int) -> None:
        _check_quantity(qty)
        rows = self._execute(
            update(Inventory)
            .where(Inventory.product_id == product_id)
            .where(Inventory.on_hand - Inventory.reserved >= qty)
            .values(reserved=Inventory.reserved + qty)
        )
        if rows == 0:
            record = self.get(product_id)
            if record is None:
                raise ProductUnavailable(product_id)
            raise InsufficientStock(product_id, requested=qty, available=record.available)
        logger.debug(f"Reserved {qty} of product {product_id}")

    def release(self, product_id: int, qty: int) -> None:
        _check_quantity(qty)
        rows = self._execute(
            update(Inventory)
            .where(Inventory.product_id == product_id)
            .values(reserved=case((Inventory.reserved > qty, Inventory.reserved - qty), else_=0))
        )
        if rows == 0:
            logger.warning(f"Release of {qty} skipped: no stock record for product {product_id}")
            return
        logger.debug(f"Released {qty} of product {product_id}")

    def deduct(self, product_id: int, qty: int) -> None:
        _check_quantity(qty)
        rows = self._execute(
            update(Inventory)
            .where(Inventory.product_id == product_id)
            .where(Inventory.on_hand >= qty)
            .values(
                on_hand=Inventory.on_hand - qty,
                reserved=case((Inventory.reserved > qty, Inventory.reserved - qty), else_=0),
            )
        )
        if rows == 0:
            record = self.get(product_id)
            raise InsufficientOnHand(product_id, requested=qty, on_hand=record.on_hand if record else 0)
        logger.debug(f"Deducted {qty} of product {product_id}")

    def restock(self, product_id: int, qty: int) -> Inventory:
        _check_quantity(qty)
        rows = self._execute(
            update(Inventory)
            .where(Inventory.product_id == product_id)
            .values(on_hand=Inventory.on_hand + qty)
        )
        if rows == 0:
            raise ProductUnavailable(product_id)
        logger.info(f"Restocked product {product_id} with {qty} units")
        return self.get(product_id)

    def find_low_stock(self) -> list[Inventory]:
        available = case(
            (Inventory.on_hand > Inventory.reserved, Inventory.on_hand - Inventory.reserved),
            else_=0,
        )
        return list(self.db.execute(
            select(Inventory)
            .where(available <= Inventory.low_stock_threshold)
            .order_by(Inventory.product_id)
        ).scalars())
