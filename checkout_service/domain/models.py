from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy import (
    String, Integer, Numeric, Boolean, DateTime, Date, Text, ForeignKey,
    CheckConstraint, UniqueConstraint, func,
)
from dataclasses import dataclass
from datetime import datetime, date, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from .errors import PricingMismatch


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    PAYSTACK = "paystack"
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"


class Base(DeclarativeBase):
    pass


# --- Catalog & cart (external collaborators, read at the boundary) ---

class Product(Base):
    __tablename__ = "products"
    id: Mapped[int] = mapped_column(primary_key=True)
    sku: Mapped[Optional[str]] = mapped_column(String(50), unique=True, nullable=True)
    name: Mapped[str] = mapped_column(String(200))
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    image_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    stock: Mapped[Optional["Inventory"]] = relationship("Inventory", back_populates="product", uselist=False)


class Cart(Base):
    __tablename__ = "carts"
    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, unique=True, index=True)
    items: Mapped[list["CartItem"]] = relationship(
        "CartItem", back_populates="cart", cascade="all, delete-orphan", order_by="CartItem.id"
    )


class CartItem(Base):
    __tablename__ = "cart_items"
    id: Mapped[int] = mapped_column(primary_key=True)
    cart_id: Mapped[int] = mapped_column(ForeignKey("carts.id"))
    product_id: Mapped[int] = mapped_column(Integer)
    quantity: Mapped[int]
    # Price shown when the item was added; checkout never trusts it
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    cart: Mapped[Cart] = relationship("Cart", back_populates="items")


# --- Inventory ---

class Inventory(Base):
    __tablename__ = "inventory"
    __table_args__ = (
        CheckConstraint("on_hand >= 0", name="ck_inventory_on_hand_non_negative"),
        CheckConstraint("reserved >= 0", name="ck_inventory_reserved_non_negative"),
        CheckConstraint("reserved <= on_hand", name="ck_inventory_reserved_within_on_hand"),
    )
    id: Mapped[int] = mapped_column(primary_key=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), unique=True, index=True)
    on_hand: Mapped[int] = mapped_column(Integer, default=0)
    reserved: Mapped[int] = mapped_column(Integer, default=0)
    low_stock_threshold: Mapped[int] = mapped_column(Integer, default=10)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    product: Mapped[Product] = relationship("Product", back_populates="stock")

    @property
    def available(self) -> int:
        return max(0, self.on_hand - self.reserved)

    @property
    def is_low_stock(self) -> bool:
        return self.available <= self.low_stock_threshold

    @property
    def is_out_of_stock(self) -> bool:
        return self.available == 0


# --- Orders ---

@dataclass(frozen=True)
class Pricing:
    subtotal: Decimal
    shipping: Decimal
    tax: Decimal
    discount: Decimal
    total: Decimal

    @classmethod
    def compute(cls, subtotal: Decimal, shipping: Decimal,
                tax: Decimal = Decimal("0"), discount: Decimal = Decimal("0")) -> "Pricing":
        return cls(subtotal, shipping, tax, discount, subtotal + shipping + tax - discount)

    def validate(self) -> "Pricing":
        expected = self.subtotal + self.shipping + self.tax - self.discount
        if self.total != expected:
            raise PricingMismatch(expected=expected, actual=self.total)
        if min(self.subtotal, self.shipping, self.tax, self.discount, self.total) < 0:
            raise PricingMismatch(expected=expected, actual=self.total)
        return self


class Order(Base):
    __tablename__ = "orders"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_number: Mapped[str] = mapped_column(String(20), unique=True, index=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    status: Mapped[str] = mapped_column(String(20), default=OrderStatus.PENDING.value, index=True)

    # Shipping address
    ship_full_name: Mapped[str] = mapped_column(String(200))
    ship_phone: Mapped[str] = mapped_column(String(50))
    ship_address: Mapped[str] = mapped_column(String(300))
    ship_city: Mapped[str] = mapped_column(String(100))
    ship_state: Mapped[str] = mapped_column(String(100))
    ship_country: Mapped[str] = mapped_column(String(100), default="Nigeria")
    ship_postal_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    # Pricing breakdown
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    shipping_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    tax: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    discount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2))

    # Payment
    payment_method: Mapped[str] = mapped_column(String(20), default=PaymentMethod.PAYSTACK.value)
    payment_status: Mapped[str] = mapped_column(String(20), default=PaymentStatus.PENDING.value, index=True)
    payment_reference: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_requested_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem", back_populates="order", cascade="all, delete-orphan", order_by="OrderItem.position"
    )
    timeline: Mapped[list["OrderTimelineEntry"]] = relationship(
        "OrderTimelineEntry", back_populates="order", cascade="all, delete-orphan",
        order_by="OrderTimelineEntry.id"
    )

    @property
    def pricing(self) -> Pricing:
        return Pricing(self.subtotal, self.shipping_fee, self.tax, self.discount, self.total)

    @property
    def shipping_address(self) -> dict:
        return {
            "full_name": self.ship_full_name,
            "phone": self.ship_phone,
            "address": self.ship_address,
            "city": self.ship_city,
            "state": self.ship_state,
            "country": self.ship_country,
            "postal_code": self.ship_postal_code,
        }

    @property
    def payment(self) -> dict:
        return {
            "method": self.payment_method,
            "status": self.payment_status,
            "reference": self.payment_reference,
            "transaction_id": self.transaction_id,
            "paid_at": self.paid_at,
        }

    @property
    def can_be_cancelled(self) -> bool:
        return self.status == OrderStatus.PENDING.value

    def record(self, status: OrderStatus, note: Optional[str] = None) -> "OrderTimelineEntry":
        """Append one timeline entry; callers set ``status`` themselves."""
        entry = OrderTimelineEntry(status=status.value, note=note, timestamp=utcnow())
        self.timeline.append(entry)
        return entry


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_order_items_quantity_positive"),
    )
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), index=True)
    position: Mapped[int] = mapped_column(Integer, default=0)
    # Non-owning catalog reference; name/price/image are checkout-time snapshots
    product_id: Mapped[int] = mapped_column(Integer)
    name: Mapped[str] = mapped_column(String(200))
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    quantity: Mapped[int]
    image_url: Mapped[str] = mapped_column(String(500), default="")
    order: Mapped[Order] = relationship("Order", back_populates="items")

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class OrderTimelineEntry(Base):
    __tablename__ = "order_timeline"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), index=True)
    status: Mapped[str] = mapped_column(String(20))
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    order: Mapped[Order] = relationship("Order", back_populates="timeline")


class OrderSequence(Base):
    """Per-day counter backing ``ORD-YYYYMMDD-NNNNN`` order numbers."""
    __tablename__ = "order_sequences"
    __table_args__ = (UniqueConstraint("day", name="uq_order_sequences_day"),)
    id: Mapped[int] = mapped_column(primary_key=True)
    day: Mapped[date] = mapped_column(Date)
    last_value: Mapped[int] = mapped_column(Integer, default=0)
