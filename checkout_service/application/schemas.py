from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional

from checkout_service.domain.models import OrderStatus


class ShippingAddress(BaseModel):
    full_name: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    address: str = Field(min_length=1)
    city: str = Field(min_length=1)
    state: str = Field(min_length=1)
    country: str = "Nigeria"
    postal_code: Optional[str] = None


class LineSnapshot(BaseModel):
    """Catalog data captured for one order line at checkout time."""
    product_id: int
    name: str
    unit_price: Decimal
    quantity: int
    image_url: str = ""


class CheckoutRequest(BaseModel):
    shipping_address: ShippingAddress


class StatusUpdate(BaseModel):
    status: OrderStatus
    note: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class InitializePaymentRequest(BaseModel):
    order_id: int
    email: str


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = Field(default=None, gt=0)
    reason: str = "Refund requested"


class RestockRequest(BaseModel):
    quantity: int = Field(gt=0)


class OrderItemRead(BaseModel):
    product_id: int
    name: str
    unit_price: float
    quantity: int
    image_url: str
    class Config:
        from_attributes = True


class TimelineEntryRead(BaseModel):
    status: str
    timestamp: datetime
    note: Optional[str] = None
    class Config:
        from_attributes = True


class PricingRead(BaseModel):
    subtotal: float
    shipping: float
    tax: float
    discount: float
    total: float
    class Config:
        from_attributes = True


class PaymentRead(BaseModel):
    method: str
    status: str
    reference: str
    transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None


class OrderRead(BaseModel):
    id: int
    order_number: str
    user_id: int
    status: str
    items: list[OrderItemRead]
    shipping_address: ShippingAddress
    pricing: PricingRead
    payment: PaymentRead
    timeline: list[TimelineEntryRead]
    created_at: datetime
    class Config:
        from_attributes = True


class OrderSummaryRead(BaseModel):
    """List view: no timeline."""
    id: int
    user_id: int
    order_number: str
    status: str
    pricing: PricingRead
    payment: PaymentRead
    created_at: datetime
    class Config:
        from_attributes = True


class InventoryRead(BaseModel):
    product_id: int
    on_hand: int
    reserved: int
    available: int
    low_stock_threshold: int
    is_low_stock: bool
    is_out_of_stock: bool
    class Config:
        from_attributes = True

