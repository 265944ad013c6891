# models/order_model.py
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

OrderStatus = Literal["Pending", "Processing", "Shipped", "Delivered", "Cancelled"]
PaymentMethod = Literal["paystack-card", "paystack-transfer", "paystack-ussd"]


def compute_total(items_price: int, tax_price: int, shipping_price: int, discount: int) -> int:
    return items_price + tax_price + shipping_price - discount


class CustomDesign(BaseModel):
    has_custom_design: bool = False
    design_url: Optional[str] = None
    design_public_id: Optional[str] = None
    design_placement: Literal["front", "back", "left-sleeve", "right-sleeve"] = "front"
    design_size: Literal["small", "medium", "large"] = "medium"


class OrderItem(BaseModel):
    """One line of an order. `price` is the unit price in kobo."""
    product_id: str
    name: str
    qty: int = Field(..., ge=1)
    price: int = Field(..., ge=0)
    size: str
    color: str
    image: Optional[str] = None
    custom_design: Optional[CustomDesign] = None


class ShippingAddress(BaseModel):
    address: str
    city: str
    state: str
    postal_code: str
    country: str = "Nigeria"


class PaymentResult(BaseModel):
    """What the gateway told us about the charge that paid this order."""
    id: Optional[str] = None
    status: str
    reference: str
    email_address: Optional[str] = None
    update_time: datetime


class OrderDraft(BaseModel):
    """Checkout payload from the cart. Amounts are in kobo."""
    order_items: list[OrderItem] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    payment_method: PaymentMethod = "paystack-card"
    items_price: int = Field(..., ge=0)
    tax_price: int = Field(default=0, ge=0)
    shipping_price: int = Field(default=0, ge=0)
    discount: int = Field(default=0, ge=0)
    total_price: Optional[int] = None
    promo_code: Optional[str] = None
    notes: Optional[str] = None


class Order(BaseModel):
    """Database representation of an order (document id == order number)."""
    id: str
    user_id: str

    order_items: list[OrderItem]
    shipping_address: ShippingAddress
    payment_method: PaymentMethod = "paystack-card"

    items_price: int
    tax_price: int = 0
    shipping_price: int = 0
    discount: int = 0
    total_price: int
    currency: str = "NGN"
    promo_code: Optional[str] = None
    notes: Optional[str] = None

    status: OrderStatus = "Pending"
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    payment_reference: Optional[str] = None
    payment_result: Optional[PaymentResult] = None

    tracking_number: Optional[str] = None
    is_delivered: bool = False
    delivered_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    stock_released: bool = False

    created_at: datetime
    updated_at: datetime

    @model_validator(mode="after")
    def _total_matches_components(self):
        expected = compute_total(self.items_price, self.tax_price, self.shipping_price, self.discount)
        if self.total_price != expected:
            raise ValueError(f"total_price {self.total_price} != computed {expected}")
        return self


class OrderStatusUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: OrderStatus
    tracking_number: Optional[str] = Field(default=None, alias="trackingNumber")


class OrderCancelRequest(BaseModel):
    reason: Optional[str] = None
