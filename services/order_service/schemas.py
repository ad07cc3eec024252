from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from .models import AddressType, OrderStatus, PaymentStatus


class OrderItemCreate(BaseModel):
    product_id: int
    quantity: int


class ShippingAddress(BaseModel):
    # An existing address is referenced by id; otherwise a new one is stored
    id: int | None = None
    name: str = ""
    phone: str = ""
    street: str = ""
    city: str = ""
    state: str = ""
    pincode: str = ""
    landmark: str | None = None
    type: AddressType = AddressType.HOME


class OrderCreate(BaseModel):
    items: list[OrderItemCreate] = []
    shipping_address: ShippingAddress | None = None
    shipping_fee: Decimal = Field(default=Decimal("0"), ge=0)
    payment_method: str = "razorpay"
    notes: str | None = None


class OrderItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: int
    name: str
    quantity: int
    price: Decimal


class AddressResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    phone: str
    street: str
    city: str
    state: str
    pincode: str
    landmark: str | None
    type: AddressType


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_number: str
    user_id: str
    status: OrderStatus
    payment_status: PaymentStatus
    payment_method: str | None
    subtotal_amount: Decimal
    tax_amount: Decimal
    shipping_fee: Decimal
    total_amount: Decimal
    tax_breakdown: list[dict]
    payment_intent_id: str | None
    notes: str | None
    created_at: datetime
    items: list[OrderItemResponse]
    address: AddressResponse
