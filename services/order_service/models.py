import enum
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import relationship

from shared.config.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"


class AddressType(str, enum.Enum):
    HOME = "HOME"
    WORK = "WORK"
    OTHER = "OTHER"


class TaxType(str, enum.Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"
    GST = "GST"
    STATE_TAX = "STATE_TAX"
    CITY_TAX = "CITY_TAX"


class Address(Base):
    __tablename__ = "addresses"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    phone = Column(String, nullable=False)
    street = Column(String, nullable=False)
    city = Column(String, nullable=False, default="")
    state = Column(String, nullable=False)
    pincode = Column(String, nullable=False, default="")
    landmark = Column(String, nullable=True)
    type = Column(SAEnum(AddressType, native_enum=False), nullable=False, default=AddressType.HOME)


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String, nullable=False, unique=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    address_id = Column(Integer, ForeignKey("addresses.id"), nullable=False)
    status = Column(SAEnum(OrderStatus, native_enum=False), nullable=False, default=OrderStatus.PENDING)
    payment_status = Column(
        SAEnum(PaymentStatus, native_enum=False), nullable=False, default=PaymentStatus.PENDING
    )
    payment_method = Column(String, nullable=True)
    subtotal_amount = Column(Numeric(12, 2), nullable=False)
    tax_amount = Column(Numeric(12, 2), nullable=False, default=0)
    shipping_fee = Column(Numeric(12, 2), nullable=False, default=0)
    total_amount = Column(Numeric(12, 2), nullable=False)
    tax_breakdown = Column(JSON, nullable=False, default=list)
    notes = Column(Text, nullable=True)
    # Gateway payment id, set once the payment is confirmed
    payment_intent_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    items = relationship("OrderItem", back_populates="order", lazy="selectin", order_by="OrderItem.id")
    address = relationship("Address", lazy="selectin")


class OrderItem(Base):
    """Snapshot of a product line at order time. Never updated afterwards."""
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    name = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(12, 2), nullable=False)

    order = relationship("Order", back_populates="items")


class TaxConfiguration(Base):
    __tablename__ = "tax_configurations"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    type = Column(SAEnum(TaxType, native_enum=False), nullable=False)
    # Percent for rate-based types, absolute amount for FIXED_AMOUNT
    rate = Column(Numeric(10, 4), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    applicable_in = Column(JSON, nullable=False, default=list)
    product_types = Column(JSON, nullable=False, default=list)
    min_amount = Column(Numeric(12, 2), nullable=True)
    max_amount = Column(Numeric(12, 2), nullable=True)
