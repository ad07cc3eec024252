from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from services.order_service.models import PaymentStatus


class PaymentSessionCreate(BaseModel):
    order_id: int
    # Major units (rupees), as shown to the customer
    amount: Decimal = Field(decimal_places=2)


class PaymentSessionResponse(BaseModel):
    id: str
    amount: int
    currency: str
    status: str = "created"
    receipt: str | None = None
    key_id: str
    order_id: int
    existing: bool = False
    idempotency_key: str | None = None


class PaymentVerifyRequest(BaseModel):
    razorpay_order_id: str = Field(min_length=1)
    razorpay_payment_id: str = Field(min_length=1)
    razorpay_signature: str = Field(min_length=1)


class PaymentVerifyResponse(BaseModel):
    success: bool = True
    order_id: int
    order_number: str
    payment_id: str
    status: PaymentStatus
    already_processed: bool = False


class PaymentLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int
    razorpay_order_id: str | None
    razorpay_payment_id: str | None
    amount: Decimal
    currency: str
    status: PaymentStatus
    method: str | None
    failure_reason: str | None
    retry_count: int
    attempt_number: int
    created_at: datetime
