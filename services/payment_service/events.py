"""
Webhook event decoding.

A verified body is decoded exactly once into one of the event models below.
Event names this service doesn't act on become ``UnknownEvent`` and are
acknowledged without side effects.
"""
import json
from typing import Literal, Union

from pydantic import BaseModel, ValidationError


class InvalidWebhookPayload(Exception):
    pass


class PaymentEntity(BaseModel):
    id: str
    order_id: str
    amount: int | None = None
    currency: str | None = None
    status: str | None = None
    method: str | None = None
    error_code: str | None = None
    error_description: str | None = None


class OrderEntity(BaseModel):
    id: str
    amount: int
    amount_paid: int = 0
    status: str
    receipt: str | None = None


class _PaymentWrapper(BaseModel):
    entity: PaymentEntity


class _OrderWrapper(BaseModel):
    entity: OrderEntity


class _PaymentPayload(BaseModel):
    payment: _PaymentWrapper


class _OrderPaidPayload(BaseModel):
    order: _OrderWrapper
    payment: _PaymentWrapper | None = None


class PaymentCapturedEvent(BaseModel):
    event: Literal["payment.captured", "payment.authorized"]
    payload: _PaymentPayload

    @property
    def payment(self) -> PaymentEntity:
        return self.payload.payment.entity


class PaymentFailedEvent(BaseModel):
    event: Literal["payment.failed"]
    payload: _PaymentPayload

    @property
    def payment(self) -> PaymentEntity:
        return self.payload.payment.entity


class OrderPaidEvent(BaseModel):
    event: Literal["order.paid"]
    payload: _OrderPaidPayload

    @property
    def order(self) -> OrderEntity:
        return self.payload.order.entity

    @property
    def payment(self) -> PaymentEntity | None:
        return self.payload.payment.entity if self.payload.payment else None


class UnknownEvent(BaseModel):
    event: str
    raw: dict = {}


WebhookEvent = Union[PaymentCapturedEvent, PaymentFailedEvent, OrderPaidEvent, UnknownEvent]

_EVENT_MODELS: dict[str, type[BaseModel]] = {
    "payment.captured": PaymentCapturedEvent,
    "payment.authorized": PaymentCapturedEvent,
    "payment.failed": PaymentFailedEvent,
    "order.paid": OrderPaidEvent,
}


def decode_event(raw_body: bytes) -> WebhookEvent:
    try:
        envelope = json.loads(raw_body)
    except ValueError as exc:
        raise InvalidWebhookPayload("Webhook body is not valid JSON") from exc
    if not isinstance(envelope, dict) or not isinstance(envelope.get("event"), str):
        raise InvalidWebhookPayload("Webhook body has no event name")

    model = _EVENT_MODELS.get(envelope["event"])
    if model is None:
        return UnknownEvent(event=envelope["event"], raw=envelope)
    try:
        return model.model_validate(envelope)
    except ValidationError as exc:
        raise InvalidWebhookPayload(f"Malformed {envelope['event']} payload: {exc.error_count()} errors") from exc
