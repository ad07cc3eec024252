"""
Razorpay Orders API client.

Constructed once per application (see main.create_app) and handed to the
payment routes through the ``get_gateway`` dependency, so tests can swap in
a fake without touching module state. The SDK is synchronous; its calls run
in the threadpool.
"""
from dataclasses import dataclass

import razorpay
import requests
from fastapi import Request
from starlette.concurrency import run_in_threadpool

from shared.config.settings import Settings

# Everything the SDK raises for a rejected or failed call
SDK_ERRORS = (
    razorpay.errors.BadRequestError,
    razorpay.errors.GatewayError,
    razorpay.errors.ServerError,
)


class GatewayError(Exception):
    """The gateway could not be reached or returned something unusable."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class GatewayOrder:
    id: str
    amount: int
    currency: str
    status: str
    receipt: str | None = None

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "receipt": self.receipt,
        }


class RazorpayGateway:
    def __init__(
        self,
        key_id: str,
        key_secret: str,
        base_url: str | None = None,
        timeout: float = 10.0,
        client: razorpay.Client | None = None,
    ):
        self.key_id = key_id
        self.timeout = timeout
        self._session = None
        if client is None:
            self._session = requests.Session()
            options = {"base_url": base_url} if base_url else {}
            client = razorpay.Client(session=self._session, auth=(key_id, key_secret), **options)
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "RazorpayGateway":
        return cls(
            key_id=settings.razorpay_key_id,
            key_secret=settings.razorpay_key_secret,
            base_url=settings.razorpay_base_url,
            timeout=settings.razorpay_timeout,
        )

    async def create_order(self, *, amount: int, currency: str, receipt: str, notes: dict) -> GatewayOrder:
        """Opens a gateway order. ``amount`` is in minor units (paise)."""
        payload = {
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
            "payment_capture": 1,
            "notes": notes,
        }
        try:
            body = await run_in_threadpool(self._client.order.create, data=payload, timeout=self.timeout)
        except razorpay.errors.BadRequestError as exc:
            raise GatewayError(f"Gateway rejected order creation: {exc}", 400) from exc
        except SDK_ERRORS as exc:
            raise GatewayError(f"Gateway error: {exc}", 502) from exc
        except requests.RequestException as exc:
            raise GatewayError(f"Gateway unreachable: {exc}") from exc

        try:
            return GatewayOrder(
                id=body["id"],
                amount=int(body["amount"]),
                currency=body["currency"],
                status=body.get("status", "created"),
                receipt=body.get("receipt"),
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise GatewayError(f"Malformed gateway response: {exc}") from exc

    async def aclose(self):
        if self._session is not None:
            self._session.close()


def get_gateway(request: Request) -> RazorpayGateway:
    return request.app.state.gateway
