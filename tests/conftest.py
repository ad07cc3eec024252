import os
import tempfile

# Configuration is read at import time, so it has to be in place first
_DB_DIR = tempfile.mkdtemp(prefix="checkout-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/test.db"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret"
os.environ["INTERNAL_API_KEY"] = "test-internal-key"
os.environ["RAZORPAY_KEY_ID"] = "rzp_test_key"
os.environ["RAZORPAY_KEY_SECRET"] = "test_key_secret"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "test_webhook_secret"
os.environ["PAYMENT_SESSION_RATE_LIMIT"] = "5/minute"
os.environ.pop("OTLP_ENDPOINT", None)

import hashlib
import hmac
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from main import app
from services.order_service.models import TaxConfiguration, TaxType
from services.order_service.tax import tax_engine
from services.payment_service.gateway import GatewayError, GatewayOrder, get_gateway
from services.payment_service.retry import RetryPolicy, get_retry_policy
from services.product_service.models import Category, Product
from shared.config.database import AsyncSessionLocal, create_all, drop_all
from shared.security import create_access_token, limiter
from shared.security.audit import SecurityLog

KEY_SECRET = os.environ["RAZORPAY_KEY_SECRET"]
WEBHOOK_SECRET = os.environ["RAZORPAY_WEBHOOK_SECRET"]

SHIPPING_ADDRESS = {
    "name": "Asha Rao",
    "phone": "9800000000",
    "street": "12 MG Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "pincode": "560001",
}


class FakeGateway:
    """Stands in for the Razorpay client; ``failures`` makes the next N calls fail."""

    key_id = "rzp_test_key"

    def __init__(self):
        self.calls = []
        self.failures = 0

    async def create_order(self, *, amount, currency, receipt, notes):
        self.calls.append({"amount": amount, "currency": currency, "receipt": receipt, "notes": notes})
        if self.failures:
            self.failures -= 1
            raise GatewayError("gateway unavailable", 503)
        return GatewayOrder(
            id=f"order_test{len(self.calls)}",
            amount=amount,
            currency=currency,
            status="created",
            receipt=receipt,
        )


async def _no_sleep(delay):
    return None


def auth_headers(user_id: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': user_id})}"}


def sign_payment(gateway_order_id: str, payment_id: str, secret: str = KEY_SECRET) -> str:
    """Signature the gateway hands the browser after checkout."""
    message = f"{gateway_order_id}|{payment_id}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def sign_webhook(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


@pytest.fixture
async def database():
    await drop_all()
    await create_all()
    tax_engine.clear_cache()
    yield


@pytest.fixture
async def db(database):
    async with AsyncSessionLocal() as session:
        yield session


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
async def client(database, gateway):
    limiter.enabled = False
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_retry_policy] = lambda: RetryPolicy(max_attempts=3, base_delay=0, sleep=_no_sleep)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def add_product(db, name="Notebook", price="500.00", stock=10, category=None, is_active=True) -> int:
    product = Product(name=name, price=Decimal(price), stock=stock, is_active=is_active)
    if category:
        result = await db.execute(select(Category).where(Category.name == category))
        product.category = result.scalars().first() or Category(name=category)
    db.add(product)
    await db.commit()
    return product.id


async def add_tax(db, name, type, rate, **kwargs) -> int:
    config = TaxConfiguration(name=name, type=type, rate=Decimal(str(rate)), **kwargs)
    db.add(config)
    await db.commit()
    tax_engine.clear_cache()
    return config.id


async def security_actions() -> list[tuple[str, str]]:
    async with AsyncSessionLocal() as session:
        result = await session.execute(select(SecurityLog).order_by(SecurityLog.id))
        return [(log.action, log.severity.value) for log in result.scalars().all()]


async def place_order(client, user_id, items, shipping_fee="0", address=None):
    return await client.post(
        "/orders/",
        json={
            "items": items,
            "shipping_address": address or SHIPPING_ADDRESS,
            "shipping_fee": shipping_fee,
        },
        headers=auth_headers(user_id),
    )

