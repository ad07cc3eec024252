from decimal import Decimal

from sqlalchemy import func, select

from conftest import add_product, add_tax, auth_headers, place_order, security_actions
from services.order_service.models import TaxType
from services.payment_service.models import PaymentLog
from services.payment_service.retry import RetryPolicy
from services.payment_service.schemas import PaymentSessionCreate
from services.payment_service.service import PaymentService
from shared.config.database import AsyncSessionLocal
from shared.security import limiter


async def _order(client, db, user_id="user-1"):
    product_id = await add_product(db, price="500.00", stock=10)
    await add_tax(db, "GST", TaxType.GST, 18)
    resp = await place_order(client, user_id, [{"product_id": product_id, "quantity": 2}], shipping_fee="50")
    assert resp.status_code == 201
    return resp.json()


async def _open_session(client, order, user_id="user-1", amount=None):
    return await client.post(
        "/payments/razorpay/order",
        json={"order_id": order["id"], "amount": amount if amount is not None else order["total_amount"]},
        headers=auth_headers(user_id),
    )


async def _log_count():
    async with AsyncSessionLocal() as session:
        return (await session.execute(select(func.count(PaymentLog.id)))).scalar_one()


async def test_second_request_returns_the_same_gateway_order(client, db, gateway):
    order = await _order(client, db)

    first = await _open_session(client, order)
    second = await _open_session(client, order)

    assert first.status_code == 200
    assert first.json()["amount"] == 123000
    assert first.json()["currency"] == "INR"
    assert first.json()["existing"] is False
    assert first.json()["receipt"] == f"receipt_{order['order_number']}"
    assert second.status_code == 200
    assert second.json()["id"] == first.json()["id"]
    assert second.json()["existing"] is True
    assert second.json()["idempotency_key"] == first.json()["idempotency_key"]
    assert len(gateway.calls) == 1
    assert await _log_count() == 1


async def test_session_log_starts_pending(client, db):
    order = await _order(client, db)
    session = (await _open_session(client, order)).json()

    logs = await client.get(f"/payments/orders/{order['id']}/logs", headers=auth_headers("user-1"))

    assert logs.status_code == 200
    [log] = logs.json()
    assert log["razorpay_order_id"] == session["id"]
    assert log["status"] == "PENDING"
    assert log["attempt_number"] == 1
    assert log["razorpay_payment_id"] is None


async def test_amount_outside_bounds_rejected(client, db, gateway):
    order = await _order(client, db)

    too_small = await _open_session(client, order, amount="0.50")
    too_large = await _open_session(client, order, amount="600000")

    assert too_small.status_code == 400
    assert too_small.json()["detail"]["code"] == "INVALID_AMOUNT"
    assert too_large.status_code == 400
    assert gateway.calls == []
    assert (await security_actions()).count(("invalid_payment_amount", "MEDIUM")) == 2


async def test_amount_must_match_order_total(client, db, gateway):
    order = await _order(client, db)

    resp = await _open_session(client, order, amount="1.00")

    assert resp.status_code == 400
    assert resp.json()["detail"]["code"] == "INVALID_AMOUNT"
    assert gateway.calls == []
    assert ("invalid_payment_amount", "MEDIUM") in await security_actions()


async def test_unknown_order_is_not_found(client, db):
    resp = await client.post(
        "/payments/razorpay/order", json={"order_id": 404, "amount": "10"}, headers=auth_headers("user-1")
    )
    assert resp.status_code == 404
    assert resp.json()["detail"]["code"] == "ORDER_NOT_FOUND"


async def test_other_users_order_is_forbidden(client, db, gateway):
    order = await _order(client, db, user_id="user-1")

    resp = await _open_session(client, order, user_id="intruder")

    assert resp.status_code == 403
    assert gateway.calls == []
    assert ("payment_session_forbidden", "HIGH") in await security_actions()


async def test_transient_gateway_failures_are_retried(client, db, gateway):
    order = await _order(client, db)
    gateway.failures = 2

    resp = await _open_session(client, order)

    assert resp.status_code == 200
    assert len(gateway.calls) == 3
    assert await _log_count() == 1


async def test_exhausted_retries_leave_no_log(client, db, gateway):
    order = await _order(client, db)
    gateway.failures = 3

    resp = await _open_session(client, order)

    assert resp.status_code == 500
    assert resp.json()["detail"]["code"] == "ORDER_CREATION_FAILED"
    assert len(gateway.calls) == 3
    assert await _log_count() == 0
    assert ("order_creation_failed", "HIGH") in await security_actions()


async def test_session_requires_authentication(client, db):
    resp = await client.post("/payments/razorpay/order", json={"order_id": 1, "amount": "10"})

    assert resp.status_code == 401
    assert ("unauthenticated_access", "HIGH") in await security_actions()


async def test_session_creation_is_rate_limited(client, db):
    limiter.reset()
    limiter.enabled = True
    try:
        statuses = []
        for _ in range(6):
            resp = await client.post(
                "/payments/razorpay/order", json={"order_id": 1, "amount": "10"}, headers=auth_headers("user-rl")
            )
            statuses.append(resp.status_code)
    finally:
        limiter.enabled = False
        limiter.reset()

    assert statuses[:5] == [404] * 5
    assert statuses[5] == 429
    assert resp.json()["detail"]["code"] == "RATE_LIMITED"
    assert ("rate_limit_exceeded", "MEDIUM") in await security_actions()


async def test_concurrent_session_requests_record_one_attempt(client, db, gateway, monkeypatch):
    order = await _order(client, db)
    original = gateway.create_order
    raced = []

    async def competing_request_first(**kwargs):
        if not raced:
            raced.append(True)
            async with AsyncSessionLocal() as other:
                await PaymentService.create_session(
                    other,
                    user_id="user-1",
                    data=PaymentSessionCreate(order_id=order["id"], amount=Decimal(order["total_amount"])),
                    gateway=gateway,
                    retry_policy=RetryPolicy(max_attempts=1),
                )
        return await original(**kwargs)

    monkeypatch.setattr(gateway, "create_order", competing_request_first)

    resp = await _open_session(client, order)

    assert resp.status_code == 200
    assert resp.json()["existing"] is True
    assert resp.json()["id"] == "order_test1"
    assert await _log_count() == 1
    async with AsyncSessionLocal() as session:
        log = (await session.execute(select(PaymentLog))).scalars().one()
    assert log.razorpay_order_id == "order_test1"
