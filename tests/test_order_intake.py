from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError

from conftest import SHIPPING_ADDRESS, add_product, add_tax, auth_headers, place_order
from services.cart_service.models import CartItem
from services.cart_service.repository import CartRepository
from services.order_service.models import Order, OrderItem, TaxType
from services.product_service.models import Product
from services.product_service.repository import ProductRepository
from shared.config.database import AsyncSessionLocal


async def _stock(product_id):
    async with AsyncSessionLocal() as session:
        return (await session.get(Product, product_id)).stock


async def _order_count():
    async with AsyncSessionLocal() as session:
        return (await session.execute(select(func.count(Order.id)))).scalar_one()


async def test_order_totals_include_tax_and_shipping(client, db):
    product_id = await add_product(db, price="500.00", stock=5, category="Stationery")
    await add_tax(db, "GST", TaxType.GST, 18)

    resp = await place_order(client, "user-1", [{"product_id": product_id, "quantity": 2}], shipping_fee="50")

    assert resp.status_code == 201
    body = resp.json()
    assert Decimal(body["subtotal_amount"]) == Decimal("1000")
    assert Decimal(body["tax_amount"]) == Decimal("180")
    assert Decimal(body["shipping_fee"]) == Decimal("50")
    assert Decimal(body["total_amount"]) == Decimal("1230")
    assert body["status"] == "PENDING"
    assert body["payment_status"] == "PENDING"
    assert body["order_number"].startswith("ORD")
    assert body["tax_breakdown"][0]["name"] == "GST"
    assert sum(Decimal(i["price"]) * i["quantity"] for i in body["items"]) == Decimal(body["subtotal_amount"])
    assert body["address"]["state"] == "Karnataka"
    assert await _stock(product_id) == 3


async def test_order_clears_cart(client, db):
    product_id = await add_product(db)
    await client.post("/cart/items", json={"product_id": product_id, "quantity": 1}, headers=auth_headers("user-1"))

    resp = await place_order(client, "user-1", [{"product_id": product_id, "quantity": 1}])

    assert resp.status_code == 201
    cart = await client.get("/cart/", headers=auth_headers("user-1"))
    assert cart.json()["items"] == []


async def test_empty_items_rejected(client, db):
    resp = await place_order(client, "user-1", [])
    assert resp.status_code == 400
    assert resp.json()["detail"]["code"] == "EMPTY_CART"


async def test_missing_shipping_state_rejected(client, db):
    product_id = await add_product(db)
    address = {**SHIPPING_ADDRESS, "state": "  "}

    resp = await place_order(client, "user-1", [{"product_id": product_id, "quantity": 1}], address=address)

    assert resp.status_code == 400
    assert resp.json()["detail"]["code"] == "SHIPPING_STATE_REQUIRED"
    assert await _stock(product_id) == 10


async def test_unknown_and_inactive_products_rejected(client, db):
    inactive_id = await add_product(db, name="Old model", is_active=False)

    missing = await place_order(client, "user-1", [{"product_id": 9999, "quantity": 1}])
    inactive = await place_order(client, "user-1", [{"product_id": inactive_id, "quantity": 1}])

    assert missing.json()["detail"]["code"] == "PRODUCT_NOT_FOUND"
    assert inactive.json()["detail"]["code"] == "PRODUCT_INACTIVE"
    assert await _order_count() == 0


async def test_intake_is_all_or_nothing(client, db):
    plenty = await add_product(db, name="Pen", stock=10)
    scarce = await add_product(db, name="Lamp", stock=1)

    resp = await place_order(
        client,
        "user-1",
        [{"product_id": plenty, "quantity": 3}, {"product_id": scarce, "quantity": 2}],
    )

    assert resp.status_code == 400
    assert resp.json()["detail"]["code"] == "INSUFFICIENT_STOCK"
    assert await _order_count() == 0
    assert await _stock(plenty) == 10
    assert await _stock(scarce) == 1


async def test_only_one_of_two_orders_for_last_units_succeeds(client, db):
    product_id = await add_product(db, stock=2)

    first = await place_order(client, "user-1", [{"product_id": product_id, "quantity": 2}])
    second = await place_order(client, "user-2", [{"product_id": product_id, "quantity": 2}])

    assert first.status_code == 201
    assert second.status_code == 400
    assert second.json()["detail"]["code"] == "INSUFFICIENT_STOCK"
    assert await _stock(product_id) == 0
    assert await _order_count() == 1


async def test_stock_taken_after_validation_rejects_order(client, db, monkeypatch):
    product_id = await add_product(db, stock=2)
    original = ProductRepository.get_products_by_ids

    async def read_then_sell_out(session, product_ids):
        products = await original(session, product_ids)
        # Another checkout takes the stock between the read and the write
        async with AsyncSessionLocal() as other:
            await other.execute(update(Product).where(Product.id == product_id).values(stock=0))
            await other.commit()
        return products

    monkeypatch.setattr(ProductRepository, "get_products_by_ids", read_then_sell_out)

    resp = await place_order(client, "user-1", [{"product_id": product_id, "quantity": 2}])

    assert resp.status_code == 400
    assert resp.json()["detail"]["code"] == "INSUFFICIENT_STOCK"
    assert await _order_count() == 0
    assert await _stock(product_id) == 0


async def test_order_items_keep_price_at_order_time(client, db):
    product_id = await add_product(db, price="250.00")
    resp = await place_order(client, "user-1", [{"product_id": product_id, "quantity": 1}])

    async with AsyncSessionLocal() as session:
        await session.execute(update(Product).where(Product.id == product_id).values(price=Decimal("999.00")))
        await session.commit()
        item = (await session.execute(select(OrderItem))).scalars().one()

    assert item.price == Decimal("250.00")
    detail = await client.get(f"/orders/{resp.json()['id']}", headers=auth_headers("user-1"))
    assert Decimal(detail.json()["items"][0]["price"]) == Decimal("250.00")


async def test_orders_are_visible_only_to_their_owner(client, db):
    product_id = await add_product(db)
    resp = await place_order(client, "user-1", [{"product_id": product_id, "quantity": 1}])
    order_id = resp.json()["id"]

    mine = await client.get("/orders/", headers=auth_headers("user-1"))
    theirs = await client.get("/orders/", headers=auth_headers("user-2"))
    peek = await client.get(f"/orders/{order_id}", headers=auth_headers("user-2"))

    assert [o["id"] for o in mine.json()] == [order_id]
    assert theirs.json() == []
    assert peek.status_code == 404


async def test_existing_address_is_reused(client, db):
    product_id = await add_product(db)
    first = await place_order(client, "user-1", [{"product_id": product_id, "quantity": 1}])
    address_id = first.json()["address"]["id"]

    second = await place_order(client, "user-1", [{"product_id": product_id, "quantity": 1}], address={"id": address_id})
    foreign = await place_order(client, "user-2", [{"product_id": product_id, "quantity": 1}], address={"id": address_id})

    assert second.status_code == 201
    assert second.json()["address"]["id"] == address_id
    assert foreign.json()["detail"]["code"] == "ADDRESS_NOT_FOUND"


async def test_orders_require_authentication(client, db):
    resp = await client.post("/orders/", json={"items": []})
    assert resp.status_code == 401


async def test_cart_rows_are_per_user(client, db):
    product_id = await add_product(db)
    await client.post("/cart/items", json={"product_id": product_id, "quantity": 2}, headers=auth_headers("user-1"))
    await client.post("/cart/items", json={"product_id": product_id, "quantity": 1}, headers=auth_headers("user-1"))

    cart = await client.get("/cart/", headers=auth_headers("user-1"))
    other = await client.get("/cart/", headers=auth_headers("user-2"))

    assert cart.json()["items"] == [{"product_id": product_id, "quantity": 3}]
    assert other.json()["items"] == []
    async with AsyncSessionLocal() as session:
        assert (await session.execute(select(func.count(CartItem.id)))).scalar_one() == 1


async def test_order_stands_when_cart_clear_fails(client, db, monkeypatch):
    product_id = await add_product(db, stock=5)

    async def broken_clear(session, user_id):
        await session.execute(select(1))
        raise OperationalError("DELETE FROM cart_items", {}, Exception("database is locked"))

    monkeypatch.setattr(CartRepository, "clear_cart", broken_clear)

    resp = await place_order(client, "user-1", [{"product_id": product_id, "quantity": 2}])

    assert resp.status_code == 201
    assert resp.json()["items"][0]["quantity"] == 2
    assert await _order_count() == 1
    assert await _stock(product_id) == 3


async def test_invalid_tax_input_rejects_order(client, db):
    product_id = await add_product(db, name="Misconfigured", price="-5.00")

    resp = await place_order(client, "user-1", [{"product_id": product_id, "quantity": 1}])

    assert resp.status_code == 400
    assert resp.json()["detail"]["code"] == "TAX_VALIDATION_FAILED"
    assert "Item Misconfigured has negative price" in resp.json()["detail"]["message"]
    assert await _order_count() == 0
    assert await _stock(product_id) == 10
