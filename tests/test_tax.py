from decimal import Decimal

from conftest import add_tax
from services.order_service.models import TaxType
from services.order_service.tax import TaxEngine, TaxItem, TaxLocation

BENGALURU = TaxLocation(state="Karnataka", city="Bengaluru", pincode="560001")
BOOK = TaxItem(id=1, name="Novel", price=Decimal("400.00"), quantity=2, category="Books")
LAMP = TaxItem(id=2, name="Lamp", price=Decimal("200.00"), quantity=1, category="Home Decor")


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


async def test_gst_applies_to_subtotal(db):
    await add_tax(db, "GST", TaxType.GST, 18)
    engine = TaxEngine()

    result = await engine.calculate(db, [BOOK, LAMP], Decimal("1000.00"), Decimal("50.00"), BENGALURU)

    assert result.total_tax_amount == Decimal("180.00")
    assert result.final_total == Decimal("1230.00")
    assert result.tax_breakdown[0]["applied_to"] == "subtotal"
    assert result.tax_breakdown[0]["applicable_items"] == [1, 2]


async def test_location_and_category_filters(db):
    await add_tax(db, "Karnataka cess", TaxType.STATE_TAX, 2, applicable_in=["karnataka"])
    await add_tax(db, "Maharashtra cess", TaxType.STATE_TAX, 3, applicable_in=["Maharashtra"])
    await add_tax(db, "Pincode levy", TaxType.CITY_TAX, 1, applicable_in=["5600"])
    await add_tax(db, "Book duty", TaxType.PERCENTAGE, 5, product_types=["book"])
    engine = TaxEngine()

    result = await engine.calculate(db, [BOOK, LAMP], Decimal("1000.00"), Decimal("0"), BENGALURU)

    names = {line["name"]: Decimal(line["amount"]) for line in result.tax_breakdown}
    assert names == {
        "Karnataka cess": Decimal("20.00"),
        "Pincode levy": Decimal("10.00"),
        "Book duty": Decimal("40.00"),
    }
    assert result.total_tax_amount == Decimal("70.00")


async def test_amount_window_and_fixed_amounts(db):
    await add_tax(db, "Luxury surcharge", TaxType.PERCENTAGE, 10, min_amount=Decimal("5000"))
    await add_tax(db, "Handling", TaxType.FIXED_AMOUNT, 15, max_amount=Decimal("2000"))
    engine = TaxEngine()

    small = await engine.calculate(db, [BOOK], Decimal("800.00"), Decimal("0"), BENGALURU)

    assert [line["name"] for line in small.tax_breakdown] == ["Handling"]
    assert small.total_tax_amount == Decimal("15.00")


async def test_inactive_rules_are_ignored(db):
    await add_tax(db, "Old GST", TaxType.GST, 12, is_active=False)
    result = await TaxEngine().calculate(db, [BOOK], Decimal("800.00"), Decimal("0"), BENGALURU)
    assert result.total_tax_amount == Decimal("0.00")
    assert result.final_total == Decimal("800.00")


async def test_rules_are_cached_until_ttl_expires(db):
    clock = Clock()
    engine = TaxEngine(cache_ttl=300, clock=clock)
    await add_tax(db, "GST", TaxType.GST, 18)
    assert len(await engine.load_rules(db)) == 1

    await add_tax(db, "City tax", TaxType.CITY_TAX, 1)
    clock.now = 299
    assert len(await engine.load_rules(db)) == 1

    clock.now = 301
    assert len(await engine.load_rules(db)) == 2


async def test_validation_reports_errors_and_warnings(db):
    await add_tax(db, "GST", TaxType.GST, 30)
    await add_tax(db, "GST extra", TaxType.GST, 25)
    bad_item = TaxItem(id=3, name="Broken", price=Decimal("-1"), quantity=0)

    report = await TaxEngine().validate(
        db, [bad_item], Decimal("-5"), Decimal("-1"), TaxLocation(state="", city="", pincode="")
    )

    assert not report.valid
    assert "Subtotal cannot be negative" in report.errors
    assert "Shipping fee cannot be negative" in report.errors
    assert "Item Broken has negative price" in report.errors
    assert "Item Broken has invalid quantity" in report.errors
    assert "Shipping state is required for tax calculation" in report.errors
    assert any("Pincode" in warning for warning in report.warnings)
    assert any("Multiple GST" in warning for warning in report.warnings)
    assert any("exceeds 50%" in warning for warning in report.warnings)


async def test_location_summary_endpoint(client, db):
    await add_tax(db, "GST", TaxType.GST, 18)
    await add_tax(db, "Karnataka cess", TaxType.STATE_TAX, 2, applicable_in=["Karnataka"])
    await add_tax(db, "Handling", TaxType.FIXED_AMOUNT, 15)

    resp = await client.get("/orders/tax-summary", params={"state": "Karnataka"})

    assert resp.status_code == 200
    assert Decimal(resp.json()["estimated_total_rate"]) == Decimal("20")
    assert len(resp.json()["applicable_taxes"]) == 3
