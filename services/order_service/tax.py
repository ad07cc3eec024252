"""
Tax engine.

Active TaxConfiguration rows are loaded once and cached for a short TTL;
every calculation then runs in memory against the cached snapshot. A rule
applies to an order when its amount window, location tokens and product
categories all match (an empty token list matches everything).
"""
import time
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config.settings import settings

from .models import TaxConfiguration, TaxType

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def money(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class TaxItem:
    id: int
    name: str
    price: Decimal
    quantity: int
    category: str = ""

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity


@dataclass(frozen=True)
class TaxLocation:
    state: str
    city: str = ""
    pincode: str = ""


@dataclass(frozen=True)
class TaxRule:
    id: int
    name: str
    type: TaxType
    rate: Decimal
    applicable_in: tuple[str, ...] = ()
    product_types: tuple[str, ...] = ()
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None

    @classmethod
    def from_model(cls, config: TaxConfiguration) -> "TaxRule":
        return cls(
            id=config.id,
            name=config.name,
            type=config.type,
            rate=Decimal(config.rate),
            applicable_in=tuple(config.applicable_in or ()),
            product_types=tuple(config.product_types or ()),
            min_amount=Decimal(config.min_amount) if config.min_amount is not None else None,
            max_amount=Decimal(config.max_amount) if config.max_amount is not None else None,
        )

    def matches_location(self, location: TaxLocation) -> bool:
        if not self.applicable_in:
            return True
        state, city = location.state.lower(), location.city.lower()
        return any(
            token.lower() in state or token.lower() in city or location.pincode.startswith(token)
            for token in self.applicable_in
        )

    def matches_item(self, item: TaxItem) -> bool:
        category = item.category.lower()
        return any(kind.lower() in category for kind in self.product_types)

    def as_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "type": self.type.value, "rate": str(self.rate)}


@dataclass
class TaxResult:
    subtotal: Decimal
    total_tax_amount: Decimal
    final_total: Decimal
    tax_breakdown: list[dict] = field(default_factory=list)
    applicable_taxes: list[dict] = field(default_factory=list)


@dataclass
class TaxValidation:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


class TaxEngine:
    def __init__(self, cache_ttl: float = 300.0, clock=time.monotonic):
        self.cache_ttl = cache_ttl
        self._clock = clock
        self._rules: list[TaxRule] = []
        self._loaded_at: float | None = None

    def clear_cache(self):
        self._rules = []
        self._loaded_at = None

    async def load_rules(self, db: AsyncSession) -> list[TaxRule]:
        now = self._clock()
        if self._loaded_at is not None and now - self._loaded_at < self.cache_ttl:
            return self._rules

        result = await db.execute(
            select(TaxConfiguration)
            .where(TaxConfiguration.is_active.is_(True))
            .order_by(TaxConfiguration.type, TaxConfiguration.rate, TaxConfiguration.id)
        )
        self._rules = [TaxRule.from_model(config) for config in result.scalars().all()]
        self._loaded_at = now
        logger.info("tax_rules_loaded", count=len(self._rules))
        return self._rules

    @staticmethod
    def applicable_rules(
        rules: list[TaxRule], items: list[TaxItem], subtotal: Decimal, location: TaxLocation
    ) -> list[TaxRule]:
        applicable = []
        for rule in rules:
            if rule.min_amount and subtotal < rule.min_amount:
                continue
            if rule.max_amount and subtotal > rule.max_amount:
                continue
            if not rule.matches_location(location):
                continue
            if rule.product_types and not any(rule.matches_item(item) for item in items):
                continue
            applicable.append(rule)
        return applicable

    @staticmethod
    def rule_amount(rule: TaxRule, subtotal: Decimal, matched_items: list[TaxItem]) -> Decimal:
        if rule.type == TaxType.FIXED_AMOUNT:
            return rule.rate
        if rule.type == TaxType.PERCENTAGE and rule.product_types:
            base = sum((item.line_total for item in matched_items), Decimal("0"))
            return base * rule.rate / HUNDRED
        # PERCENTAGE without product types, GST, STATE_TAX and CITY_TAX all apply to the subtotal
        return subtotal * rule.rate / HUNDRED

    async def calculate(
        self,
        db: AsyncSession,
        items: list[TaxItem],
        subtotal: Decimal,
        shipping_fee: Decimal,
        location: TaxLocation,
    ) -> TaxResult:
        rules = self.applicable_rules(await self.load_rules(db), items, subtotal, location)

        breakdown = []
        total_tax = Decimal("0")
        for rule in rules:
            matched = [item for item in items if rule.matches_item(item)] if rule.product_types else items
            amount = self.rule_amount(rule, subtotal, matched)
            if amount <= 0:
                continue
            total_tax += amount
            breakdown.append(
                {
                    "tax_id": rule.id,
                    "name": rule.name,
                    "type": rule.type.value,
                    "rate": str(rule.rate),
                    "amount": str(money(amount)),
                    "applied_to": "items" if rule.product_types else "subtotal",
                    "applicable_items": [item.id for item in matched],
                }
            )

        total_tax = money(total_tax)
        return TaxResult(
            subtotal=money(subtotal),
            total_tax_amount=total_tax,
            final_total=money(subtotal + total_tax + shipping_fee),
            tax_breakdown=breakdown,
            applicable_taxes=[rule.as_dict() for rule in rules],
        )

    async def validate(
        self,
        db: AsyncSession,
        items: list[TaxItem],
        subtotal: Decimal,
        shipping_fee: Decimal,
        location: TaxLocation,
    ) -> TaxValidation:
        report = TaxValidation()
        if subtotal < 0:
            report.errors.append("Subtotal cannot be negative")
        if shipping_fee < 0:
            report.errors.append("Shipping fee cannot be negative")
        if not items:
            report.errors.append("At least one item is required")
        for item in items:
            if item.price < 0:
                report.errors.append(f"Item {item.name} has negative price")
            if item.quantity <= 0:
                report.errors.append(f"Item {item.name} has invalid quantity")
        if not location.state:
            report.errors.append("Shipping state is required for tax calculation")
        if not location.pincode:
            report.warnings.append("Pincode not provided - some location-specific taxes may not apply")

        rules = self.applicable_rules(await self.load_rules(db), items, subtotal, location)
        if sum(1 for rule in rules if rule.type == TaxType.GST) > 1:
            report.warnings.append("Multiple GST rules applicable - please review tax configuration")
        if sum(1 for rule in rules if rule.type == TaxType.STATE_TAX) > 1:
            report.warnings.append("Multiple state tax rules applicable - please review tax configuration")
        if sum((rule.rate for rule in rules), Decimal("0")) > 50:
            report.warnings.append("Combined tax rate exceeds 50% - please verify tax configuration")
        return report

    async def summary_for_location(self, db: AsyncSession, state: str, city: str = "") -> dict:
        location = TaxLocation(state=state, city=city)
        rules = [
            rule for rule in await self.load_rules(db)
            if not rule.applicable_in
            or any(
                token.lower() in state.lower() or (city and token.lower() in city.lower())
                for token in rule.applicable_in
            )
        ]
        # Fixed amounts can't be expressed as a rate without an order value
        estimated = sum((rule.rate for rule in rules if rule.type != TaxType.FIXED_AMOUNT), Decimal("0"))
        return {
            "state": location.state,
            "city": location.city,
            "applicable_taxes": [
                {
                    **rule.as_dict(),
                    "min_amount": str(rule.min_amount) if rule.min_amount is not None else None,
                    "max_amount": str(rule.max_amount) if rule.max_amount is not None else None,
                }
                for rule in rules
            ],
            "estimated_total_rate": str(estimated),
        }


tax_engine = TaxEngine(cache_ttl=settings.tax_cache_ttl_seconds)


def get_tax_engine() -> TaxEngine:
    return tax_engine
