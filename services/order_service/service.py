import secrets
import string
import time
from decimal import Decimal

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from services.cart_service.service import CartService
from services.product_service.repository import ProductRepository
from shared.observability.metrics import ecomm_checkout_duration_seconds, ecomm_orders_created_total

from .models import Address, Order, OrderItem, OrderStatus, PaymentStatus
from .repository import OrderRepository
from .schemas import OrderCreate
from .tax import TaxEngine, TaxItem, TaxLocation, money

logger = structlog.get_logger(__name__)

_ORDER_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


class OrderIntakeError(Exception):
    """A rejected order. Nothing has been persisted when this is raised."""

    def __init__(self, code: str, message: str, status_code: int = 400):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code

    @property
    def detail(self) -> dict:
        return {"code": self.code, "message": self.message}


def generate_order_number() -> str:
    suffix = "".join(secrets.choice(_ORDER_SUFFIX_ALPHABET) for _ in range(4))
    return f"ORD{int(time.time() * 1000)}{suffix}"


class OrderService:
    @staticmethod
    async def create_order(db: AsyncSession, user_id: str, data: OrderCreate, tax_engine: TaxEngine) -> Order:
        started = time.perf_counter()
        try:
            order = await OrderService._place_order(db, user_id, data, tax_engine)
        except OrderIntakeError as exc:
            ecomm_orders_created_total.labels(status="rejected").inc()
            logger.info("order_rejected", user_id=user_id, code=exc.code, reason=exc.message)
            raise
        ecomm_orders_created_total.labels(status="created").inc()
        ecomm_checkout_duration_seconds.observe(time.perf_counter() - started)
        logger.info(
            "order_created",
            user_id=user_id,
            order_id=order.id,
            order_number=order.order_number,
            total_amount=str(order.total_amount),
        )

        # The order stands even if the cart can't be emptied
        await CartService.clear_cart_best_effort(user_id)
        return order

    @staticmethod
    async def _place_order(db: AsyncSession, user_id: str, data: OrderCreate, tax_engine: TaxEngine) -> Order:
        if not data.items:
            raise OrderIntakeError("EMPTY_CART", "At least one item is required")

        quantities: dict[int, int] = {}
        for item in data.items:
            if item.quantity <= 0:
                raise OrderIntakeError("INVALID_QUANTITY", f"Invalid quantity for product {item.product_id}")
            quantities[item.product_id] = quantities.get(item.product_id, 0) + item.quantity

        shipping = data.shipping_address
        if shipping is None:
            raise OrderIntakeError("ADDRESS_REQUIRED", "Shipping address is required")

        address = None
        if shipping.id is not None:
            address = await OrderRepository.get_address(db, shipping.id, user_id)
            if address is None:
                raise OrderIntakeError("ADDRESS_NOT_FOUND", "Shipping address not found")
            location = TaxLocation(state=address.state, city=address.city or "", pincode=address.pincode or "")
        else:
            location = TaxLocation(state=shipping.state.strip(), city=shipping.city, pincode=shipping.pincode)
        if not location.state:
            raise OrderIntakeError("SHIPPING_STATE_REQUIRED", "Shipping state is required for tax calculation")

        products = await ProductRepository.get_products_by_ids(db, list(quantities))
        lines: list[TaxItem] = []
        for product_id, quantity in quantities.items():
            product = products.get(product_id)
            if product is None:
                raise OrderIntakeError("PRODUCT_NOT_FOUND", f"Product not found: {product_id}")
            if not product.is_active:
                raise OrderIntakeError("PRODUCT_INACTIVE", f"Product is no longer available: {product.name}")
            if product.stock < quantity:
                raise OrderIntakeError("INSUFFICIENT_STOCK", f"Insufficient stock for: {product.name}")
            lines.append(
                TaxItem(
                    id=product.id,
                    name=product.name,
                    price=money(product.price),
                    quantity=quantity,
                    category=product.category_name,
                )
            )

        subtotal = money(sum((line.line_total for line in lines), Decimal("0")))
        shipping_fee = money(data.shipping_fee)
        report = await tax_engine.validate(db, lines, subtotal, shipping_fee, location)
        if not report.valid:
            raise OrderIntakeError("TAX_VALIDATION_FAILED", "; ".join(report.errors))
        if report.warnings:
            logger.warning("tax_validation_warnings", user_id=user_id, warnings=report.warnings)
        tax = await tax_engine.calculate(db, lines, subtotal, shipping_fee, location)

        try:
            for line in lines:
                if not await ProductRepository.decrement_stock(db, line.id, line.quantity):
                    raise OrderIntakeError("INSUFFICIENT_STOCK", f"Insufficient stock for: {line.name}")

            if address is None:
                address = Address(
                    user_id=user_id,
                    name=shipping.name,
                    phone=shipping.phone,
                    street=shipping.street,
                    city=shipping.city,
                    state=location.state,
                    pincode=shipping.pincode,
                    landmark=shipping.landmark,
                    type=shipping.type,
                )
                db.add(address)

            order = Order(
                order_number=generate_order_number(),
                user_id=user_id,
                address=address,
                status=OrderStatus.PENDING,
                payment_status=PaymentStatus.PENDING,
                payment_method=data.payment_method,
                subtotal_amount=subtotal,
                tax_amount=tax.total_tax_amount,
                shipping_fee=shipping_fee,
                total_amount=tax.final_total,
                tax_breakdown=tax.tax_breakdown,
                notes=data.notes,
                items=[
                    OrderItem(product_id=line.id, name=line.name, quantity=line.quantity, price=line.price)
                    for line in lines
                ],
            )
            db.add(order)
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        return order

    @staticmethod
    async def get_order_for_user(db: AsyncSession, order_id: int, user_id: str):
        order = await OrderRepository.get_order(db, order_id)
        if order is None or order.user_id != user_id:
            return None
        return order

    @staticmethod
    async def list_orders(db: AsyncSession, user_id: str):
        return await OrderRepository.list_for_user(db, user_id)
