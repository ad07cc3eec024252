from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from .models import Address, Order, OrderStatus, PaymentStatus


class OrderRepository:
    @staticmethod
    async def get_order(db: AsyncSession, order_id: int, for_update: bool = False):
        stmt = select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        if for_update:
            stmt = stmt.with_for_update()
        result = await db.execute(stmt)
        return result.scalars().first()

    @staticmethod
    async def list_for_user(db: AsyncSession, user_id: str):
        result = await db.execute(
            select(Order).where(Order.user_id == user_id).order_by(Order.created_at.desc(), Order.id.desc())
        )
        return result.scalars().all()

    @staticmethod
    async def get_address(db: AsyncSession, address_id: int, user_id: str):
        result = await db.execute(
            select(Address).where(Address.id == address_id, Address.user_id == user_id)
        )
        return result.scalars().first()

    @staticmethod
    async def confirm_payment(db: AsyncSession, order_id: int, payment_id: str | None, method: str | None) -> int:
        """
        Marks the order paid unless it is already paid or cancelled.
        Returns the affected row count; 0 means the order moved on under us.
        """
        values = {"payment_status": PaymentStatus.PAID, "status": OrderStatus.CONFIRMED}
        if payment_id:
            values["payment_intent_id"] = payment_id
        if method:
            values["payment_method"] = method
        result = await db.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.payment_status != PaymentStatus.PAID,
                Order.status != OrderStatus.CANCELLED,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    @staticmethod
    async def cancel_unpaid(db: AsyncSession, order_id: int) -> int:
        """Cancels the order only while its payment is still pending."""
        result = await db.execute(
            update(Order)
            .where(Order.id == order_id, Order.payment_status == PaymentStatus.PENDING)
            .values(payment_status=PaymentStatus.FAILED, status=OrderStatus.CANCELLED)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
