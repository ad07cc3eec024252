from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.order_service.models import PaymentStatus

from .models import PaymentLog


class PaymentRepository:
    @staticmethod
    async def create_log(db: AsyncSession, log: PaymentLog):
        db.add(log)
        await db.commit()
        return log

    @staticmethod
    async def get_log(db: AsyncSession, log_id: int):
        result = await db.execute(
            select(PaymentLog).where(PaymentLog.id == log_id).execution_options(populate_existing=True)
        )
        return result.scalars().first()

    @staticmethod
    async def get_latest_by_gateway_order_id(db: AsyncSession, gateway_order_id: str):
        """Latest attempt for a gateway order id, newest first if duplicates exist."""
        result = await db.execute(
            select(PaymentLog)
            .where(PaymentLog.razorpay_order_id == gateway_order_id)
            .order_by(PaymentLog.created_at.desc(), PaymentLog.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    @staticmethod
    async def get_open_log_for_order(db: AsyncSession, order_id: int):
        result = await db.execute(
            select(PaymentLog)
            .where(
                PaymentLog.order_id == order_id,
                PaymentLog.status != PaymentStatus.FAILED,
                PaymentLog.razorpay_order_id.is_not(None),
            )
            .order_by(PaymentLog.created_at.desc(), PaymentLog.id.desc())
            .limit(1)
        )
        return result.scalars().first()

    @staticmethod
    async def count_attempts(db: AsyncSession, order_id: int) -> int:
        result = await db.execute(select(func.count(PaymentLog.id)).where(PaymentLog.order_id == order_id))
        return result.scalar_one()

    @staticmethod
    async def list_for_order(db: AsyncSession, order_id: int):
        result = await db.execute(
            select(PaymentLog).where(PaymentLog.order_id == order_id).order_by(PaymentLog.id)
        )
        return result.scalars().all()

    @staticmethod
    async def find_paid_elsewhere(db: AsyncSession, payment_id: str, exclude_log_id: int):
        result = await db.execute(
            select(PaymentLog).where(
                PaymentLog.razorpay_payment_id == payment_id,
                PaymentLog.status == PaymentStatus.PAID,
                PaymentLog.id != exclude_log_id,
            )
        )
        return result.scalars().first()

    @staticmethod
    async def mark_paid(
        db: AsyncSession,
        log_id: int,
        payment_id: str | None,
        signature: str | None = None,
        method: str | None = None,
        gateway_response: dict | None = None,
    ) -> int:
        """
        PENDING -> PAID, only if no other payment id was recorded on the row.
        Returns the affected row count.
        """
        conditions = [PaymentLog.id == log_id, PaymentLog.status == PaymentStatus.PENDING]
        values = {"status": PaymentStatus.PAID, "failure_reason": None}
        if payment_id:
            conditions.append(
                or_(PaymentLog.razorpay_payment_id.is_(None), PaymentLog.razorpay_payment_id == payment_id)
            )
            values["razorpay_payment_id"] = payment_id
        if signature:
            values["razorpay_signature"] = signature
        if method:
            values["method"] = method
        if gateway_response is not None:
            values["gateway_response"] = gateway_response
        result = await db.execute(
            update(PaymentLog)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    @staticmethod
    async def mark_failed(
        db: AsyncSession,
        log_id: int,
        reason: str,
        payment_id: str | None = None,
        gateway_response: dict | None = None,
    ) -> int:
        """PENDING -> FAILED. A PAID row is never failed."""
        conditions = [PaymentLog.id == log_id, PaymentLog.status == PaymentStatus.PENDING]
        values = {
            "status": PaymentStatus.FAILED,
            "failure_reason": reason,
            "retry_count": PaymentLog.retry_count + 1,
        }
        if payment_id:
            conditions.append(
                or_(PaymentLog.razorpay_payment_id.is_(None), PaymentLog.razorpay_payment_id == payment_id)
            )
            values["razorpay_payment_id"] = payment_id
        if gateway_response is not None:
            values["gateway_response"] = gateway_response
        result = await db.execute(
            update(PaymentLog)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    @staticmethod
    async def find_duplicate_payment_ids(db: AsyncSession) -> list[str]:
        result = await db.execute(
            select(PaymentLog.razorpay_payment_id)
            .where(PaymentLog.razorpay_payment_id.is_not(None))
            .group_by(PaymentLog.razorpay_payment_id)
            .having(func.count(PaymentLog.id) > 1)
        )
        return list(result.scalars().all())

    @staticmethod
    async def logs_with_payment_id(db: AsyncSession, payment_id: str):
        result = await db.execute(
            select(PaymentLog)
            .where(PaymentLog.razorpay_payment_id == payment_id)
            .order_by(PaymentLog.created_at.desc(), PaymentLog.id.desc())
        )
        return result.scalars().all()
