from decimal import Decimal

from sqlalchemy import select

from services.order_service.models import Address, Order, PaymentStatus
from services.payment_service.cleanup import CLEANUP_REASON, cleanup_duplicate_payment_ids
from services.payment_service.models import PaymentLog
from shared.config.database import AsyncSessionLocal


async def _order(db, number):
    address = Address(user_id="u1", name="A", phone="1", street="S", state="Karnataka")
    order = Order(
        order_number=f"ORD-{number}",
        user_id="u1",
        address=address,
        subtotal_amount=Decimal("10"),
        total_amount=Decimal("10"),
    )
    db.add(order)
    await db.commit()
    return order.id


async def _log(db, order_id, payment_id, status):
    log = PaymentLog(
        order_id=order_id,
        razorpay_order_id=f"order_{order_id}",
        razorpay_payment_id=payment_id,
        amount=Decimal("10"),
        status=status,
    )
    db.add(log)
    await db.commit()
    return log.id


async def test_duplicates_keep_the_paid_attempt(db):
    first, second = await _order(db, 1), await _order(db, 2)
    paid = await _log(db, first, "pay_dup", PaymentStatus.PAID)
    stale = await _log(db, second, "pay_dup", PaymentStatus.FAILED)
    untouched = await _log(db, second, "pay_unique", PaymentStatus.FAILED)

    report = await cleanup_duplicate_payment_ids(db)

    assert report["duplicate_payment_ids"] == ["pay_dup"]
    assert report["cleared_log_ids"] == [stale]
    async with AsyncSessionLocal() as session:
        logs = {log.id: log for log in (await session.execute(select(PaymentLog))).scalars().all()}
    assert logs[paid].razorpay_payment_id == "pay_dup"
    assert logs[stale].razorpay_payment_id is None
    assert logs[stale].failure_reason == CLEANUP_REASON
    assert logs[untouched].razorpay_payment_id == "pay_unique"


async def test_dry_run_changes_nothing(db):
    order_id = await _order(db, 1)
    older = await _log(db, order_id, "pay_dup", PaymentStatus.FAILED)
    newer = await _log(db, order_id, "pay_dup", PaymentStatus.FAILED)

    report = await cleanup_duplicate_payment_ids(db, dry_run=True)

    assert report["cleared_log_ids"] == [older]
    async with AsyncSessionLocal() as session:
        logs = (await session.execute(select(PaymentLog).order_by(PaymentLog.id))).scalars().all()
    assert [log.razorpay_payment_id for log in logs] == ["pay_dup", "pay_dup"]
    assert newer == logs[1].id
