"""
One-off maintenance: detach payment ids recorded on more than one attempt.

The paid attempt (or else the newest one) keeps the id; the others have it
cleared and a note left in ``failure_reason``. Run with
``python -m services.payment_service.cleanup`` (add ``--dry-run`` to only report).
"""
import argparse
import asyncio

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from services.order_service.models import PaymentStatus
from shared.config.database import AsyncSessionLocal
from shared.observability.setup import configure_logging

from .models import PaymentLog
from .repository import PaymentRepository

logger = structlog.get_logger(__name__)

CLEANUP_REASON = "Duplicate payment ID cleared during cleanup"


async def cleanup_duplicate_payment_ids(db: AsyncSession, dry_run: bool = False) -> dict:
    duplicates = await PaymentRepository.find_duplicate_payment_ids(db)
    cleared: list[int] = []

    for payment_id in duplicates:
        logs = await PaymentRepository.logs_with_payment_id(db, payment_id)
        # A PAID attempt always keeps its id; otherwise the newest one does
        keep = next((log for log in logs if log.status == PaymentStatus.PAID), logs[0])
        stale = [log for log in logs if log.id != keep.id]
        logger.info(
            "duplicate_payment_id",
            payment_id=payment_id,
            kept_log_id=keep.id,
            stale_log_ids=[log.id for log in stale],
        )
        cleared.extend(log.id for log in stale)

    if cleared and not dry_run:
        await db.execute(
            update(PaymentLog)
            .where(PaymentLog.id.in_(cleared))
            .values(razorpay_payment_id=None, failure_reason=CLEANUP_REASON)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    logger.info("duplicate_cleanup_finished", duplicates=len(duplicates), cleared=len(cleared), dry_run=dry_run)
    return {"duplicate_payment_ids": duplicates, "cleared_log_ids": cleared, "dry_run": dry_run}


async def main(dry_run: bool):
    configure_logging()
    async with AsyncSessionLocal() as db:
        await cleanup_duplicate_payment_ids(db, dry_run=dry_run)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("--dry-run", action="store_true", help="report duplicates without modifying rows")
    args = parser.parse_args()
    asyncio.run(main(args.dry_run))
