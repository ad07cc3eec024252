from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, Numeric, String, text
from sqlalchemy import Enum as SAEnum

from services.order_service.models import PaymentStatus, utcnow
from shared.config.database import Base


class PaymentLog(Base):
    """One payment attempt against one order."""
    __tablename__ = "payment_logs"
    __table_args__ = (
        # At most one PAID row per gateway payment id; PENDING/FAILED rows are unconstrained
        Index(
            "uq_payment_logs_paid_payment_id",
            "razorpay_payment_id",
            unique=True,
            postgresql_where=text("status = 'PAID'"),
            sqlite_where=text("status = 'PAID'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    razorpay_order_id = Column(String, nullable=True, index=True)
    razorpay_payment_id = Column(String, nullable=True, index=True)
    razorpay_signature = Column(String, nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="INR")
    status = Column(SAEnum(PaymentStatus, native_enum=False), nullable=False, default=PaymentStatus.PENDING)
    method = Column(String, nullable=True)
    gateway = Column(String, nullable=False, default="razorpay")
    gateway_response = Column(JSON, nullable=True)
    failure_reason = Column(String, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    attempt_number = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
