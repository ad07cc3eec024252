"""
Append-only security/audit trail.

Every authorization failure, signature mismatch and duplicate-payment
detection ends up here: one row in ``security_logs`` plus a structured log
line. Rows are written in their own session so an audit record survives a
rolled-back business transaction, and a failing write never breaks the
request that triggered it.
"""
import enum
from datetime import datetime, timezone

import structlog
from fastapi import Request
from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String
from sqlalchemy import Enum as SAEnum
from sqlalchemy.exc import SQLAlchemyError

from shared.config.database import AsyncSessionLocal, Base
from shared.observability.metrics import ecomm_security_events_total

logger = structlog.get_logger(__name__)


class Severity(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class SecurityLog(Base):
    __tablename__ = "security_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=True, index=True)
    action = Column(String, nullable=False, index=True)
    severity = Column(SAEnum(Severity, native_enum=False), nullable=False)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    details = Column(JSON, nullable=True)
    blocked = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))


def client_ip(request: Request | None) -> str:
    """Best-effort client address, honouring the usual proxy headers."""
    if request is None:
        return "unknown"
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    for header in ("cf-connecting-ip", "x-real-ip"):
        value = request.headers.get(header)
        if value:
            return value.strip()
    return request.client.host if request.client else "unknown"


async def record_security_event(
    action: str,
    severity: Severity,
    request: Request | None = None,
    user_id: str | None = None,
    details: dict | None = None,
    blocked: bool = False,
) -> None:
    ip_address = client_ip(request)
    user_agent = request.headers.get("user-agent") if request is not None else None

    ecomm_security_events_total.labels(severity=severity.value).inc()
    log = logger.critical if severity == Severity.CRITICAL else logger.warning
    log(
        "security_event",
        action=action,
        severity=severity.value,
        user_id=user_id,
        ip_address=ip_address,
        blocked=blocked,
        details=details or {},
    )

    try:
        async with AsyncSessionLocal() as session:
            session.add(
                SecurityLog(
                    user_id=user_id,
                    action=action,
                    severity=severity,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    details=details or {},
                    blocked=blocked,
                )
            )
            await session.commit()
    except SQLAlchemyError as exc:
        # The log line above already carries the event
        logger.error("security_event_persist_failed", action=action, error=str(exc))
