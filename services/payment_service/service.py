"""
Payment sessions and reconciliation.

Two independent paths confirm a payment: the browser callback
(``verify_payment``) and the gateway webhook (``handle_webhook``). They are
expected to race. Neither takes a lock; both write through conditional
updates that only succeed while the attempt is still PENDING, and both run
the same guards first. The loser of a race sees zero affected rows (or a
unique violation on the paid payment id), rolls back, and re-reads the
rows: if they hold exactly the state it was about to write, that is
success; anything else is a conflict.
"""
import time
from decimal import ROUND_HALF_UP, Decimal

import structlog
from fastapi import Request
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.cart_service.repository import CartRepository
from services.order_service.models import Order, OrderStatus, PaymentStatus
from services.order_service.repository import OrderRepository
from services.order_service.tax import money
from shared.config.settings import settings
from shared.observability.metrics import (
    ecomm_payment_sessions_total,
    ecomm_payment_verifications_total,
    ecomm_webhook_events_total,
)
from shared.security.audit import Severity, record_security_event

from .events import (
    InvalidWebhookPayload,
    OrderPaidEvent,
    PaymentCapturedEvent,
    PaymentFailedEvent,
    UnknownEvent,
    decode_event,
)
from .gateway import GatewayError, RazorpayGateway
from .models import PaymentLog
from .repository import PaymentRepository
from .retry import RetryPolicy
from .schemas import PaymentSessionCreate, PaymentSessionResponse, PaymentVerifyRequest, PaymentVerifyResponse
from .signatures import idempotency_key, verify_payment_signature, verify_webhook_signature

logger = structlog.get_logger(__name__)


class PaymentError(Exception):
    status_code = 400
    code = "PAYMENT_ERROR"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    @property
    def detail(self) -> dict:
        return {"code": self.code, "message": self.message}


class InvalidAmountError(PaymentError):
    code = "INVALID_AMOUNT"


class OrderNotPayableError(PaymentError):
    code = "ORDER_NOT_PAYABLE"


class OrderNotFoundError(PaymentError):
    status_code = 404
    code = "ORDER_NOT_FOUND"


class PaymentNotFoundError(PaymentError):
    status_code = 404
    code = "PAYMENT_NOT_FOUND"


class ForbiddenError(PaymentError):
    status_code = 403
    code = "FORBIDDEN"


class VerificationFailedError(PaymentError):
    code = "PAYMENT_VERIFICATION_FAILED"

    def __init__(self):
        # Details go to the security log only
        super().__init__("Payment verification failed")


class PaymentConflictError(PaymentError):
    status_code = 409
    code = "PAYMENT_CONFLICT"


class SessionCreationError(PaymentError):
    status_code = 500
    code = "ORDER_CREATION_FAILED"


class WebhookSignatureError(PaymentError):
    status_code = 401


class WebhookPayloadError(PaymentError):
    code = "INVALID_PAYLOAD"


# Guard outcomes shared by the client and webhook paths
IDEMPOTENT = "idempotent"
DUPLICATE = "duplicate"
ALREADY_PAID = "already_paid"
CONFLICT = "conflict"


def to_minor_units(amount) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def normalize_method(method: str | None) -> str | None:
    return method.lower() if method else None


class PaymentService:

    # --- Session creation ---

    @staticmethod
    def _reused_session(log: PaymentLog, key_id: str, order_id: int) -> PaymentSessionResponse:
        snapshot = log.gateway_response or {}
        return PaymentSessionResponse(
            id=log.razorpay_order_id,
            amount=to_minor_units(log.amount),
            currency=log.currency,
            receipt=snapshot.get("order", {}).get("receipt"),
            key_id=key_id,
            order_id=order_id,
            existing=True,
            idempotency_key=snapshot.get("idempotency_key"),
        )

    @staticmethod
    async def create_session(
        db: AsyncSession,
        *,
        user_id: str,
        data: PaymentSessionCreate,
        gateway: RazorpayGateway,
        retry_policy: RetryPolicy,
        request: Request | None = None,
    ) -> PaymentSessionResponse:
        amount = data.amount
        if amount < settings.min_amount or amount > settings.max_amount:
            await record_security_event(
                "invalid_payment_amount",
                Severity.MEDIUM,
                request=request,
                user_id=user_id,
                details={"order_id": data.order_id, "amount": str(amount)},
            )
            raise InvalidAmountError(
                f"Amount must be between {settings.min_amount} and {settings.max_amount}"
            )

        # The row lock is held until the attempt is recorded; concurrent requests for the order queue here
        order = await OrderRepository.get_order(db, data.order_id, for_update=True)
        if order is None:
            await db.rollback()
            raise OrderNotFoundError("Order not found")
        order_id, order_number, total = order.id, order.order_number, order.total_amount
        if order.user_id != user_id:
            await db.rollback()
            await record_security_event(
                "payment_session_forbidden",
                Severity.HIGH,
                request=request,
                user_id=user_id,
                details={"order_id": order_id},
                blocked=True,
            )
            raise ForbiddenError("Order does not belong to the current user")
        if order.payment_status == PaymentStatus.PAID or order.status == OrderStatus.CANCELLED:
            await db.rollback()
            raise OrderNotPayableError("Order can no longer be paid")
        if money(amount) != money(total):
            await db.rollback()
            await record_security_event(
                "invalid_payment_amount",
                Severity.MEDIUM,
                request=request,
                user_id=user_id,
                details={"order_id": order_id, "amount": str(amount), "order_total": str(total)},
            )
            raise InvalidAmountError("Amount does not match the order total")

        existing = await PaymentRepository.get_open_log_for_order(db, order_id)
        if existing is not None:
            response = PaymentService._reused_session(existing, gateway.key_id, order_id)
            await db.rollback()
            ecomm_payment_sessions_total.labels(outcome="reused").inc()
            logger.info("payment_session_reused", order_id=order_id, razorpay_order_id=response.id)
            return response

        attempt_number = await PaymentRepository.count_attempts(db, order_id) + 1
        key = idempotency_key(user_id, order_id, amount, int(time.time() * 1000))
        try:
            gateway_order = await retry_policy.run(
                gateway.create_order,
                amount=to_minor_units(amount),
                currency=settings.currency,
                receipt=f"receipt_{order_number}",
                notes={
                    "order_id": str(order_id),
                    "order_number": order_number,
                    "user_id": user_id,
                    "idempotency_key": key,
                },
            )
        except GatewayError as exc:
            await db.rollback()
            ecomm_payment_sessions_total.labels(outcome="failed").inc()
            logger.error("payment_session_failed", order_id=order_id, error=str(exc))
            await record_security_event(
                "order_creation_failed",
                Severity.HIGH,
                request=request,
                user_id=user_id,
                details={"order_id": order_id, "error": str(exc)},
            )
            raise SessionCreationError("Failed to create payment order") from exc

        # Backends without row locks (SQLite) can still let a concurrent request record an attempt first
        existing = await PaymentRepository.get_open_log_for_order(db, order_id)
        if existing is not None:
            response = PaymentService._reused_session(existing, gateway.key_id, order_id)
            await db.rollback()
            ecomm_payment_sessions_total.labels(outcome="reused").inc()
            logger.warning(
                "payment_session_race_reused",
                order_id=order_id,
                razorpay_order_id=response.id,
                discarded_razorpay_order_id=gateway_order.id,
            )
            return response

        # Written only after the gateway accepted the order; the commit releases the lock
        log = PaymentLog(
            order_id=order_id,
            razorpay_order_id=gateway_order.id,
            amount=money(amount),
            currency=gateway_order.currency,
            status=PaymentStatus.PENDING,
            gateway="razorpay",
            gateway_response={"order": gateway_order.as_dict(), "idempotency_key": key},
            attempt_number=attempt_number,
        )
        await PaymentRepository.create_log(db, log)
        ecomm_payment_sessions_total.labels(outcome="created").inc()
        logger.info(
            "payment_session_created",
            order_id=order_id,
            razorpay_order_id=gateway_order.id,
            attempt_number=attempt_number,
        )
        return PaymentSessionResponse(
            id=gateway_order.id,
            amount=gateway_order.amount,
            currency=gateway_order.currency,
            status=gateway_order.status,
            receipt=gateway_order.receipt,
            key_id=gateway.key_id,
            order_id=order_id,
            existing=False,
            idempotency_key=key,
        )

    @staticmethod
    async def list_attempts(db: AsyncSession, user_id: str, order_id: int):
        order = await OrderRepository.get_order(db, order_id)
        if order is None or order.user_id != user_id:
            raise OrderNotFoundError("Order not found")
        return await PaymentRepository.list_for_order(db, order_id)

    # --- Shared reconciliation steps ---

    @staticmethod
    async def _check_guards(db: AsyncSession, log: PaymentLog, order: Order, payment_id: str) -> tuple[str | None, dict]:
        """Classifies an incoming success before any write. None means proceed."""
        if log.status == PaymentStatus.PAID and log.razorpay_payment_id == payment_id:
            return IDEMPOTENT, {}
        duplicate = await PaymentRepository.find_paid_elsewhere(db, payment_id, log.id)
        if duplicate is not None:
            return DUPLICATE, {"existing_log_id": duplicate.id, "existing_order_id": duplicate.order_id}
        if order.payment_status == PaymentStatus.PAID:
            return ALREADY_PAID, {"order_payment_id": order.payment_intent_id}
        if log.status != PaymentStatus.PENDING:
            return CONFLICT, {"log_status": log.status.value, "recorded_payment_id": log.razorpay_payment_id}
        return None, {}

    @staticmethod
    async def _converged(db: AsyncSession, log_id: int, order_id: int, payment_id: str) -> bool:
        log = await PaymentRepository.get_log(db, log_id)
        order = await OrderRepository.get_order(db, order_id)
        return (
            log is not None
            and order is not None
            and log.status == PaymentStatus.PAID
            and log.razorpay_payment_id == payment_id
            and order.payment_status == PaymentStatus.PAID
            and order.payment_intent_id == payment_id
        )

    @staticmethod
    async def _apply_success(
        db: AsyncSession,
        log: PaymentLog,
        order: Order,
        payment_id: str,
        *,
        signature: str | None = None,
        method: str | None = None,
        payment_snapshot: dict | None = None,
    ) -> bool:
        """
        Attempt PAID + order CONFIRMED + cart clear in one transaction.
        Returns True when the pair ends up paid with ``payment_id``, whether
        this call wrote it or a concurrent one did.
        """
        gateway_response = None
        if payment_snapshot is not None:
            gateway_response = {**(log.gateway_response or {}), "payment": payment_snapshot}
        log_id, order_id, user_id = log.id, order.id, order.user_id

        try:
            won = await PaymentRepository.mark_paid(
                db, log_id, payment_id, signature=signature, method=method, gateway_response=gateway_response
            ) == 1
            if won:
                won = await OrderRepository.confirm_payment(db, order_id, payment_id, method) == 1
            if won:
                await CartRepository.clear_cart(db, user_id)
                await db.commit()
                return True
            await db.rollback()
        except IntegrityError:
            await db.rollback()
            logger.info("payment_id_unique_violation", log_id=log_id, payment_id=payment_id)

        converged = await PaymentService._converged(db, log_id, order_id, payment_id)
        logger.info("payment_race_lost", log_id=log_id, payment_id=payment_id, converged=converged)
        return converged

    @staticmethod
    async def _fail_attempt(
        db: AsyncSession,
        log: PaymentLog,
        order: Order,
        reason: str,
        *,
        payment_id: str | None = None,
        payment_snapshot: dict | None = None,
        clear_cart: bool = True,
    ) -> bool:
        """Attempt FAILED, order CANCELLED while unpaid. No-op unless the attempt is PENDING."""
        gateway_response = None
        if payment_snapshot is not None:
            gateway_response = {**(log.gateway_response or {}), "payment": payment_snapshot}
        order_id, user_id = order.id, order.user_id

        rows = await PaymentRepository.mark_failed(
            db, log.id, reason, payment_id=payment_id, gateway_response=gateway_response
        )
        if rows != 1:
            await db.rollback()
            return False
        await OrderRepository.cancel_unpaid(db, order_id)
        if clear_cart:
            await CartRepository.clear_cart(db, user_id)
        await db.commit()
        return True

    @staticmethod
    def _verified(order: Order, payment_id: str, already_processed: bool) -> PaymentVerifyResponse:
        return PaymentVerifyResponse(
            order_id=order.id,
            order_number=order.order_number,
            payment_id=payment_id,
            status=PaymentStatus.PAID,
            already_processed=already_processed,
        )

    # --- Client-side verification ---

    @staticmethod
    async def verify_payment(
        db: AsyncSession,
        *,
        user_id: str,
        data: PaymentVerifyRequest,
        request: Request | None = None,
    ) -> PaymentVerifyResponse:
        gateway_order_id = data.razorpay_order_id
        payment_id = data.razorpay_payment_id
        context = {"razorpay_order_id": gateway_order_id, "razorpay_payment_id": payment_id}

        log = await PaymentRepository.get_latest_by_gateway_order_id(db, gateway_order_id)
        order = await OrderRepository.get_order(db, log.order_id) if log is not None else None
        if log is None or order is None:
            await record_security_event(
                "payment_verify_unknown_order", Severity.MEDIUM, request=request, user_id=user_id, details=context
            )
            raise PaymentNotFoundError("Payment record not found")

        if order.user_id != user_id:
            await record_security_event(
                "payment_verify_forbidden",
                Severity.HIGH,
                request=request,
                user_id=user_id,
                details={**context, "order_id": order.id},
                blocked=True,
            )
            raise ForbiddenError("Order does not belong to the current user")

        outcome, found = await PaymentService._check_guards(db, log, order, payment_id)
        context.update(order_id=order.id, log_id=log.id)

        if outcome == IDEMPOTENT:
            ecomm_payment_verifications_total.labels(source="client", outcome="idempotent").inc()
            logger.info("payment_already_verified", **context)
            return PaymentService._verified(order, payment_id, already_processed=True)

        if outcome == DUPLICATE:
            await PaymentService._fail_attempt(db, log, order, "Duplicate payment ID detected")
            ecomm_payment_verifications_total.labels(source="client", outcome="duplicate").inc()
            await record_security_event(
                "duplicate_payment_id_blocked",
                Severity.CRITICAL,
                request=request,
                user_id=user_id,
                details={**context, **found},
                blocked=True,
            )
            raise VerificationFailedError()

        if outcome == ALREADY_PAID:
            await PaymentService._fail_attempt(db, log, order, "Order already paid", clear_cart=False)
            ecomm_payment_verifications_total.labels(source="client", outcome="already_paid").inc()
            await record_security_event(
                "double_payment_blocked", Severity.HIGH, request=request, user_id=user_id, details=context, blocked=True
            )
            raise VerificationFailedError()

        if outcome == CONFLICT:
            ecomm_payment_verifications_total.labels(source="client", outcome="conflict").inc()
            await record_security_event(
                "payment_state_conflict",
                Severity.HIGH,
                request=request,
                user_id=user_id,
                details={**context, **found},
            )
            raise PaymentConflictError("Payment attempt is no longer pending")

        if not verify_payment_signature(gateway_order_id, payment_id, data.razorpay_signature, settings.razorpay_key_secret):
            await PaymentService._fail_attempt(db, log, order, "Signature verification failed")
            ecomm_payment_verifications_total.labels(source="client", outcome="invalid_signature").inc()
            await record_security_event(
                "invalid_payment_signature",
                Severity.HIGH,
                request=request,
                user_id=user_id,
                details={**context, "signature_prefix": data.razorpay_signature[:10]},
                blocked=True,
            )
            raise VerificationFailedError()

        if await PaymentService._apply_success(db, log, order, payment_id, signature=data.razorpay_signature):
            ecomm_payment_verifications_total.labels(source="client", outcome="paid").inc()
            logger.info("payment_verified", **context)
            return PaymentService._verified(order, payment_id, already_processed=False)

        ecomm_payment_verifications_total.labels(source="client", outcome="conflict").inc()
        await record_security_event(
            "payment_reconciliation_conflict", Severity.CRITICAL, request=request, user_id=user_id, details=context
        )
        raise PaymentConflictError("Payment was processed concurrently with a different outcome")

    # --- Webhook ---

    @staticmethod
    async def handle_webhook(
        db: AsyncSession,
        *,
        raw_body: bytes,
        signature: str | None,
        request: Request | None = None,
    ) -> dict:
        if not signature:
            await record_security_event(
                "webhook_missing_signature", Severity.HIGH, request=request, blocked=True
            )
            raise WebhookSignatureError("Missing webhook signature", code="MISSING_SIGNATURE")

        if not verify_webhook_signature(raw_body, signature, settings.razorpay_webhook_secret):
            await record_security_event(
                "webhook_invalid_signature",
                Severity.CRITICAL,
                request=request,
                details={"signature_prefix": signature[:10]},
                blocked=True,
            )
            raise WebhookSignatureError("Invalid webhook signature", code="INVALID_SIGNATURE")

        try:
            event = decode_event(raw_body)
        except InvalidWebhookPayload as exc:
            logger.warning("webhook_payload_invalid", error=str(exc))
            raise WebhookPayloadError(str(exc)) from exc

        event_type = "unknown" if isinstance(event, UnknownEvent) else event.event
        ecomm_webhook_events_total.labels(event_type=event_type).inc()
        logger.info("webhook_received", event_type=event.event)

        if isinstance(event, PaymentCapturedEvent):
            payment = event.payment
            await PaymentService._confirm_from_webhook(
                db,
                payment.order_id,
                payment.id,
                method=normalize_method(payment.method),
                payment_snapshot=payment.model_dump(),
                request=request,
            )
        elif isinstance(event, PaymentFailedEvent):
            await PaymentService._fail_from_webhook(db, event, request)
        elif isinstance(event, OrderPaidEvent):
            await PaymentService._order_paid_from_webhook(db, event, request)
        else:
            logger.info("webhook_event_ignored", event_type=event.event)

        return {"status": "success"}

    @staticmethod
    async def _confirm_from_webhook(
        db: AsyncSession,
        gateway_order_id: str,
        payment_id: str,
        *,
        method: str | None,
        payment_snapshot: dict | None,
        request: Request | None,
    ):
        context = {"razorpay_order_id": gateway_order_id, "razorpay_payment_id": payment_id}
        log = await PaymentRepository.get_latest_by_gateway_order_id(db, gateway_order_id)
        order = await OrderRepository.get_order(db, log.order_id) if log is not None else None
        if log is None or order is None:
            ecomm_payment_verifications_total.labels(source="webhook", outcome="unmatched").inc()
            logger.warning("webhook_payment_log_not_found", **context)
            return

        context.update(order_id=order.id, log_id=log.id)
        outcome, found = await PaymentService._check_guards(db, log, order, payment_id)

        # Every rejection is acknowledged so the gateway stops redelivering
        if outcome == IDEMPOTENT:
            ecomm_payment_verifications_total.labels(source="webhook", outcome="idempotent").inc()
            logger.info("webhook_payment_already_processed", **context)
            return
        if outcome == DUPLICATE:
            ecomm_payment_verifications_total.labels(source="webhook", outcome="duplicate").inc()
            await record_security_event(
                "duplicate_payment_id_blocked",
                Severity.CRITICAL,
                request=request,
                user_id=order.user_id,
                details={**context, **found},
                blocked=True,
            )
            return
        if outcome == ALREADY_PAID:
            ecomm_payment_verifications_total.labels(source="webhook", outcome="already_paid").inc()
            await record_security_event(
                "double_payment_blocked",
                Severity.HIGH,
                request=request,
                user_id=order.user_id,
                details=context,
                blocked=True,
            )
            return
        if outcome == CONFLICT:
            ecomm_payment_verifications_total.labels(source="webhook", outcome="conflict").inc()
            await record_security_event(
                "payment_state_conflict",
                Severity.HIGH,
                request=request,
                user_id=order.user_id,
                details={**context, **found},
            )
            return

        if await PaymentService._apply_success(
            db, log, order, payment_id, method=method, payment_snapshot=payment_snapshot
        ):
            ecomm_payment_verifications_total.labels(source="webhook", outcome="paid").inc()
            logger.info("webhook_payment_confirmed", **context)
            return

        ecomm_payment_verifications_total.labels(source="webhook", outcome="conflict").inc()
        await record_security_event(
            "payment_reconciliation_conflict",
            Severity.CRITICAL,
            request=request,
            user_id=order.user_id,
            details=context,
        )

    @staticmethod
    async def _fail_from_webhook(db: AsyncSession, event: PaymentFailedEvent, request: Request | None):
        payment = event.payment
        context = {"razorpay_order_id": payment.order_id, "razorpay_payment_id": payment.id}
        log = await PaymentRepository.get_latest_by_gateway_order_id(db, payment.order_id)
        order = await OrderRepository.get_order(db, log.order_id) if log is not None else None
        if log is None or order is None:
            logger.warning("webhook_payment_log_not_found", **context)
            return
        if log.status == PaymentStatus.PAID:
            # A later success already won; never downgrade it
            logger.warning("webhook_failure_after_success", log_id=log.id, **context)
            return
        if log.status == PaymentStatus.FAILED:
            logger.info("webhook_failure_already_recorded", log_id=log.id, **context)
            return
        duplicate = await PaymentRepository.find_paid_elsewhere(db, payment.id, log.id)
        if duplicate is not None:
            # Recording the id here would put one payment on two attempts
            await record_security_event(
                "duplicate_payment_id_blocked",
                Severity.CRITICAL,
                request=request,
                user_id=order.user_id,
                details={
                    **context,
                    "order_id": order.id,
                    "log_id": log.id,
                    "existing_log_id": duplicate.id,
                    "existing_order_id": duplicate.order_id,
                },
                blocked=True,
            )
            return

        log_id, order_id = log.id, order.id
        reason = f"{payment.error_code or 'UNKNOWN_ERROR'}: {payment.error_description or 'Payment failed'}"
        if await PaymentService._fail_attempt(
            db, log, order, reason, payment_id=payment.id, payment_snapshot=payment.model_dump()
        ):
            ecomm_payment_verifications_total.labels(source="webhook", outcome="failed").inc()
            logger.info("webhook_payment_failed", log_id=log_id, order_id=order_id, reason=reason, **context)
        else:
            logger.info("webhook_failure_ignored", log_id=log_id, **context)

    @staticmethod
    async def _order_paid_from_webhook(db: AsyncSession, event: OrderPaidEvent, request: Request | None):
        entity = event.order
        if entity.status != "paid":
            logger.info("webhook_order_not_paid", razorpay_order_id=entity.id, status=entity.status)
            return

        log = await PaymentRepository.get_latest_by_gateway_order_id(db, entity.id)
        if log is None:
            logger.warning("webhook_payment_log_not_found", razorpay_order_id=entity.id)
            return

        expected = to_minor_units(log.amount)
        if entity.amount_paid < expected:
            await record_security_event(
                "order_paid_amount_mismatch",
                Severity.HIGH,
                request=request,
                details={"razorpay_order_id": entity.id, "expected": expected, "amount_paid": entity.amount_paid},
            )
            return

        payment = event.payment
        payment_id = payment.id if payment else log.razorpay_payment_id
        if not payment_id:
            # payment.captured or the client callback will carry the id
            logger.info("webhook_order_paid_without_payment", razorpay_order_id=entity.id)
            return

        await PaymentService._confirm_from_webhook(
            db,
            entity.id,
            payment_id,
            method=normalize_method(payment.method) if payment else None,
            payment_snapshot=payment.model_dump() if payment else None,
            request=request,
        )
