from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config.database import get_db
from shared.config.settings import settings
from shared.security import get_current_user, limiter

from .gateway import RazorpayGateway, get_gateway
from .retry import RetryPolicy, get_retry_policy
from .schemas import (
    PaymentLogResponse,
    PaymentSessionCreate,
    PaymentSessionResponse,
    PaymentVerifyRequest,
    PaymentVerifyResponse,
)
from .service import PaymentError, PaymentService

router = APIRouter()


@router.post("/razorpay/order", response_model=PaymentSessionResponse)
@limiter.limit(settings.session_rate_limit)
async def create_payment_session(
    request: Request,  # slowapi reads the caller from here
    payload: PaymentSessionCreate,
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway: RazorpayGateway = Depends(get_gateway),
    retry_policy: RetryPolicy = Depends(get_retry_policy),
):
    try:
        return await PaymentService.create_session(
            db, user_id=user_id, data=payload, gateway=gateway, retry_policy=retry_policy, request=request
        )
    except PaymentError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)


@router.post("/razorpay/verify", response_model=PaymentVerifyResponse)
async def verify_payment(
    request: Request,
    payload: PaymentVerifyRequest,
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await PaymentService.verify_payment(db, user_id=user_id, data=payload, request=request)
    except PaymentError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)


@router.post("/razorpay/webhook")
async def razorpay_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    # Raw bytes: the signature covers the body exactly as sent
    raw_body = await request.body()
    try:
        return await PaymentService.handle_webhook(
            db,
            raw_body=raw_body,
            signature=request.headers.get("x-razorpay-signature"),
            request=request,
        )
    except PaymentError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)


@router.get("/orders/{order_id}/logs", response_model=list[PaymentLogResponse])
async def list_payment_attempts(
    order_id: int,
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await PaymentService.list_attempts(db, user_id, order_id)
    except PaymentError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
