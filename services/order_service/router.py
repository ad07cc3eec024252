from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config.database import get_db
from shared.security.dependencies import get_current_user

from .schemas import OrderCreate, OrderResponse
from .service import OrderIntakeError, OrderService
from .tax import TaxEngine, get_tax_engine

router = APIRouter()


@router.post("/", response_model=OrderResponse, status_code=201)
async def create_order(
    order: OrderCreate,
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    tax_engine: TaxEngine = Depends(get_tax_engine),
):
    try:
        return await OrderService.create_order(db, user_id, order, tax_engine)
    except OrderIntakeError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)


@router.get("/", response_model=list[OrderResponse])
async def list_orders(user_id: str = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return await OrderService.list_orders(db, user_id)


@router.get("/tax-summary")
async def tax_summary(
    state: str = Query(min_length=1),
    city: str = Query(default=""),
    db: AsyncSession = Depends(get_db),
    tax_engine: TaxEngine = Depends(get_tax_engine),
):
    return await tax_engine.summary_for_location(db, state, city)


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(order_id: int, user_id: str = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    order = await OrderService.get_order_for_user(db, order_id, user_id)
    if not order:
        raise HTTPException(status_code=404, detail={"code": "ORDER_NOT_FOUND", "message": "Order not found"})
    return order
