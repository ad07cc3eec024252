from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config.database import get_db
from shared.security.dependencies import get_current_user
from services.product_service.service import ProductService

from .schemas import CartItemCreate, CartResponse
from .service import CartService

router = APIRouter()


@router.get("/", response_model=CartResponse)
async def get_cart(user_id: str = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    return await CartService.get_cart(db, user_id)


@router.post("/items", response_model=CartResponse)
async def add_item(
    item: CartItemCreate,
    user_id: str = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if not await ProductService.get_active_product(db, item.product_id):
        raise HTTPException(status_code=404, detail="Product not found")
    return await CartService.add_item(db, user_id, item)


@router.delete("/", status_code=204)
async def clear_cart(user_id: str = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    """Deletes all items in the caller's cart."""
    await CartService.clear_cart(db, user_id)
