import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config.database import AsyncSessionLocal

from .models import CartItem
from .repository import CartRepository
from .schemas import CartItemCreate, CartItemResponse, CartResponse

logger = structlog.get_logger(__name__)


class CartService:
    @staticmethod
    async def get_cart(db: AsyncSession, user_id: str) -> CartResponse:
        items = await CartRepository.get_items(db, user_id)
        return CartResponse(user_id=user_id, items=[CartItemResponse.model_validate(i) for i in items])

    @staticmethod
    async def add_item(db: AsyncSession, user_id: str, data: CartItemCreate) -> CartResponse:
        item = CartItem(user_id=user_id, product_id=data.product_id, quantity=data.quantity)
        await CartRepository.add_item(db, item)
        return await CartService.get_cart(db, user_id)

    @staticmethod
    async def clear_cart(db: AsyncSession, user_id: str):
        await CartRepository.clear_cart(db, user_id)
        await db.commit()

    @staticmethod
    async def clear_cart_best_effort(user_id: str) -> bool:
        """
        Clears the cart in a session of its own, so a failure here can never
        roll back or expire anything the caller already committed.
        """
        async with AsyncSessionLocal() as db:
            try:
                await CartService.clear_cart(db, user_id)
                return True
            except SQLAlchemyError as exc:
                await db.rollback()
                logger.warning("cart_clear_failed", user_id=user_id, error=str(exc))
                return False
