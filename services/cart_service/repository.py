from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from .models import CartItem


class CartRepository:
    @staticmethod
    async def get_items(db: AsyncSession, user_id: str):
        result = await db.execute(
            select(CartItem).where(CartItem.user_id == user_id).order_by(CartItem.id)
        )
        return result.scalars().all()

    @staticmethod
    async def add_item(db: AsyncSession, item: CartItem):
        result = await db.execute(
            select(CartItem)
            .where(CartItem.user_id == item.user_id)
            .where(CartItem.product_id == item.product_id)
        )
        existing_item = result.scalars().first()

        if existing_item:
            existing_item.quantity += item.quantity
        else:
            db.add(item)

        await db.commit()

    @staticmethod
    async def clear_cart(db: AsyncSession, user_id: str):
        """Deletes the user's cart rows. Does not commit: callers own the transaction."""
        await db.execute(delete(CartItem).where(CartItem.user_id == user_id))
