from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from .models import Category, Product


class ProductRepository:

    @staticmethod
    async def create_product(db: AsyncSession, product: Product):
        db.add(product)
        await db.commit()
        return product

    @staticmethod
    async def get_or_create_category(db: AsyncSession, name: str) -> Category:
        result = await db.execute(select(Category).where(Category.name == name))
        category = result.scalars().first()
        if category is None:
            category = Category(name=name)
            db.add(category)
            await db.flush()
        return category

    @staticmethod
    async def get_product_by_id(db: AsyncSession, product_id: int):
        result = await db.execute(select(Product).where(Product.id == product_id))
        return result.scalars().first()

    @staticmethod
    async def get_products_by_ids(db: AsyncSession, product_ids: list[int]) -> dict[int, Product]:
        result = await db.execute(select(Product).where(Product.id.in_(product_ids)))
        return {product.id: product for product in result.scalars().all()}

    @staticmethod
    async def decrement_stock(db: AsyncSession, product_id: int, quantity: int) -> bool:
        """
        Conditional decrement inside the caller's transaction.
        False means another order took the stock since it was read.
        """
        result = await db.execute(
            update(Product)
            .where(Product.id == product_id, Product.stock >= quantity)
            .values(stock=Product.stock - quantity)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
