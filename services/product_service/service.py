from sqlalchemy.ext.asyncio import AsyncSession
from .models import Product
from .repository import ProductRepository
from .schemas import ProductCreate


class ProductService:

    @staticmethod
    async def create_product(db: AsyncSession, data: ProductCreate):
        category = None
        if data.category:
            category = await ProductRepository.get_or_create_category(db, data.category)
        product = Product(
            name=data.name,
            price=data.price,
            stock=data.stock,
            is_active=data.is_active,
            category=category,
        )
        return await ProductRepository.create_product(db, product)

    @staticmethod
    async def get_active_product(db: AsyncSession, product_id: int):
        product = await ProductRepository.get_product_by_id(db, product_id)
        if product is None or not product.is_active:
            return None
        return product
