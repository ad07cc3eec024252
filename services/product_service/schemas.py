from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class ProductCreate(BaseModel):
    name: str = Field(min_length=1)
    price: Decimal = Field(gt=0, decimal_places=2)
    stock: int = Field(ge=0)
    is_active: bool = True
    category: str | None = None


class ProductResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    price: Decimal
    stock: int
    is_active: bool
    category_name: str
