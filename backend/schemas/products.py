from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, field_validator


class ProductVariantCreate(BaseModel):
    sku: str
    name: str
    barcode: Optional[str] = None
    buy_price: Optional[float] = None
    sell_price: Optional[float] = None

    @field_validator("sku", "name")
    @classmethod
    def _strip_required(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("field is required")
        return v


class ProductCreate(BaseModel):
    sku: str
    name: str
    barcode: Optional[str] = None
    description: Optional[str] = None
    category: str = "general"
    brand: Optional[str] = None
    buy_price: Optional[float] = None
    sell_price: Optional[float] = None
    min_stock: int = 0
    variants: List[ProductVariantCreate] = []

    @field_validator("sku", "name")
    @classmethod
    def _strip_required(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("field is required")
        return v

    @field_validator("buy_price", "sell_price")
    @classmethod
    def _price_non_negative(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v < 0:
            raise ValueError("price must be >= 0")
        return v

    @field_validator("min_stock")
    @classmethod
    def _min_stock_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("min_stock must be >= 0")
        return v


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    barcode: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    brand: Optional[str] = None
    buy_price: Optional[float] = None
    sell_price: Optional[float] = None
    min_stock: Optional[int] = None
    is_active: Optional[bool] = None

    @field_validator("name")
    @classmethod
    def _strip_optional(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        if not v:
            raise ValueError("cannot be empty")
        return v

    @field_validator("buy_price", "sell_price")
    @classmethod
    def _price_non_negative(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v < 0:
            raise ValueError("price must be >= 0")
        return v


class ProductVariantOut(BaseModel):
    id: UUID
    sku: str
    name: str
    barcode: Optional[str] = None
    buy_price: float
    sell_price: float
    is_active: bool


class ProductOut(BaseModel):
    id: UUID
    branch_id: UUID
    sku: str
    barcode: Optional[str] = None
    name: str
    description: Optional[str] = None
    category: str
    brand: Optional[str] = None
    buy_price: float
    sell_price: float
    avg_cost: float
    sell_price_minor: int
    min_stock: int
    is_active: bool
    has_variants: bool
    variants: List[ProductVariantOut] = []
