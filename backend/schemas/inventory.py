from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


MovementType = Literal["IN", "OUT", "ADJUSTMENT", "TRANSFER"]


class InventoryLocationCreate(BaseModel):
    code: str
    name: str
    description: Optional[str] = None

    @field_validator("code", "name")
    @classmethod
    def _strip_required(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("field is required")
        return v

    @field_validator("code")
    @classmethod
    def _code_upper(cls, v: str) -> str:
        return v.upper()


class InventoryLocationUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
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


class InventoryLocationOut(BaseModel):
    id: UUID
    branch_id: UUID
    code: str
    name: str
    description: Optional[str] = None
    is_active: bool

    class Config:
        from_attributes = True


class StockMovementItemCreate(BaseModel):
    product_id: UUID
    variant_id: Optional[UUID] = None
    quantity: int
    unit_cost: Optional[float] = None
    notes: Optional[str] = None

    @field_validator("unit_cost")
    @classmethod
    def _unit_cost_non_negative(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v < 0:
            raise ValueError("unit_cost must be >= 0")
        return v


class StockMovementCreate(BaseModel):
    """
    One movement with one or more items.

    IN / ADJUSTMENT need `to_location_id`, OUT needs `from_location_id`,
    TRANSFER needs both (and they must differ). Those rules and quantity > 0
    are checked by the movement recorder so they surface as 400s.
    """

    movement_type: MovementType
    from_location_id: Optional[UUID] = None
    to_location_id: Optional[UUID] = None
    items: List[StockMovementItemCreate]
    notes: Optional[str] = None
    reference_type: Optional[str] = None
    reference_id: Optional[UUID] = None
    idempotency_key: Optional[str] = Field(default=None, max_length=128)
    # Only honoured for callers holding the override_negative_stock capability
    allow_negative: bool = False

    @field_validator("notes", "reference_type", "idempotency_key")
    @classmethod
    def _strip_nullable(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None


class StockMovementItemOut(BaseModel):
    id: UUID
    product_id: UUID
    variant_id: Optional[UUID] = None
    quantity: int
    unit_cost: Optional[float] = None
    notes: Optional[str] = None


class StockMovementOut(BaseModel):
    id: UUID
    branch_id: UUID
    movement_number: str
    movement_type: MovementType
    from_location_id: Optional[UUID] = None
    to_location_id: Optional[UUID] = None
    reference_type: Optional[str] = None
    reference_id: Optional[UUID] = None
    notes: Optional[str] = None
    idempotency_key: Optional[str] = None
    created_at: datetime
    created_by_user_id: Optional[UUID] = None
    items: List[StockMovementItemOut] = []


class StockBalanceOut(BaseModel):
    location_id: UUID
    product_id: UUID
    variant_id: Optional[UUID] = None
    quantity: int
    version: int


class StockBalanceRow(StockBalanceOut):
    id: UUID
    reserved_quantity: int
    product_name: str
    sku: str
    location_code: str
    min_stock: int
    is_low: bool


class RecordedMovementOut(BaseModel):
    movement: StockMovementOut
    balances: List[StockBalanceOut]
    replayed: bool = False
