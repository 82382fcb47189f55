from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, field_validator


PaymentMethod = Literal["cash", "transfer", "qris", "split"]
InvoiceStatus = Literal["completed", "voided"]


class CheckoutItemCreate(BaseModel):
    product_id: UUID
    variant_id: Optional[UUID] = None
    quantity: int
    discount: float = 0


class CheckoutCreate(BaseModel):
    items: List[CheckoutItemCreate]
    discount: float = 0
    tax: float = 0
    payment_method: PaymentMethod = "cash"
    # Only meaningful for cash; other methods are recorded as paid in full
    paid_amount: Optional[float] = None
    payment_reference: Optional[str] = None
    customer_id: Optional[UUID] = None
    # Deduct sold quantities from this location's stock
    location_id: Optional[UUID] = None
    notes: Optional[str] = None

    @field_validator("notes", "payment_reference")
    @classmethod
    def _strip_nullable(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None


class SalesItemOut(BaseModel):
    id: UUID
    product_id: UUID
    variant_id: Optional[UUID] = None
    product_name: str
    quantity: int
    unit_price: float
    cost_price: float
    discount: float
    subtotal: float


class SalesPaymentOut(BaseModel):
    id: UUID
    payment_method: PaymentMethod
    amount: float
    reference: Optional[str] = None


class SalesInvoiceOut(BaseModel):
    id: UUID
    branch_id: UUID
    invoice_number: str
    customer_id: Optional[UUID] = None
    subtotal: float
    discount: float
    tax: float
    total: float
    paid: float
    change: float
    total_minor: int
    payment_method: PaymentMethod
    status: InvoiceStatus
    notes: Optional[str] = None
    location_id: Optional[UUID] = None
    stock_movement_id: Optional[UUID] = None
    created_at: datetime
    created_by_user_id: Optional[UUID] = None
    items: List[SalesItemOut] = []
    payments: List[SalesPaymentOut] = []
