from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, field_validator


TicketStatus = Literal[
    "RECEIVED",
    "DIAGNOSIS",
    "WAITING_PARTS",
    "IN_PROGRESS",
    "COMPLETED",
    "PICKED_UP",
    "CANCELLED",
]
PaymentMethod = Literal["cash", "transfer", "qris", "split"]
ServicePaymentType = Literal["deposit", "settlement"]


class ServiceTicketCreate(BaseModel):
    customer_id: Optional[UUID] = None
    device_brand: str
    device_model: Optional[str] = None
    device_imei: Optional[str] = None
    device_color: Optional[str] = None
    complaint: str
    notes: Optional[str] = None
    estimated_cost: Optional[float] = None
    deposit_amount: Optional[float] = None
    deposit_method: PaymentMethod = "cash"
    technician_id: Optional[UUID] = None

    @field_validator("device_model", "device_imei", "device_color", "notes")
    @classmethod
    def _strip_nullable(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None


class ServiceTicketUpdate(BaseModel):
    diagnosis: Optional[str] = None
    notes: Optional[str] = None
    estimated_cost: Optional[float] = None
    final_cost: Optional[float] = None
    technician_id: Optional[UUID] = None


class ServiceStatusUpdate(BaseModel):
    status: TicketStatus


class ServicePaymentCreate(BaseModel):
    amount: float
    payment_method: PaymentMethod = "cash"
    payment_type: ServicePaymentType = "settlement"
    reference: Optional[str] = None


class ServicePaymentOut(BaseModel):
    id: UUID
    payment_type: ServicePaymentType
    payment_method: PaymentMethod
    amount: float
    reference: Optional[str] = None


class ServiceTicketOut(BaseModel):
    id: UUID
    branch_id: UUID
    ticket_number: str
    customer_id: Optional[UUID] = None
    device_brand: str
    device_model: Optional[str] = None
    device_imei: Optional[str] = None
    device_color: Optional[str] = None
    complaint: str
    diagnosis: Optional[str] = None
    notes: Optional[str] = None
    estimated_cost: Optional[float] = None
    final_cost: Optional[float] = None
    deposit_amount: float
    paid_amount: float
    status: TicketStatus
    technician_id: Optional[UUID] = None
    received_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    payments: List[ServicePaymentOut] = []
