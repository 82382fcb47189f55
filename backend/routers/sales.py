from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from core.context import Capability, RequestContext, get_request_context, require_capability
from db.database import get_async_session
from schemas.sales import CheckoutCreate, InvoiceStatus, SalesInvoiceOut
from services import checkout as checkout_service

router = APIRouter()


@router.post("/checkout", response_model=SalesInvoiceOut, status_code=status.HTTP_201_CREATED)
async def checkout(
    payload: CheckoutCreate,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_async_session),
):
    invoice = await checkout_service.checkout(db, ctx, payload)
    return checkout_service.invoice_to_dict(invoice)


@router.get("/invoices", response_model=List[SalesInvoiceOut])
async def list_invoices(
    status_filter: Optional[InvoiceStatus] = Query(None, alias="status"),
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=500),
    ctx: RequestContext = Depends(require_capability(Capability.USE_POS)),
    db: AsyncSession = Depends(get_async_session),
):
    invoices = await checkout_service.list_invoices(db, ctx, status_filter, date_from, date_to, limit)
    return [checkout_service.invoice_to_dict(inv) for inv in invoices]


@router.get("/invoices/{invoice_id}", response_model=SalesInvoiceOut)
async def get_invoice(
    invoice_id: UUID,
    ctx: RequestContext = Depends(require_capability(Capability.USE_POS)),
    db: AsyncSession = Depends(get_async_session),
):
    return checkout_service.invoice_to_dict(await checkout_service.get_invoice(db, ctx, invoice_id))


@router.post("/invoices/{invoice_id}/void", response_model=SalesInvoiceOut)
async def void_invoice(
    invoice_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_async_session),
):
    invoice = await checkout_service.void_invoice(db, ctx, invoice_id)
    return checkout_service.invoice_to_dict(invoice)
