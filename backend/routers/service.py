from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from core.context import RequestContext, get_request_context
from db.database import get_async_session
from schemas.service import (
    ServicePaymentCreate,
    ServiceStatusUpdate,
    ServiceTicketCreate,
    ServiceTicketOut,
    ServiceTicketUpdate,
    TicketStatus,
)
from services import service_tickets

router = APIRouter()


@router.get("/tickets", response_model=List[ServiceTicketOut])
async def list_tickets(
    status_filter: Optional[TicketStatus] = Query(None, alias="status"),
    q: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_async_session),
):
    tickets = await service_tickets.list_tickets(db, ctx, status_filter, q, limit)
    return [service_tickets.ticket_to_dict(t) for t in tickets]


@router.post("/tickets", response_model=ServiceTicketOut, status_code=status.HTTP_201_CREATED)
async def create_ticket(
    payload: ServiceTicketCreate,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_async_session),
):
    return service_tickets.ticket_to_dict(await service_tickets.create_ticket(db, ctx, payload))


@router.get("/tickets/{ticket_id}", response_model=ServiceTicketOut)
async def get_ticket(
    ticket_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_async_session),
):
    return service_tickets.ticket_to_dict(await service_tickets.get_ticket(db, ctx, ticket_id))


@router.patch("/tickets/{ticket_id}", response_model=ServiceTicketOut)
async def update_ticket(
    ticket_id: UUID,
    payload: ServiceTicketUpdate,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_async_session),
):
    return service_tickets.ticket_to_dict(await service_tickets.update_ticket(db, ctx, ticket_id, payload))


@router.post("/tickets/{ticket_id}/status", response_model=ServiceTicketOut)
async def change_ticket_status(
    ticket_id: UUID,
    payload: ServiceStatusUpdate,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_async_session),
):
    return service_tickets.ticket_to_dict(await service_tickets.change_status(db, ctx, ticket_id, payload.status))


@router.post("/tickets/{ticket_id}/payments", response_model=ServiceTicketOut, status_code=status.HTTP_201_CREATED)
async def add_ticket_payment(
    ticket_id: UUID,
    payload: ServicePaymentCreate,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_async_session),
):
    return service_tickets.ticket_to_dict(await service_tickets.add_payment(db, ctx, ticket_id, payload))
