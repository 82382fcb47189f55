"""
Repair tickets: intake, status workflow and payments.

Status moves only along TRANSITIONS. COMPLETED and PICKED_UP stamp their
timestamps; CANCELLED is reachable from any state that is not final.
"""

import logging
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from core.context import Capability, RequestContext
from core.errors import NotFoundError, PosError, TransportError, ValidationError
from db.customer import Customer
from db.service_ticket import ServicePayment, ServiceTicket
from schemas.service import ServicePaymentCreate, ServiceTicketCreate, ServiceTicketUpdate
from services.document_numbers import generate_document_number

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[str, frozenset] = {
    "RECEIVED": frozenset({"DIAGNOSIS", "CANCELLED"}),
    "DIAGNOSIS": frozenset({"WAITING_PARTS", "IN_PROGRESS", "CANCELLED"}),
    "WAITING_PARTS": frozenset({"IN_PROGRESS", "CANCELLED"}),
    "IN_PROGRESS": frozenset({"WAITING_PARTS", "COMPLETED", "CANCELLED"}),
    "COMPLETED": frozenset({"PICKED_UP"}),
    "PICKED_UP": frozenset(),
    "CANCELLED": frozenset(),
}

FINISHED_STATUSES = ("COMPLETED", "PICKED_UP", "CANCELLED")


def _minor(amount: Optional[float]) -> Optional[int]:
    if amount is None:
        return None
    return int(round(float(amount) * 100))


def _major(minor: Optional[int]) -> Optional[float]:
    if minor is None:
        return None
    return float(minor) / 100.0


def check_transition(current: str, new: str) -> None:
    if new not in TRANSITIONS:
        raise ValidationError(f"Unknown ticket status: {new!r}")
    if new not in TRANSITIONS.get(current, frozenset()):
        raise ValidationError(f"Cannot move ticket from {current} to {new}")


async def get_ticket(db: AsyncSession, ctx: RequestContext, ticket_id: UUID) -> ServiceTicket:
    res = await db.execute(
        select(ServiceTicket)
        .options(selectinload(ServiceTicket.payments))
        .where(ServiceTicket.id == ticket_id, ServiceTicket.branch_id == ctx.branch_id)
        .execution_options(populate_existing=True)
    )
    t = res.scalar_one_or_none()
    if not t:
        raise NotFoundError("Service ticket not found")
    return t


async def list_tickets(
    db: AsyncSession,
    ctx: RequestContext,
    status: Optional[str] = None,
    q: Optional[str] = None,
    limit: int = 100,
) -> List[ServiceTicket]:
    ctx.require(Capability.MANAGE_SERVICE)
    stmt = (
        select(ServiceTicket)
        .options(selectinload(ServiceTicket.payments))
        .where(ServiceTicket.branch_id == ctx.branch_id)
    )
    if status:
        stmt = stmt.where(ServiceTicket.status == status)
    if q:
        like = f"%{q.strip().lower()}%"
        stmt = stmt.where(
            or_(
                func.lower(ServiceTicket.ticket_number).like(like),
                func.lower(ServiceTicket.device_brand).like(like),
                func.lower(func.coalesce(ServiceTicket.device_model, "")).like(like),
                func.lower(func.coalesce(ServiceTicket.device_imei, "")).like(like),
            )
        )
    stmt = stmt.order_by(ServiceTicket.received_at.desc(), ServiceTicket.ticket_number.desc()).limit(limit)
    res = await db.execute(stmt)
    return list(res.scalars().all())


async def create_ticket(db: AsyncSession, ctx: RequestContext, payload: ServiceTicketCreate) -> ServiceTicket:
    ctx.require(Capability.MANAGE_SERVICE)

    brand = (payload.device_brand or "").strip()
    complaint = (payload.complaint or "").strip()
    if not brand:
        raise ValidationError("device_brand is required")
    if not complaint:
        raise ValidationError("complaint is required")

    deposit_minor = _minor(payload.deposit_amount) or 0
    if deposit_minor < 0:
        raise ValidationError("deposit_amount must be >= 0")
    estimated_minor = _minor(payload.estimated_cost)
    if estimated_minor is not None and estimated_minor < 0:
        raise ValidationError("estimated_cost must be >= 0")

    if payload.customer_id is not None:
        cres = await db.execute(
            select(Customer.id).where(Customer.id == payload.customer_id, Customer.branch_id == ctx.branch_id)
        )
        if cres.scalar_one_or_none() is None:
            raise NotFoundError("Customer not found")

    try:
        ticket_number = await generate_document_number(db, ctx.branch_id, "SRV")
        ticket = ServiceTicket(
            branch_id=ctx.branch_id,
            ticket_number=ticket_number,
            customer_id=payload.customer_id,
            device_brand=brand,
            device_model=payload.device_model,
            device_imei=payload.device_imei,
            device_color=payload.device_color,
            complaint=complaint,
            notes=payload.notes,
            estimated_cost_minor=estimated_minor,
            deposit_minor=deposit_minor,
            paid_minor=deposit_minor,
            status="RECEIVED",
            technician_id=payload.technician_id,
            received_by_user_id=ctx.user_id,
        )
        if deposit_minor > 0:
            ticket.payments = [
                ServicePayment(
                    payment_type="deposit",
                    payment_method=payload.deposit_method,
                    amount_minor=deposit_minor,
                    created_by_user_id=ctx.user_id,
                )
            ]
        db.add(ticket)
        await db.commit()
    except PosError:
        await db.rollback()
        raise
    except (OperationalError, InterfaceError) as e:
        await db.rollback()
        logger.warning("Store error while creating ticket: %s", e)
        raise TransportError("Service store unavailable, please retry") from e
    except Exception:
        await db.rollback()
        logger.exception("create_ticket failed")
        raise

    logger.info("Created service ticket %s", ticket_number)
    return await get_ticket(db, ctx, ticket.id)


async def update_ticket(
    db: AsyncSession, ctx: RequestContext, ticket_id: UUID, payload: ServiceTicketUpdate
) -> ServiceTicket:
    ctx.require(Capability.MANAGE_SERVICE)
    t = await get_ticket(db, ctx, ticket_id)
    if t.status in ("PICKED_UP", "CANCELLED"):
        raise ValidationError(f"Ticket is {t.status} and can no longer be edited")

    data = payload.model_dump(exclude_unset=True)
    costs = {}
    for name in ("estimated_cost", "final_cost"):
        if name in data:
            minor = _minor(data[name])
            if minor is not None and minor < 0:
                raise ValidationError(f"{name} must be >= 0")
            costs[f"{name}_minor"] = minor

    for name in ("diagnosis", "notes", "technician_id"):
        if name in data:
            setattr(t, name, data[name])
    for name, minor in costs.items():
        setattr(t, name, minor)

    await db.commit()
    return await get_ticket(db, ctx, ticket_id)


async def change_status(db: AsyncSession, ctx: RequestContext, ticket_id: UUID, new_status: str) -> ServiceTicket:
    ctx.require(Capability.MANAGE_SERVICE)
    t = await get_ticket(db, ctx, ticket_id)
    check_transition(t.status, new_status)

    old_status = t.status
    t.status = new_status
    if new_status == "COMPLETED":
        t.completed_at = func.now()
    elif new_status == "PICKED_UP":
        t.picked_up_at = func.now()
    await db.commit()

    logger.info("Ticket %s: %s -> %s", t.ticket_number, old_status, new_status)
    return await get_ticket(db, ctx, ticket_id)


async def add_payment(
    db: AsyncSession, ctx: RequestContext, ticket_id: UUID, payload: ServicePaymentCreate
) -> ServiceTicket:
    ctx.require(Capability.MANAGE_SERVICE)
    amount_minor = _minor(payload.amount) or 0
    if amount_minor <= 0:
        raise ValidationError("amount must be > 0")

    t = await get_ticket(db, ctx, ticket_id)
    if t.status == "CANCELLED":
        raise ValidationError("Cannot take payments on a cancelled ticket")

    t.payments.append(
        ServicePayment(
            payment_type=payload.payment_type,
            payment_method=payload.payment_method,
            amount_minor=amount_minor,
            reference=payload.reference,
            created_by_user_id=ctx.user_id,
        )
    )
    t.paid_minor = int(t.paid_minor or 0) + amount_minor
    if payload.payment_type == "deposit":
        t.deposit_minor = int(t.deposit_minor or 0) + amount_minor
    await db.commit()
    return await get_ticket(db, ctx, ticket_id)


def ticket_to_dict(t: ServiceTicket) -> Dict:
    return {
        "id": t.id,
        "branch_id": t.branch_id,
        "ticket_number": t.ticket_number,
        "customer_id": t.customer_id,
        "device_brand": t.device_brand,
        "device_model": t.device_model,
        "device_imei": t.device_imei,
        "device_color": t.device_color,
        "complaint": t.complaint,
        "diagnosis": t.diagnosis,
        "notes": t.notes,
        "estimated_cost": _major(t.estimated_cost_minor),
        "final_cost": _major(t.final_cost_minor),
        "deposit_amount": _major(t.deposit_minor or 0),
        "paid_amount": _major(t.paid_minor or 0),
        "status": t.status,
        "technician_id": t.technician_id,
        "received_at": t.received_at,
        "completed_at": t.completed_at,
        "picked_up_at": t.picked_up_at,
        "payments": [
            {
                "id": p.id,
                "payment_type": p.payment_type,
                "payment_method": p.payment_method,
                "amount": _major(p.amount_minor),
                "reference": p.reference,
            }
            for p in t.payments
        ],
    }
