from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.context import Capability, RequestContext, require_capability
from core.errors import NotFoundError
from db.customer import Customer as CustomerModel
from db.database import get_async_session
from schemas.customers import CustomerCreate, CustomerOut, CustomerUpdate

router = APIRouter()


@router.get("/", response_model=List[CustomerOut])
async def list_customers(
    q: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    ctx: RequestContext = Depends(require_capability(Capability.MANAGE_CUSTOMERS)),
    db: AsyncSession = Depends(get_async_session),
):
    stmt = select(CustomerModel).where(CustomerModel.branch_id == ctx.branch_id)
    if q:
        like = f"%{q.strip().lower()}%"
        stmt = stmt.where(
            or_(
                func.lower(CustomerModel.name).like(like),
                func.coalesce(CustomerModel.phone, "").like(like),
            )
        )
    res = await db.execute(stmt.order_by(CustomerModel.name).limit(limit))
    return [c.to_schema for c in res.scalars().all()]


@router.post("/", response_model=CustomerOut, status_code=status.HTTP_201_CREATED)
async def create_customer(
    payload: CustomerCreate,
    ctx: RequestContext = Depends(require_capability(Capability.MANAGE_CUSTOMERS)),
    db: AsyncSession = Depends(get_async_session),
):
    c = CustomerModel(branch_id=ctx.branch_id, points=0, **payload.model_dump())
    db.add(c)
    await db.commit()
    await db.refresh(c)
    return c.to_schema


@router.patch("/{customer_id}", response_model=CustomerOut)
async def update_customer(
    customer_id: UUID,
    payload: CustomerUpdate,
    ctx: RequestContext = Depends(require_capability(Capability.MANAGE_CUSTOMERS)),
    db: AsyncSession = Depends(get_async_session),
):
    res = await db.execute(
        select(CustomerModel).where(CustomerModel.id == customer_id, CustomerModel.branch_id == ctx.branch_id)
    )
    c = res.scalar_one_or_none()
    if not c:
        raise NotFoundError("Customer not found")
    for k, v in payload.model_dump(exclude_unset=True).items():
        setattr(c, k, v)
    await db.commit()
    await db.refresh(c)
    return c.to_schema
