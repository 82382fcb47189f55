from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.context import Capability, RequestContext, get_request_context, require_capability
from core.errors import ConflictError
from db.branch import Branch as BranchModel
from db.database import get_async_session
from schemas.branches import BranchCreate, BranchOut

router = APIRouter()


@router.get("/", response_model=List[BranchOut])
async def list_branches(
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_async_session),
):
    """Owners (manage_branches) see every branch; everyone else sees their own."""
    stmt = select(BranchModel)
    if not ctx.can(Capability.MANAGE_BRANCHES):
        stmt = stmt.where(BranchModel.id == ctx.branch_id)
    res = await db.execute(stmt.order_by(BranchModel.code))
    return [b.to_schema for b in res.scalars().all()]


@router.post("/", response_model=BranchOut, status_code=status.HTTP_201_CREATED)
async def create_branch(
    payload: BranchCreate,
    ctx: RequestContext = Depends(require_capability(Capability.MANAGE_BRANCHES)),
    db: AsyncSession = Depends(get_async_session),
):
    b = BranchModel(**payload.model_dump(), is_active=True)
    db.add(b)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError(f"Branch code {payload.code} already exists")
    await db.refresh(b)
    return b.to_schema
