from typing import Dict

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from core.context import RequestContext, get_request_context
from db.database import get_async_session
from services import reports

router = APIRouter()


@router.get("/dashboard", response_model=Dict)
async def dashboard(
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_async_session),
):
    return await reports.dashboard(db, ctx)


@router.get("/revenue", response_model=Dict)
async def revenue(
    period: str = "month",
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_async_session),
):
    return await reports.revenue_report(db, ctx, period)
