from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from core.context import Capability, RequestContext, get_request_context, require_capability
from core.errors import ConflictError, NotFoundError
from db.database import get_async_session
from db.inventory.location import InventoryLocation as InventoryLocationModel
from db.inventory.movement import StockMovement as StockMovementModel
from db.inventory.movement import StockMovementItem as StockMovementItemModel
from db.inventory.stock import StockBalance as StockBalanceModel
from db.product import Product as ProductModel
from schemas.inventory import (
    InventoryLocationCreate,
    InventoryLocationOut,
    InventoryLocationUpdate,
    MovementType,
    RecordedMovementOut,
    StockBalanceRow,
    StockMovementCreate,
    StockMovementOut,
)
from services.movement_recorder import (
    balances_to_dicts,
    get_movement as get_movement_service,
    movement_to_dict,
    record_movement,
)

router = APIRouter()


def _location_out(loc: InventoryLocationModel) -> Dict:
    return {
        "id": loc.id,
        "branch_id": loc.branch_id,
        "code": loc.code,
        "name": loc.name,
        "description": loc.description,
        "is_active": bool(loc.is_active),
    }


@router.get("/locations", response_model=List[InventoryLocationOut])
async def list_locations(
    include_inactive: bool = False,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_async_session),
):
    q = select(InventoryLocationModel).where(InventoryLocationModel.branch_id == ctx.branch_id)
    if not include_inactive:
        q = q.where(InventoryLocationModel.is_active.is_(True))
    res = await db.execute(q.order_by(InventoryLocationModel.code))
    return [_location_out(loc) for loc in res.scalars().all()]


@router.post("/locations", response_model=InventoryLocationOut, status_code=status.HTTP_201_CREATED)
async def create_location(
    payload: InventoryLocationCreate,
    ctx: RequestContext = Depends(require_capability(Capability.MANAGE_PRODUCTS)),
    db: AsyncSession = Depends(get_async_session),
):
    loc = InventoryLocationModel(
        branch_id=ctx.branch_id,
        code=payload.code,
        name=payload.name,
        description=payload.description,
        is_active=True,
    )
    db.add(loc)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError(f"Location code {payload.code} already exists in this branch")
    await db.refresh(loc)
    return _location_out(loc)


@router.patch("/locations/{location_id}", response_model=InventoryLocationOut)
async def update_location(
    location_id: UUID,
    payload: InventoryLocationUpdate,
    ctx: RequestContext = Depends(require_capability(Capability.MANAGE_PRODUCTS)),
    db: AsyncSession = Depends(get_async_session),
):
    res = await db.execute(
        select(InventoryLocationModel).where(
            InventoryLocationModel.id == location_id,
            InventoryLocationModel.branch_id == ctx.branch_id,
        )
    )
    loc = res.scalar_one_or_none()
    if not loc:
        raise NotFoundError("Location not found")

    data = payload.model_dump(exclude_unset=True)
    for k, v in data.items():
        setattr(loc, k, v)
    await db.commit()
    await db.refresh(loc)
    return _location_out(loc)


@router.get("/stock", response_model=List[StockBalanceRow])
async def list_stock_balances(
    location_id: Optional[UUID] = None,
    product_id: Optional[UUID] = None,
    low_stock_only: bool = False,
    q: Optional[str] = None,
    limit: int = Query(200, ge=1, le=1000),
    ctx: RequestContext = Depends(require_capability(Capability.VIEW_INVENTORY)),
    db: AsyncSession = Depends(get_async_session),
):
    """
    Stock balances for the caller's branch.

    - `low_stock_only`: quantity at or below the product's min_stock
    - `q`: case-insensitive match on product name or SKU
    """
    stmt = (
        select(StockBalanceModel, ProductModel, InventoryLocationModel)
        .join(ProductModel, ProductModel.id == StockBalanceModel.product_id)
        .join(InventoryLocationModel, InventoryLocationModel.id == StockBalanceModel.location_id)
        .where(StockBalanceModel.branch_id == ctx.branch_id)
    )
    if location_id is not None:
        stmt = stmt.where(StockBalanceModel.location_id == location_id)
    if product_id is not None:
        stmt = stmt.where(StockBalanceModel.product_id == product_id)
    if low_stock_only:
        stmt = stmt.where(StockBalanceModel.quantity <= ProductModel.min_stock)
    if q:
        like = f"%{q.strip().lower()}%"
        stmt = stmt.where(or_(func.lower(ProductModel.name).like(like), func.lower(ProductModel.sku).like(like)))
    stmt = stmt.order_by(InventoryLocationModel.code, ProductModel.name).limit(limit)

    res = await db.execute(stmt)
    out = []
    for bal, prod, loc in res.all():
        qty = int(bal.quantity or 0)
        out.append(
            {
                "id": bal.id,
                "location_id": bal.location_id,
                "product_id": bal.product_id,
                "variant_id": bal.variant_id,
                "quantity": qty,
                "reserved_quantity": int(bal.reserved_quantity or 0),
                "version": int(bal.version or 0),
                "product_name": prod.name,
                "sku": prod.sku,
                "location_code": loc.code,
                "min_stock": int(prod.min_stock or 0),
                "is_low": qty <= int(prod.min_stock or 0),
            }
        )
    return out


@router.post("/movements", response_model=RecordedMovementOut, status_code=status.HTTP_201_CREATED)
async def create_movement(
    payload: StockMovementCreate,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_async_session),
):
    recorded = await record_movement(db, ctx, payload)
    return {
        "movement": movement_to_dict(recorded.movement),
        "balances": balances_to_dicts(recorded.balances),
        "replayed": recorded.replayed,
    }


@router.get("/movements", response_model=List[StockMovementOut])
async def list_movements(
    movement_type: Optional[MovementType] = None,
    location_id: Optional[UUID] = None,
    product_id: Optional[UUID] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=500),
    ctx: RequestContext = Depends(require_capability(Capability.VIEW_INVENTORY)),
    db: AsyncSession = Depends(get_async_session),
):
    """Newest first."""
    stmt = (
        select(StockMovementModel)
        .options(selectinload(StockMovementModel.items))
        .where(StockMovementModel.branch_id == ctx.branch_id)
    )
    if movement_type:
        stmt = stmt.where(StockMovementModel.movement_type == movement_type)
    if location_id is not None:
        stmt = stmt.where(
            or_(
                StockMovementModel.from_location_id == location_id,
                StockMovementModel.to_location_id == location_id,
            )
        )
    if product_id is not None:
        stmt = stmt.where(
            StockMovementModel.id.in_(
                select(StockMovementItemModel.movement_id).where(StockMovementItemModel.product_id == product_id)
            )
        )
    if date_from is not None:
        stmt = stmt.where(StockMovementModel.created_at >= date_from)
    if date_to is not None:
        stmt = stmt.where(StockMovementModel.created_at < date_to)
    stmt = stmt.order_by(StockMovementModel.created_at.desc(), StockMovementModel.movement_number.desc()).limit(limit)

    res = await db.execute(stmt)
    return [movement_to_dict(m) for m in res.scalars().all()]


@router.get("/movements/{movement_id}", response_model=StockMovementOut)
async def get_movement(
    movement_id: UUID,
    ctx: RequestContext = Depends(require_capability(Capability.VIEW_INVENTORY)),
    db: AsyncSession = Depends(get_async_session),
):
    return movement_to_dict(await get_movement_service(db, ctx, movement_id))
