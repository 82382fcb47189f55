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
from db.product import Product as ProductModel
from db.product import ProductVariant as ProductVariantModel
from schemas.products import ProductCreate, ProductOut, ProductUpdate

router = APIRouter()


def _minor_from_price(price: Optional[float]) -> Optional[int]:
    if price is None:
        return None
    return int(round(float(price) * 100))


def _product_out(p: ProductModel) -> Dict:
    return {
        "id": p.id,
        "branch_id": p.branch_id,
        "sku": p.sku,
        "barcode": p.barcode,
        "name": p.name,
        "description": p.description,
        "category": p.category,
        "brand": p.brand,
        "buy_price": float(p.buy_price_minor or 0) / 100.0,
        "sell_price": float(p.sell_price_minor or 0) / 100.0,
        "avg_cost": float(p.avg_cost_minor or 0) / 100.0,
        "sell_price_minor": int(p.sell_price_minor or 0),
        "min_stock": int(p.min_stock or 0),
        "is_active": bool(p.is_active),
        "has_variants": bool(p.has_variants),
        "variants": [
            {
                "id": v.id,
                "sku": v.sku,
                "name": v.name,
                "barcode": v.barcode,
                "buy_price": float(v.buy_price_minor or 0) / 100.0,
                "sell_price": float(v.sell_price_minor or 0) / 100.0,
                "is_active": bool(v.is_active),
            }
            for v in p.variants
        ],
    }


async def _load_product(db: AsyncSession, ctx: RequestContext, product_id: UUID) -> ProductModel:
    res = await db.execute(
        select(ProductModel)
        .options(selectinload(ProductModel.variants))
        .where(ProductModel.id == product_id, ProductModel.branch_id == ctx.branch_id)
        .execution_options(populate_existing=True)
    )
    p = res.scalar_one_or_none()
    if not p:
        raise NotFoundError("Product not found")
    return p


@router.get("/", response_model=List[ProductOut])
async def list_products(
    q: Optional[str] = None,
    category: Optional[str] = None,
    include_inactive: bool = False,
    limit: int = Query(200, ge=1, le=1000),
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_async_session),
):
    """Search by name, SKU or barcode."""
    stmt = (
        select(ProductModel)
        .options(selectinload(ProductModel.variants))
        .where(ProductModel.branch_id == ctx.branch_id)
    )
    if not include_inactive:
        stmt = stmt.where(ProductModel.is_active.is_(True))
    if category:
        stmt = stmt.where(ProductModel.category == category)
    if q:
        like = f"%{q.strip().lower()}%"
        stmt = stmt.where(
            or_(
                func.lower(ProductModel.name).like(like),
                func.lower(ProductModel.sku).like(like),
                ProductModel.barcode == q.strip(),
            )
        )
    res = await db.execute(stmt.order_by(ProductModel.name).limit(limit))
    return [_product_out(p) for p in res.scalars().all()]


@router.get("/{product_id}", response_model=ProductOut)
async def get_product(
    product_id: UUID,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_async_session),
):
    return _product_out(await _load_product(db, ctx, product_id))


@router.post("/", response_model=ProductOut, status_code=status.HTTP_201_CREATED)
async def create_product(
    payload: ProductCreate,
    ctx: RequestContext = Depends(require_capability(Capability.MANAGE_PRODUCTS)),
    db: AsyncSession = Depends(get_async_session),
):
    buy_minor = _minor_from_price(payload.buy_price) or 0
    p = ProductModel(
        branch_id=ctx.branch_id,
        sku=payload.sku,
        barcode=payload.barcode,
        name=payload.name,
        description=payload.description,
        category=payload.category,
        brand=payload.brand,
        buy_price_minor=buy_minor,
        sell_price_minor=_minor_from_price(payload.sell_price) or 0,
        avg_cost_minor=buy_minor,
        min_stock=payload.min_stock,
        is_active=True,
        has_variants=bool(payload.variants),
    )
    p.variants = [
        ProductVariantModel(
            sku=v.sku,
            name=v.name,
            barcode=v.barcode,
            buy_price_minor=_minor_from_price(v.buy_price) or 0,
            sell_price_minor=_minor_from_price(v.sell_price) or 0,
            avg_cost_minor=_minor_from_price(v.buy_price) or 0,
            is_active=True,
        )
        for v in payload.variants
    ]
    db.add(p)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError(f"SKU {payload.sku} already exists in this branch")
    return _product_out(await _load_product(db, ctx, p.id))


@router.patch("/{product_id}", response_model=ProductOut)
async def update_product(
    product_id: UUID,
    payload: ProductUpdate,
    ctx: RequestContext = Depends(require_capability(Capability.MANAGE_PRODUCTS)),
    db: AsyncSession = Depends(get_async_session),
):
    p = await _load_product(db, ctx, product_id)
    data = payload.model_dump(exclude_unset=True)
    for price_field in ("buy_price", "sell_price"):
        if price_field in data:
            setattr(p, f"{price_field}_minor", _minor_from_price(data.pop(price_field)) or 0)
    for k, v in data.items():
        setattr(p, k, v)
    await db.commit()
    return _product_out(await _load_product(db, ctx, product_id))


@router.delete("/{product_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_product(
    product_id: UUID,
    ctx: RequestContext = Depends(require_capability(Capability.MANAGE_PRODUCTS)),
    db: AsyncSession = Depends(get_async_session),
):
    """Soft delete: movements and sales keep pointing at the product."""
    p = await _load_product(db, ctx, product_id)
    p.is_active = False
    await db.commit()
    return None
