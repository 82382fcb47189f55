"""
Records stock movements: validation, numbering, persistence and ledger
update in one transaction.

Nothing is written until the request has been fully validated. The movement
row, its items and every balance change commit together or not at all.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from core.context import Capability, RequestContext
from core.errors import ConflictError, NotFoundError, PosError, TransportError, ValidationError
from db.inventory.location import InventoryLocation
from db.inventory.movement import StockMovement, StockMovementItem
from db.inventory.stock import StockBalance
from db.product import Product, ProductVariant
from schemas.inventory import StockMovementCreate
from services.document_numbers import generate_document_number
from services.stock_ledger import BalanceResult, StockLedger, plan_deltas, validate_movement_shape

logger = logging.getLogger(__name__)


@dataclass
class RecordedMovement:
    movement: StockMovement
    balances: List[BalanceResult] = field(default_factory=list)
    replayed: bool = False


def _minor_from_price(price: Optional[float]) -> Optional[int]:
    if price is None:
        return None
    return int(round(float(price) * 100))


def validate_movement_request(payload: StockMovementCreate) -> None:
    validate_movement_shape(payload.movement_type, payload.from_location_id, payload.to_location_id)
    if not payload.items:
        raise ValidationError("A movement needs at least one item")
    for it in payload.items:
        if int(it.quantity) <= 0:
            raise ValidationError("quantity must be > 0")


async def check_locations(db: AsyncSession, ctx: RequestContext, location_ids: Iterable[UUID]) -> None:
    ids = {i for i in location_ids if i is not None}
    if not ids:
        return
    res = await db.execute(
        select(InventoryLocation).where(
            InventoryLocation.id.in_(ids),
            InventoryLocation.branch_id == ctx.branch_id,
        )
    )
    found = {loc.id: loc for loc in res.scalars().all()}
    for loc_id in ids:
        loc = found.get(loc_id)
        if loc is None:
            raise NotFoundError(f"Location {loc_id} not found")
        if not loc.is_active:
            raise ValidationError(f"Location {loc.code} is inactive")


async def _check_products(db: AsyncSession, ctx: RequestContext, payload: StockMovementCreate) -> None:
    product_ids = {it.product_id for it in payload.items}
    res = await db.execute(
        select(Product).where(Product.id.in_(product_ids), Product.branch_id == ctx.branch_id)
    )
    found = {p.id: p for p in res.scalars().all()}
    for pid in product_ids:
        p = found.get(pid)
        if p is None:
            raise NotFoundError(f"Product {pid} not found")
        if not p.is_active:
            raise ValidationError(f"Product {p.sku} is inactive")

    variant_ids = {it.variant_id for it in payload.items if it.variant_id is not None}
    if not variant_ids:
        return
    vres = await db.execute(select(ProductVariant).where(ProductVariant.id.in_(variant_ids)))
    variants = {v.id: v for v in vres.scalars().all()}
    for it in payload.items:
        if it.variant_id is None:
            continue
        v = variants.get(it.variant_id)
        if v is None or v.product_id != it.product_id:
            raise NotFoundError(f"Variant {it.variant_id} not found for product {it.product_id}")


async def find_by_idempotency_key(db: AsyncSession, branch_id: UUID, key: str) -> Optional[StockMovement]:
    res = await db.execute(
        select(StockMovement)
        .options(selectinload(StockMovement.items))
        .where(StockMovement.branch_id == branch_id, StockMovement.idempotency_key == key)
        .execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


def _same_request(movement: StockMovement, payload: StockMovementCreate) -> bool:
    if (
        movement.movement_type != payload.movement_type
        or movement.from_location_id != payload.from_location_id
        or movement.to_location_id != payload.to_location_id
    ):
        return False
    stored = sorted((str(it.product_id), str(it.variant_id), int(it.quantity)) for it in movement.items)
    sent = sorted((str(it.product_id), str(it.variant_id), int(it.quantity)) for it in payload.items)
    return stored == sent


async def _replay(
    db: AsyncSession, ctx: RequestContext, movement: StockMovement, payload: StockMovementCreate
) -> RecordedMovement:
    if not _same_request(movement, payload):
        raise ConflictError(
            f"Idempotency key {payload.idempotency_key!r} was already used for movement "
            f"{movement.movement_number} with different contents"
        )
    return RecordedMovement(movement, await current_balances(db, ctx, movement), replayed=True)


async def get_movement(db: AsyncSession, ctx: RequestContext, movement_id: UUID) -> StockMovement:
    res = await db.execute(
        select(StockMovement)
        .options(selectinload(StockMovement.items))
        .where(StockMovement.id == movement_id, StockMovement.branch_id == ctx.branch_id)
        .execution_options(populate_existing=True)
    )
    m = res.scalar_one_or_none()
    if not m:
        raise NotFoundError("Stock movement not found")
    return m


async def current_balances(db: AsyncSession, ctx: RequestContext, movement: StockMovement) -> List[BalanceResult]:
    """Balances as they stand now for every key the movement touched."""
    keys = plan_deltas(movement.movement_type, movement.from_location_id, movement.to_location_id, movement.items)
    out = []
    for key, delta in keys:
        q = select(StockBalance.quantity, StockBalance.version).where(
            StockBalance.branch_id == ctx.branch_id,
            StockBalance.location_id == key.location_id,
            StockBalance.product_id == key.product_id,
        )
        if key.variant_id is None:
            q = q.where(StockBalance.variant_id.is_(None))
        else:
            q = q.where(StockBalance.variant_id == key.variant_id)
        row = (await db.execute(q)).first()
        out.append(
            BalanceResult(
                key.location_id,
                key.product_id,
                key.variant_id,
                int(row.quantity) if row else 0,
                int(row.version) if row else 0,
                delta,
            )
        )
    return out


async def write_movement(
    db: AsyncSession,
    ctx: RequestContext,
    payload: StockMovementCreate,
    *,
    allow_negative: bool = False,
) -> RecordedMovement:
    """
    Number, insert and apply one movement inside the caller's transaction.

    Does not commit. Callers that already validated the request (checkout)
    use this directly; HTTP callers go through `record_movement`.
    """
    movement_number = await generate_document_number(db, ctx.branch_id, "STK")
    movement = StockMovement(
        branch_id=ctx.branch_id,
        movement_number=movement_number,
        movement_type=payload.movement_type,
        from_location_id=payload.from_location_id,
        to_location_id=payload.to_location_id,
        reference_type=payload.reference_type,
        reference_id=payload.reference_id,
        notes=payload.notes,
        idempotency_key=payload.idempotency_key,
        created_by_user_id=ctx.user_id,
    )
    movement.items = [
        StockMovementItem(
            product_id=it.product_id,
            variant_id=it.variant_id,
            quantity=int(it.quantity),
            unit_cost_minor=_minor_from_price(it.unit_cost),
            notes=it.notes,
        )
        for it in payload.items
    ]
    db.add(movement)
    # Duplicate idempotency keys fail here, before any balance is touched.
    await db.flush()

    deltas = plan_deltas(payload.movement_type, payload.from_location_id, payload.to_location_id, payload.items)
    balances = await StockLedger(db, ctx.branch_id, allow_negative=allow_negative).apply(deltas)
    if payload.movement_type == "IN":
        await update_average_costs(db, ctx.branch_id, movement.items)
    return RecordedMovement(movement=movement, balances=balances)


def _blend(on_hand_before: int, cost_before: int, received: int, received_cost: int) -> int:
    on_hand_before = max(on_hand_before, 0)
    total = on_hand_before + received
    if total <= 0:
        return cost_before
    return int(round((on_hand_before * cost_before + received_cost) / total))


async def _on_hand(db: AsyncSession, branch_id: UUID, product_id: UUID, variant_id: Optional[UUID] = None) -> int:
    q = select(func.coalesce(func.sum(StockBalance.quantity), 0)).where(
        StockBalance.branch_id == branch_id,
        StockBalance.product_id == product_id,
    )
    if variant_id is not None:
        q = q.where(StockBalance.variant_id == variant_id)
    return int((await db.execute(q)).scalar_one())


async def update_average_costs(db: AsyncSession, branch_id: UUID, items: Sequence[StockMovementItem]) -> None:
    """
    Fold priced receipts into the moving average cost of each product (and variant).

    Runs after the balances were applied, so on-hand before the receipt is the
    current branch total minus what this movement brought in. Items without a
    unit cost leave the average alone.
    """
    by_product: Dict[UUID, List[int]] = {}
    by_variant: Dict[UUID, List[int]] = {}
    for it in items:
        if it.unit_cost_minor is None:
            continue
        acc = by_product.setdefault(it.product_id, [0, 0])
        acc[0] += int(it.quantity)
        acc[1] += int(it.quantity) * int(it.unit_cost_minor)
        if it.variant_id is not None:
            vacc = by_variant.setdefault(it.variant_id, [0, 0])
            vacc[0] += int(it.quantity)
            vacc[1] += int(it.quantity) * int(it.unit_cost_minor)
    if not by_product:
        return

    res = await db.execute(
        select(Product).where(Product.id.in_(by_product.keys())).with_for_update().execution_options(populate_existing=True)
    )
    for p in res.scalars().all():
        qty, cost = by_product[p.id]
        before = await _on_hand(db, branch_id, p.id) - qty
        p.avg_cost_minor = _blend(before, p.cost_minor, qty, cost)

    if by_variant:
        vres = await db.execute(
            select(ProductVariant)
            .where(ProductVariant.id.in_(by_variant.keys()))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        for v in vres.scalars().all():
            qty, cost = by_variant[v.id]
            before = await _on_hand(db, branch_id, v.product_id, v.id) - qty
            v.avg_cost_minor = _blend(before, v.cost_minor, qty, cost)
    await db.flush()


async def record_movement(
    db: AsyncSession,
    ctx: RequestContext,
    payload: StockMovementCreate,
) -> RecordedMovement:
    ctx.require(Capability.RECORD_STOCK_MOVEMENT)
    validate_movement_request(payload)

    allow_negative = False
    if payload.allow_negative:
        ctx.require(Capability.OVERRIDE_NEGATIVE_STOCK)
        allow_negative = True

    # NOTE: `current_active_user` shares this session and may already have begun a
    # transaction, so we rely on it and commit/rollback explicitly instead of db.begin().
    try:
        # A replay must succeed even if a location or product was deactivated since.
        if payload.idempotency_key:
            existing = await find_by_idempotency_key(db, ctx.branch_id, payload.idempotency_key)
            if existing is not None:
                logger.info("Replaying movement %s for idempotency key %r", existing.movement_number, payload.idempotency_key)
                return await _replay(db, ctx, existing, payload)

        await check_locations(db, ctx, [payload.from_location_id, payload.to_location_id])
        await _check_products(db, ctx, payload)

        recorded = await write_movement(db, ctx, payload, allow_negative=allow_negative)
        await db.commit()
    except IntegrityError:
        await db.rollback()
        if payload.idempotency_key:
            existing = await find_by_idempotency_key(db, ctx.branch_id, payload.idempotency_key)
            if existing is not None:
                logger.info("Concurrent duplicate for idempotency key %r, returning %s", payload.idempotency_key, existing.movement_number)
                return await _replay(db, ctx, existing, payload)
        raise ConflictError("Stock movement conflicts with an existing record")
    except PosError:
        await db.rollback()
        raise
    except (OperationalError, InterfaceError) as e:
        await db.rollback()
        logger.warning("Store error while recording movement: %s", e)
        raise TransportError("Stock store unavailable, please retry") from e
    except Exception:
        await db.rollback()
        logger.exception("record_movement failed")
        raise

    movement = await get_movement(db, ctx, recorded.movement.id)
    logger.info(
        "Recorded %s movement %s with %d item(s)",
        movement.movement_type, movement.movement_number, len(movement.items),
    )
    return RecordedMovement(movement=movement, balances=recorded.balances)


def movement_to_dict(m: StockMovement) -> Dict:
    return {
        "id": m.id,
        "branch_id": m.branch_id,
        "movement_number": m.movement_number,
        "movement_type": m.movement_type,
        "from_location_id": m.from_location_id,
        "to_location_id": m.to_location_id,
        "reference_type": m.reference_type,
        "reference_id": m.reference_id,
        "notes": m.notes,
        "idempotency_key": m.idempotency_key,
        "created_at": m.created_at,
        "created_by_user_id": m.created_by_user_id,
        "items": [
            {
                "id": it.id,
                "product_id": it.product_id,
                "variant_id": it.variant_id,
                "quantity": int(it.quantity),
                "unit_cost": (float(it.unit_cost_minor) / 100.0) if it.unit_cost_minor is not None else None,
                "notes": it.notes,
            }
            for it in m.items
        ],
    }


def balances_to_dicts(balances: Sequence[BalanceResult]) -> List[Dict]:
    return [
        {
            "location_id": b.location_id,
            "product_id": b.product_id,
            "variant_id": b.variant_id,
            "quantity": int(b.quantity),
            "version": int(b.version),
        }
        for b in balances
    ]
