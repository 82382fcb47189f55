"""
Stock ledger: turns a movement into per-balance deltas and applies them.

Each balance row carries a `version`. A write reads (id, quantity, version),
then updates `WHERE id = ? AND version = ?` and bumps the version. If no row
matched, someone else wrote in between and the read is retried. A missing row
is inserted for a positive delta; losing that insert race to a concurrent
writer is retried the same way.

Every attempt runs in a SAVEPOINT (`begin_nested`) so a failed attempt leaves
nothing behind, while the surrounding movement transaction stays open.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.errors import ConflictError, InsufficientStockError, TransportError, ValidationError
from db.inventory.stock import StockBalance

logger = logging.getLogger(__name__)

MOVEMENT_TYPES = ("IN", "OUT", "ADJUSTMENT", "TRANSFER")


@dataclass(frozen=True)
class BalanceKey:
    location_id: UUID
    product_id: UUID
    variant_id: Optional[UUID] = None

    def sort_key(self) -> Tuple[str, str, str]:
        return (str(self.location_id), str(self.product_id), str(self.variant_id or ""))


@dataclass
class BalanceResult:
    location_id: UUID
    product_id: UUID
    variant_id: Optional[UUID]
    quantity: int
    version: int
    delta: int


def validate_movement_shape(
    movement_type: str,
    from_location_id: Optional[UUID],
    to_location_id: Optional[UUID],
) -> None:
    """Check that the locations given match what the movement type needs."""
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationError(f"Unknown movement type: {movement_type!r}")

    if movement_type in ("IN", "ADJUSTMENT"):
        if to_location_id is None:
            raise ValidationError(f"{movement_type} movements require a destination location")
        if from_location_id is not None:
            raise ValidationError(f"{movement_type} movements must not have a source location")
    elif movement_type == "OUT":
        if from_location_id is None:
            raise ValidationError("OUT movements require a source location")
        if to_location_id is not None:
            raise ValidationError("OUT movements must not have a destination location")
    else:
        if from_location_id is None or to_location_id is None:
            raise ValidationError("TRANSFER movements require both source and destination locations")
        if from_location_id == to_location_id:
            raise ValidationError("Source and destination locations must differ")


def plan_deltas(
    movement_type: str,
    from_location_id: Optional[UUID],
    to_location_id: Optional[UUID],
    items: Iterable,
) -> List[Tuple[BalanceKey, int]]:
    """
    Signed quantity change per balance key, merged and in a stable order.

    `items` are anything with product_id, variant_id and quantity attributes.
    """
    validate_movement_shape(movement_type, from_location_id, to_location_id)

    merged: dict[BalanceKey, int] = {}
    for it in items:
        qty = int(it.quantity)
        if qty <= 0:
            raise ValidationError("quantity must be > 0")
        variant_id = getattr(it, "variant_id", None)
        if movement_type in ("IN", "ADJUSTMENT", "TRANSFER"):
            k = BalanceKey(to_location_id, it.product_id, variant_id)
            merged[k] = merged.get(k, 0) + qty
        if movement_type in ("OUT", "TRANSFER"):
            k = BalanceKey(from_location_id, it.product_id, variant_id)
            merged[k] = merged.get(k, 0) - qty

    return sorted(merged.items(), key=lambda kv: kv[0].sort_key())


class StaleBalance(Exception):
    """The balance changed between read and write."""


class StockLedger:
    def __init__(
        self,
        db: AsyncSession,
        branch_id: UUID,
        *,
        allow_negative: bool = False,
        max_attempts: Optional[int] = None,
        backoff_base_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.db = db
        self.branch_id = branch_id
        self.allow_negative = allow_negative
        self.max_attempts = max(1, int(max_attempts or settings.ledger_max_attempts))
        self.backoff_base_seconds = (
            settings.ledger_backoff_base_seconds if backoff_base_seconds is None else backoff_base_seconds
        )
        self._sleep = sleep

    async def apply(self, deltas: Sequence[Tuple[BalanceKey, int]]) -> List[BalanceResult]:
        results = []
        for key, delta in deltas:
            if delta == 0:
                continue
            results.append(await self._apply_with_retry(key, delta))
        return results

    async def _apply_with_retry(self, key: BalanceKey, delta: int) -> BalanceResult:
        last_was_transport = False
        for attempt in range(1, self.max_attempts + 1):
            try:
                async with self.db.begin_nested():
                    return await self._attempt(key, delta)
            except (StaleBalance, IntegrityError) as e:
                last_was_transport = False
                logger.warning(
                    "Stale stock balance for %s (attempt %s/%s): %s",
                    key, attempt, self.max_attempts, e,
                )
            except (OperationalError, InterfaceError) as e:
                last_was_transport = True
                logger.warning(
                    "Store error while updating %s (attempt %s/%s): %s",
                    key, attempt, self.max_attempts, e,
                )
            if attempt < self.max_attempts:
                await self._sleep(self.backoff_base_seconds * (2 ** (attempt - 1)))

        if last_was_transport:
            raise TransportError("Stock store unavailable, please retry")
        raise ConflictError(
            f"Stock balance for product {key.product_id} at location {key.location_id} "
            f"kept changing; gave up after {self.max_attempts} attempts"
        )

    async def _read_balance(self, key: BalanceKey):
        q = select(StockBalance.id, StockBalance.quantity, StockBalance.version).where(
            StockBalance.branch_id == self.branch_id,
            StockBalance.location_id == key.location_id,
            StockBalance.product_id == key.product_id,
        )
        if key.variant_id is None:
            q = q.where(StockBalance.variant_id.is_(None))
        else:
            q = q.where(StockBalance.variant_id == key.variant_id)
        return (await self.db.execute(q)).first()

    async def _attempt(self, key: BalanceKey, delta: int) -> BalanceResult:
        row = await self._read_balance(key)

        if row is None:
            if delta < 0 and not self.allow_negative:
                raise InsufficientStockError(key.location_id, key.product_id, requested=-delta, available=0)
            await self.db.execute(
                insert(StockBalance).values(
                    id=uuid.uuid4(),
                    branch_id=self.branch_id,
                    location_id=key.location_id,
                    product_id=key.product_id,
                    variant_id=key.variant_id,
                    quantity=delta,
                    reserved_quantity=0,
                    version=1,
                )
            )
            return BalanceResult(key.location_id, key.product_id, key.variant_id, delta, 1, delta)

        current = int(row.quantity)
        new_quantity = current + delta
        if new_quantity < 0 and not self.allow_negative:
            raise InsufficientStockError(key.location_id, key.product_id, requested=-delta, available=current)

        res = await self.db.execute(
            update(StockBalance)
            .where(StockBalance.id == row.id, StockBalance.version == row.version)
            .values(quantity=new_quantity, version=row.version + 1)
            .execution_options(synchronize_session="evaluate")
        )
        if res.rowcount != 1:
            raise StaleBalance(f"version {row.version} no longer current")

        return BalanceResult(
            key.location_id, key.product_id, key.variant_id, new_quantity, int(row.version) + 1, delta
        )
