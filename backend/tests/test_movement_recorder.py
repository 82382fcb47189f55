import uuid
from datetime import date

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from core.errors import ConflictError, NotFoundError, PermissionDeniedError, TransportError, ValidationError
from db.inventory.location import InventoryLocation
from db.inventory.movement import StockMovement
from db.product import Product
from schemas.inventory import StockMovementCreate, StockMovementItemCreate
from services import movement_recorder
from services.movement_recorder import get_movement, record_movement
from services.stock_ledger import BalanceKey, StockLedger


def _movement(movement_type, items, from_location_id=None, to_location_id=None, **kwargs):
    return StockMovementCreate(
        movement_type=movement_type,
        from_location_id=from_location_id,
        to_location_id=to_location_id,
        items=[StockMovementItemCreate(product_id=p, quantity=q) for p, q in items],
        **kwargs,
    )


async def _movement_count(db):
    return (await db.execute(select(func.count(StockMovement.id)))).scalar_one()


async def _stock_in(db, ctx, location, product, qty, **kwargs):
    return await record_movement(db, ctx, _movement("IN", [(product.id, qty)], to_location_id=location.id, **kwargs))


async def test_in_creates_balance_and_numbered_movement(db_session, shop, warehouse_ctx, balance):
    recorded = await _stock_in(db_session, warehouse_ctx, shop.store, shop.charger, 5)

    m = recorded.movement
    period = date.today().strftime("%Y%m")
    assert m.movement_number == f"STK-JKT01-{period}-0001"
    assert m.movement_type == "IN"
    assert m.created_by_user_id == shop.warehouse_user.id
    assert [(it.product_id, it.quantity) for it in m.items] == [(shop.charger.id, 5)]
    assert not recorded.replayed
    assert [(b.location_id, b.quantity) for b in recorded.balances] == [(shop.store.id, 5)]
    assert await balance(shop.store.id, shop.charger.id) == 5


async def test_in_adds_to_existing_balance(db_session, shop, warehouse_ctx, balance):
    await _stock_in(db_session, warehouse_ctx, shop.store, shop.charger, 5)
    await _stock_in(db_session, warehouse_ctx, shop.store, shop.charger, 7)
    assert await balance(shop.store.id, shop.charger.id) == 12


async def test_out_subtracts(db_session, shop, warehouse_ctx, balance):
    await _stock_in(db_session, warehouse_ctx, shop.store, shop.charger, 10)
    recorded = await record_movement(
        db_session, warehouse_ctx, _movement("OUT", [(shop.charger.id, 3)], from_location_id=shop.store.id)
    )
    assert recorded.balances[0].quantity == 7
    assert await balance(shop.store.id, shop.charger.id) == 7


async def test_out_beyond_balance_changes_nothing(db_session, shop, warehouse_ctx, balance):
    await _stock_in(db_session, warehouse_ctx, shop.store, shop.charger, 2)
    before = await _movement_count(db_session)

    with pytest.raises(ValidationError) as exc:
        await record_movement(
            db_session, warehouse_ctx, _movement("OUT", [(shop.charger.id, 5)], from_location_id=shop.store.id)
        )
    assert "Available=2" in exc.value.message

    assert await balance(shop.store.id, shop.charger.id) == 2
    assert await _movement_count(db_session) == before


async def test_failed_item_rolls_back_the_whole_movement(db_session, shop, warehouse_ctx, balance):
    await _stock_in(db_session, warehouse_ctx, shop.store, shop.charger, 5)
    await _stock_in(db_session, warehouse_ctx, shop.store, shop.cable, 1)

    with pytest.raises(ValidationError):
        await record_movement(
            db_session,
            warehouse_ctx,
            _movement("OUT", [(shop.charger.id, 2), (shop.cable.id, 3)], from_location_id=shop.store.id),
        )
    assert await balance(shop.store.id, shop.charger.id) == 5
    assert await balance(shop.store.id, shop.cable.id) == 1


async def test_transfer_conserves_total(db_session, shop, warehouse_ctx, balance):
    await _stock_in(db_session, warehouse_ctx, shop.warehouse, shop.charger, 10)
    await record_movement(
        db_session,
        warehouse_ctx,
        _movement(
            "TRANSFER", [(shop.charger.id, 4)], from_location_id=shop.warehouse.id, to_location_id=shop.store.id
        ),
    )
    wh = await balance(shop.warehouse.id, shop.charger.id)
    store = await balance(shop.store.id, shop.charger.id)
    assert (wh, store) == (6, 4)
    assert wh + store == 10


async def test_adjustment_adds_to_destination(db_session, shop, owner_ctx, balance):
    await record_movement(
        db_session, owner_ctx, _movement("ADJUSTMENT", [(shop.cable.id, 3)], to_location_id=shop.store.id)
    )
    assert await balance(shop.store.id, shop.cable.id) == 3


async def test_idempotent_replay_returns_the_first_movement(db_session, shop, warehouse_ctx, balance):
    first = await _stock_in(db_session, warehouse_ctx, shop.store, shop.charger, 5, idempotency_key="abc-1")
    again = await _stock_in(db_session, warehouse_ctx, shop.store, shop.charger, 5, idempotency_key="abc-1")

    assert again.replayed
    assert again.movement.id == first.movement.id
    assert again.balances[0].quantity == 5
    assert await balance(shop.store.id, shop.charger.id) == 5
    assert await _movement_count(db_session) == 1


async def test_different_keys_record_separate_movements(db_session, shop, warehouse_ctx, balance):
    await _stock_in(db_session, warehouse_ctx, shop.store, shop.charger, 1, idempotency_key="k1")
    recorded = await _stock_in(db_session, warehouse_ctx, shop.store, shop.charger, 1, idempotency_key="k2")
    assert not recorded.replayed
    assert await balance(shop.store.id, shop.charger.id) == 2


async def test_concurrent_ins_both_land(db_session, shop, warehouse_ctx, balance, monkeypatch):
    await _stock_in(db_session, warehouse_ctx, shop.store, shop.charger, 10)
    key_row = await StockLedger(db_session, shop.branch.id)._read_balance(BalanceKey(shop.store.id, shop.charger.id))
    await db_session.commit()

    # The first writer commits +3 after the second writer already read the balance
    await _stock_in(db_session, warehouse_ctx, shop.store, shop.charger, 3)

    real_read = StockLedger._read_balance
    calls = []

    async def read_before_first_writer(self, k):
        calls.append(k)
        if len(calls) == 1:
            return key_row
        return await real_read(self, k)

    monkeypatch.setattr(StockLedger, "_read_balance", read_before_first_writer)
    recorded = await _stock_in(db_session, warehouse_ctx, shop.store, shop.charger, 4)

    assert len(calls) == 2
    assert recorded.balances[0].quantity == 17
    assert await balance(shop.store.id, shop.charger.id) == 17


async def test_cashier_cannot_record_movements(db_session, shop, cashier_ctx, balance):
    with pytest.raises(PermissionDeniedError):
        await _stock_in(db_session, cashier_ctx, shop.store, shop.charger, 1)
    assert await balance(shop.store.id, shop.charger.id) is None


async def test_allow_negative_needs_override_capability(db_session, shop, warehouse_ctx, owner_ctx, balance):
    payload = _movement("OUT", [(shop.charger.id, 2)], from_location_id=shop.store.id, allow_negative=True)
    with pytest.raises(PermissionDeniedError):
        await record_movement(db_session, warehouse_ctx, payload)

    recorded = await record_movement(db_session, owner_ctx, payload)
    assert recorded.balances[0].quantity == -2
    assert await balance(shop.store.id, shop.charger.id) == -2


@pytest.mark.parametrize(
    "movement_type, use_from, use_to",
    [("IN", False, False), ("OUT", False, True), ("TRANSFER", True, False)],
)
async def test_shape_errors_are_validation_errors(db_session, shop, warehouse_ctx, movement_type, use_from, use_to):
    payload = _movement(
        movement_type,
        [(shop.charger.id, 1)],
        from_location_id=shop.store.id if use_from else None,
        to_location_id=shop.warehouse.id if use_to else None,
    )
    with pytest.raises(ValidationError):
        await record_movement(db_session, warehouse_ctx, payload)
    assert await _movement_count(db_session) == 0


async def test_empty_movement_is_rejected(db_session, shop, warehouse_ctx):
    with pytest.raises(ValidationError):
        await record_movement(db_session, warehouse_ctx, _movement("IN", [], to_location_id=shop.store.id))


async def test_zero_quantity_is_rejected(db_session, shop, warehouse_ctx):
    with pytest.raises(ValidationError):
        await _stock_in(db_session, warehouse_ctx, shop.store, shop.charger, 0)


async def test_location_of_another_branch_is_not_found(db_session, shop, warehouse_ctx):
    with pytest.raises(NotFoundError):
        await _stock_in(db_session, warehouse_ctx, shop.other_store, shop.charger, 1)


async def test_inactive_location_is_rejected(db_session, shop, warehouse_ctx):
    loc = await db_session.get(InventoryLocation, shop.warehouse.id)
    loc.is_active = False
    await db_session.commit()
    with pytest.raises(ValidationError):
        await _stock_in(db_session, warehouse_ctx, shop.warehouse, shop.charger, 1)


async def test_unknown_product_is_not_found(db_session, shop, warehouse_ctx):
    with pytest.raises(NotFoundError):
        await record_movement(
            db_session, warehouse_ctx, _movement("IN", [(uuid.uuid4(), 1)], to_location_id=shop.store.id)
        )


async def test_inactive_product_is_rejected(db_session, shop, warehouse_ctx):
    product = await db_session.get(Product, shop.cable.id)
    product.is_active = False
    await db_session.commit()
    with pytest.raises(ValidationError):
        await _stock_in(db_session, warehouse_ctx, shop.store, shop.cable, 1)


async def test_get_movement_is_branch_scoped(db_session, shop, warehouse_ctx):
    recorded = await _stock_in(db_session, warehouse_ctx, shop.store, shop.charger, 1)
    assert (await get_movement(db_session, warehouse_ctx, recorded.movement.id)).id == recorded.movement.id

    other_ctx = warehouse_ctx.__class__(
        user_id=warehouse_ctx.user_id, branch_id=shop.other_branch.id, roles=warehouse_ctx.roles
    )
    with pytest.raises(NotFoundError):
        await get_movement(db_session, other_ctx, recorded.movement.id)


async def test_replay_survives_product_deactivation(db_session, shop, warehouse_ctx, balance):
    first = await _stock_in(db_session, warehouse_ctx, shop.store, shop.charger, 2, idempotency_key="k")

    product = await db_session.get(Product, shop.charger.id)
    product.is_active = False
    await db_session.commit()

    again = await _stock_in(db_session, warehouse_ctx, shop.store, shop.charger, 2, idempotency_key="k")
    assert again.replayed
    assert again.movement.id == first.movement.id
    assert await balance(shop.store.id, shop.charger.id) == 2


async def test_key_reused_for_another_movement_conflicts(db_session, shop, warehouse_ctx, balance):
    await _stock_in(db_session, warehouse_ctx, shop.store, shop.charger, 5, idempotency_key="scan-7")
    await _stock_in(db_session, warehouse_ctx, shop.store, shop.cable, 5)

    with pytest.raises(ConflictError):
        await record_movement(
            db_session,
            warehouse_ctx,
            _movement("OUT", [(shop.cable.id, 1)], from_location_id=shop.store.id, idempotency_key="scan-7"),
        )
    with pytest.raises(ConflictError):
        await _stock_in(db_session, warehouse_ctx, shop.store, shop.charger, 6, idempotency_key="scan-7")

    assert await balance(shop.store.id, shop.cable.id) == 5
    assert await balance(shop.store.id, shop.charger.id) == 5
    assert await _movement_count(db_session) == 2


async def test_store_outage_while_numbering_is_a_transport_error(db_session, shop, warehouse_ctx, balance, monkeypatch):
    async def unreachable(db, branch_id, doc_type, today=None):
        raise OperationalError("INSERT INTO document_sequences ...", {}, Exception("server closed the connection"))

    monkeypatch.setattr(movement_recorder, "generate_document_number", unreachable)

    with pytest.raises(TransportError):
        await _stock_in(db_session, warehouse_ctx, shop.store, shop.charger, 1)
    assert await _movement_count(db_session) == 0
    assert await balance(shop.store.id, shop.charger.id) is None


def _priced_in(location, product, qty, unit_cost):
    return StockMovementCreate(
        movement_type="IN",
        to_location_id=location.id,
        items=[StockMovementItemCreate(product_id=product.id, quantity=qty, unit_cost=unit_cost)],
    )


async def _avg_cost(db, product_id):
    return (await db.execute(select(Product.avg_cost_minor).where(Product.id == product_id))).scalar_one()


async def test_priced_receipts_keep_a_moving_average(db_session, shop, warehouse_ctx):
    await record_movement(db_session, warehouse_ctx, _priced_in(shop.store, shop.charger, 4, 90000))
    assert await _avg_cost(db_session, shop.charger.id) == 9_000_000

    await record_movement(db_session, warehouse_ctx, _priced_in(shop.warehouse, shop.charger, 4, 100000))
    assert await _avg_cost(db_session, shop.charger.id) == 9_500_000


async def test_average_weighs_existing_stock(db_session, shop, warehouse_ctx):
    # Cable: 6 on hand at 21,000, then 2 more at 25,000
    await _stock_in(db_session, warehouse_ctx, shop.store, shop.cable, 6)
    assert await _avg_cost(db_session, shop.cable.id) == 2_100_000

    await record_movement(db_session, warehouse_ctx, _priced_in(shop.store, shop.cable, 2, 25000))
    assert await _avg_cost(db_session, shop.cable.id) == 2_200_000

    await record_movement(
        db_session, warehouse_ctx, _movement("OUT", [(shop.cable.id, 3)], from_location_id=shop.store.id)
    )
    assert await _avg_cost(db_session, shop.cable.id) == 2_200_000
