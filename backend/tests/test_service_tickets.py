import pytest
from sqlalchemy.exc import OperationalError

from core.errors import PermissionDeniedError, TransportError, ValidationError
from schemas.service import ServicePaymentCreate, ServiceTicketCreate, ServiceTicketUpdate
from services import service_tickets
from services.service_tickets import (
    TRANSITIONS,
    add_payment,
    change_status,
    check_transition,
    create_ticket,
    update_ticket,
)


def _intake(**kwargs):
    data = {"device_brand": "Samsung", "device_model": "A52", "complaint": "Screen cracked"}
    data.update(kwargs)
    return ServiceTicketCreate(**data)


@pytest.mark.parametrize(
    "current, new",
    [
        ("RECEIVED", "DIAGNOSIS"),
        ("DIAGNOSIS", "WAITING_PARTS"),
        ("WAITING_PARTS", "IN_PROGRESS"),
        ("IN_PROGRESS", "COMPLETED"),
        ("COMPLETED", "PICKED_UP"),
        ("IN_PROGRESS", "CANCELLED"),
    ],
)
def test_allowed_transitions(current, new):
    check_transition(current, new)


@pytest.mark.parametrize(
    "current, new",
    [
        ("RECEIVED", "COMPLETED"),
        ("COMPLETED", "CANCELLED"),
        ("PICKED_UP", "RECEIVED"),
        ("CANCELLED", "DIAGNOSIS"),
        ("RECEIVED", "LOST"),
    ],
)
def test_rejected_transitions(current, new):
    with pytest.raises(ValidationError):
        check_transition(current, new)


def test_final_states_have_no_exits():
    assert TRANSITIONS["PICKED_UP"] == frozenset()
    assert TRANSITIONS["CANCELLED"] == frozenset()


async def test_intake_with_deposit(db_session, shop, cashier_ctx):
    t = await create_ticket(db_session, cashier_ctx, _intake(deposit_amount=50_000, estimated_cost=350_000))

    assert t.ticket_number.startswith("SRV-JKT01-")
    assert t.status == "RECEIVED"
    assert t.received_by_user_id == shop.cashier.id
    assert (t.deposit_minor, t.paid_minor, t.estimated_cost_minor) == (5_000_000, 5_000_000, 35_000_000)
    [p] = t.payments
    assert (p.payment_type, p.payment_method, p.amount_minor) == ("deposit", "cash", 5_000_000)
    assert t.received_at is not None


async def test_intake_without_deposit_has_no_payment(db_session, shop, technician_ctx):
    t = await create_ticket(db_session, technician_ctx, _intake())
    assert t.payments == []
    assert t.paid_minor == 0


@pytest.mark.parametrize("field, value", [("device_brand", "  "), ("complaint", "")])
async def test_intake_requires_brand_and_complaint(db_session, shop, cashier_ctx, field, value):
    with pytest.raises(ValidationError):
        await create_ticket(db_session, cashier_ctx, _intake(**{field: value}))


async def test_negative_deposit_is_rejected(db_session, shop, cashier_ctx):
    with pytest.raises(ValidationError):
        await create_ticket(db_session, cashier_ctx, _intake(deposit_amount=-1))


async def test_warehouse_cannot_touch_tickets(db_session, shop, warehouse_ctx):
    with pytest.raises(PermissionDeniedError):
        await create_ticket(db_session, warehouse_ctx, _intake())


async def test_store_outage_at_intake_is_a_transport_error(db_session, shop, cashier_ctx, monkeypatch):
    async def unreachable(db, branch_id, doc_type, today=None):
        raise OperationalError("INSERT INTO document_sequences ...", {}, Exception("connection reset"))

    monkeypatch.setattr(service_tickets, "generate_document_number", unreachable)

    with pytest.raises(TransportError):
        await create_ticket(db_session, cashier_ctx, _intake(deposit_amount=50_000))


async def test_full_workflow_stamps_times(db_session, shop, technician_ctx):
    t = await create_ticket(db_session, technician_ctx, _intake())
    for status in ("DIAGNOSIS", "IN_PROGRESS", "COMPLETED"):
        t = await change_status(db_session, technician_ctx, t.id, status)
    assert t.completed_at is not None
    assert t.picked_up_at is None

    t = await change_status(db_session, technician_ctx, t.id, "PICKED_UP")
    assert t.status == "PICKED_UP"
    assert t.picked_up_at is not None


async def test_illegal_jump_leaves_status_alone(db_session, shop, technician_ctx):
    ticket_id = (await create_ticket(db_session, technician_ctx, _intake())).id
    with pytest.raises(ValidationError):
        await change_status(db_session, technician_ctx, ticket_id, "COMPLETED")

    t = await change_status(db_session, technician_ctx, ticket_id, "DIAGNOSIS")
    assert t.status == "DIAGNOSIS"


async def test_update_costs_and_diagnosis(db_session, shop, technician_ctx):
    t = await create_ticket(db_session, technician_ctx, _intake())
    t = await update_ticket(
        db_session, technician_ctx, t.id, ServiceTicketUpdate(diagnosis="LCD broken", final_cost=550_000)
    )
    assert t.diagnosis == "LCD broken"
    assert t.final_cost_minor == 55_000_000
    assert t.estimated_cost_minor is None


async def test_cancelled_ticket_is_frozen(db_session, shop, technician_ctx):
    t = await create_ticket(db_session, technician_ctx, _intake())
    await change_status(db_session, technician_ctx, t.id, "CANCELLED")

    with pytest.raises(ValidationError):
        await update_ticket(db_session, technician_ctx, t.id, ServiceTicketUpdate(notes="x"))
    with pytest.raises(ValidationError):
        await add_payment(db_session, technician_ctx, t.id, ServicePaymentCreate(amount=10_000))


async def test_payments_accumulate(db_session, shop, cashier_ctx):
    t = await create_ticket(db_session, cashier_ctx, _intake(deposit_amount=50_000))
    t = await add_payment(
        db_session, cashier_ctx, t.id, ServicePaymentCreate(amount=25_000, payment_type="deposit", payment_method="qris")
    )
    t = await add_payment(db_session, cashier_ctx, t.id, ServicePaymentCreate(amount=300_000))

    assert t.deposit_minor == 7_500_000
    assert t.paid_minor == 37_500_000
    assert sorted(p.amount_minor for p in t.payments) == [2_500_000, 5_000_000, 30_000_000]


async def test_zero_payment_is_rejected(db_session, shop, cashier_ctx):
    t = await create_ticket(db_session, cashier_ctx, _intake())
    with pytest.raises(ValidationError):
        await add_payment(db_session, cashier_ctx, t.id, ServicePaymentCreate(amount=0))


async def test_ticket_endpoints(client, shop):
    client.act_as(shop.technician)
    resp = await client.post(
        "/service/tickets",
        json={"device_brand": "Xiaomi", "device_model": "Redmi Note 10", "complaint": "No power", "deposit_amount": 20000},
    )
    assert resp.status_code == 201
    ticket = resp.json()
    assert ticket["deposit_amount"] == 20000
    assert ticket["paid_amount"] == 20000

    resp = await client.post(f"/service/tickets/{ticket['id']}/status", json={"status": "PICKED_UP"})
    assert resp.status_code == 400

    resp = await client.post(f"/service/tickets/{ticket['id']}/status", json={"status": "DIAGNOSIS"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "DIAGNOSIS"

    resp = await client.post(f"/service/tickets/{ticket['id']}/payments", json={"amount": 80000})
    assert resp.status_code == 201
    assert resp.json()["paid_amount"] == 100000

    resp = await client.get("/service/tickets", params={"q": "redmi"})
    assert [t["id"] for t in resp.json()] == [ticket["id"]]
    resp = await client.get("/service/tickets", params={"status": "RECEIVED"})
    assert resp.json() == []


async def test_ticket_endpoints_forbid_warehouse(client, shop):
    client.act_as(shop.warehouse_user)
    resp = await client.get("/service/tickets")
    assert resp.status_code == 403
