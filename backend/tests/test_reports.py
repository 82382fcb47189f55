from datetime import datetime

import pytest
from sqlalchemy.exc import OperationalError

from core.context import RequestContext
from core.errors import PermissionDeniedError, ValidationError
from schemas.inventory import StockMovementCreate, StockMovementItemCreate
from schemas.sales import CheckoutCreate, CheckoutItemCreate
from schemas.service import ServicePaymentCreate, ServiceTicketCreate
from services.checkout import checkout, void_invoice
from services.movement_recorder import record_movement
from services import reports
from services.reports import dashboard, period_start, revenue_report
from services.service_tickets import add_payment, change_status, create_ticket


def test_period_start():
    now = datetime(2026, 10, 19, 15, 30)
    assert period_start("today", now) == datetime(2026, 10, 19)
    assert period_start("week", now) == datetime(2026, 10, 12, 15, 30)
    assert period_start("month", now) == datetime(2026, 10, 1)
    assert period_start("year", now) == datetime(2026, 1, 1)
    with pytest.raises(ValidationError):
        period_start("decade", now)


async def _sell(db, ctx, product_id, qty):
    return await checkout(
        db,
        ctx,
        CheckoutCreate(items=[CheckoutItemCreate(product_id=product_id, quantity=qty)], payment_method="transfer"),
    )


async def test_dashboard_counts(db_session, shop, owner_ctx, cashier_ctx):
    await record_movement(
        db_session,
        owner_ctx,
        StockMovementCreate(
            movement_type="IN",
            to_location_id=shop.store.id,
            items=[
                StockMovementItemCreate(product_id=shop.charger.id, quantity=10),
                StockMovementItemCreate(product_id=shop.cable.id, quantity=2),
            ],
        ),
    )
    await _sell(db_session, cashier_ctx, shop.charger.id, 1)
    second = await _sell(db_session, cashier_ctx, shop.cable.id, 2)
    voided = await _sell(db_session, cashier_ctx, shop.cable.id, 1)
    await void_invoice(db_session, owner_ctx, voided.id)

    ticket = await create_ticket(
        db_session, cashier_ctx, ServiceTicketCreate(device_brand="Oppo", complaint="Battery drains")
    )
    done = await create_ticket(db_session, cashier_ctx, ServiceTicketCreate(device_brand="Vivo", complaint="Mic"))
    await change_status(db_session, cashier_ctx, done.id, "CANCELLED")

    data = await dashboard(db_session, cashier_ctx)

    assert data["today_transactions"] == 2
    assert data["today_sales"] == 150_000 + 90_000
    assert data["today_sales_minor"] == 24_000_000
    assert data["month_revenue"] == 240_000
    assert data["active_tickets"] == 1
    # Cable: 2 on hand, min_stock 5
    assert data["low_stock_count"] == 1
    assert len(data["recent_sales"]) == 3
    assert {s["invoice_number"] for s in data["recent_sales"]} >= {second.invoice_number}
    assert {t["ticket_number"] for t in data["recent_tickets"]} == {ticket.ticket_number, done.ticket_number}


async def test_dashboard_requires_capability(db_session, shop):
    nobody = RequestContext(user_id=shop.owner.id, branch_id=shop.branch.id)
    with pytest.raises(PermissionDeniedError):
        await dashboard(db_session, nobody)


async def test_revenue_report(db_session, shop, owner_ctx, cashier_ctx):
    await _sell(db_session, cashier_ctx, shop.charger.id, 2)
    await _sell(db_session, cashier_ctx, shop.cable.id, 1)

    t = await create_ticket(
        db_session, cashier_ctx, ServiceTicketCreate(device_brand="Samsung", complaint="LCD", deposit_amount=100_000)
    )
    for status in ("DIAGNOSIS", "IN_PROGRESS", "COMPLETED"):
        await change_status(db_session, cashier_ctx, t.id, status)
    await add_payment(db_session, cashier_ctx, t.id, ServicePaymentCreate(amount=250_000))
    # Unfinished tickets do not count
    await create_ticket(
        db_session, cashier_ctx, ServiceTicketCreate(device_brand="Oppo", complaint="Wifi", deposit_amount=50_000)
    )

    report = await revenue_report(db_session, owner_ctx, "month")

    assert report["sales_count"] == 2
    assert report["sales_revenue"] == 300_000 + 45_000
    assert report["service_count"] == 1
    assert report["service_revenue"] == 350_000
    assert report["total_revenue"] == 695_000
    # charger cost = buy price 85,000; cable cost = average 21,000
    assert report["cogs"] == 2 * 85_000 + 21_000
    assert report["gross_profit"] == 695_000 - 191_000
    assert report["top_products"][0] == {"name": "Charger 20W", "quantity": 2, "revenue": 300_000}
    assert sum(d["amount"] for d in report["daily_sales"]) == 345_000


async def test_revenue_report_is_for_owners_and_admins(db_session, shop, cashier_ctx):
    with pytest.raises(PermissionDeniedError):
        await revenue_report(db_session, cashier_ctx)


async def test_report_endpoints(client, shop):
    resp = await client.get("/reports/dashboard")
    assert resp.status_code == 200
    assert resp.json()["today_transactions"] == 0

    resp = await client.get("/reports/revenue", params={"period": "week"})
    assert resp.status_code == 200
    assert resp.json()["period"] == "week"

    resp = await client.get("/reports/revenue", params={"period": "decade"})
    assert resp.status_code == 400

    client.act_as(shop.technician)
    assert (await client.get("/reports/revenue")).status_code == 403


async def test_unreachable_store_is_503(client, shop, monkeypatch):
    async def unreachable(db, ctx):
        raise OperationalError("SELECT ...", {}, Exception("could not connect to server"))

    monkeypatch.setattr(reports, "dashboard", unreachable)

    resp = await client.get("/reports/dashboard")
    assert resp.status_code == 503
    assert resp.json() == {"detail": "Store unavailable, please retry"}
