"""
Dashboard numbers and the period revenue report.

Timestamps are stored naive in UTC (server `now()`), so windows are computed
in UTC as well. `now` can be passed in to pin the clock.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.context import Capability, RequestContext
from core.errors import ValidationError
from db.inventory.stock import StockBalance
from db.product import Product
from db.sales import SalesInvoice, SalesItem
from db.service_ticket import ServiceTicket
from services.service_tickets import FINISHED_STATUSES

PERIODS = ("today", "week", "month", "year")
TOP_PRODUCTS = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _major(minor) -> float:
    return float(minor or 0) / 100.0


def period_start(period: str, now: datetime) -> datetime:
    if period == "today":
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "week":
        return now - timedelta(days=7)
    if period == "month":
        return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if period == "year":
        return now.replace(month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    raise ValidationError(f"Unknown period: {period!r} (expected one of {', '.join(PERIODS)})")


async def _completed_sales(db: AsyncSession, ctx: RequestContext, start: datetime, end: Optional[datetime] = None):
    q = select(func.coalesce(func.sum(SalesInvoice.total_minor), 0), func.count(SalesInvoice.id)).where(
        SalesInvoice.branch_id == ctx.branch_id,
        SalesInvoice.status == "completed",
        SalesInvoice.created_at >= start,
    )
    if end is not None:
        q = q.where(SalesInvoice.created_at <= end)
    total, count = (await db.execute(q)).one()
    return int(total or 0), int(count or 0)


async def low_stock_count(db: AsyncSession, ctx: RequestContext) -> int:
    q = (
        select(func.count(StockBalance.id))
        .join(Product, Product.id == StockBalance.product_id)
        .where(
            StockBalance.branch_id == ctx.branch_id,
            Product.is_active.is_(True),
            StockBalance.quantity <= Product.min_stock,
        )
    )
    return int((await db.execute(q)).scalar_one() or 0)


async def dashboard(db: AsyncSession, ctx: RequestContext, now: Optional[datetime] = None) -> Dict:
    ctx.require(Capability.VIEW_DASHBOARD)
    now = now or _utcnow()

    today_total, today_count = await _completed_sales(db, ctx, period_start("today", now))
    month_total, _ = await _completed_sales(db, ctx, period_start("month", now))

    active_q = select(func.count(ServiceTicket.id)).where(
        ServiceTicket.branch_id == ctx.branch_id,
        ServiceTicket.status.notin_(FINISHED_STATUSES),
    )
    active_tickets = int((await db.execute(active_q)).scalar_one() or 0)

    recent_sales = (
        await db.execute(
            select(SalesInvoice.id, SalesInvoice.invoice_number, SalesInvoice.total_minor, SalesInvoice.status, SalesInvoice.created_at)
            .where(SalesInvoice.branch_id == ctx.branch_id)
            .order_by(SalesInvoice.created_at.desc(), SalesInvoice.invoice_number.desc())
            .limit(5)
        )
    ).all()
    recent_tickets = (
        await db.execute(
            select(ServiceTicket.id, ServiceTicket.ticket_number, ServiceTicket.device_brand, ServiceTicket.status, ServiceTicket.received_at)
            .where(ServiceTicket.branch_id == ctx.branch_id)
            .order_by(ServiceTicket.received_at.desc(), ServiceTicket.ticket_number.desc())
            .limit(5)
        )
    ).all()

    return {
        "today_sales": _major(today_total),
        "today_sales_minor": today_total,
        "today_transactions": today_count,
        "active_tickets": active_tickets,
        "low_stock_count": await low_stock_count(db, ctx),
        "month_revenue": _major(month_total),
        "month_revenue_minor": month_total,
        "recent_sales": [
            {
                "id": r.id,
                "invoice_number": r.invoice_number,
                "total": _major(r.total_minor),
                "status": r.status,
                "created_at": r.created_at,
            }
            for r in recent_sales
        ],
        "recent_tickets": [
            {
                "id": r.id,
                "ticket_number": r.ticket_number,
                "device_brand": r.device_brand,
                "status": r.status,
                "received_at": r.received_at,
            }
            for r in recent_tickets
        ],
    }


async def revenue_report(db: AsyncSession, ctx: RequestContext, period: str = "month", now: Optional[datetime] = None) -> Dict:
    ctx.require(Capability.VIEW_REPORTS)
    now = now or _utcnow()
    start = period_start(period, now)

    sales_total, sales_count = await _completed_sales(db, ctx, start, now)

    svc_q = select(func.coalesce(func.sum(ServiceTicket.paid_minor), 0), func.count(ServiceTicket.id)).where(
        ServiceTicket.branch_id == ctx.branch_id,
        ServiceTicket.status.in_(("COMPLETED", "PICKED_UP")),
        ServiceTicket.received_at >= start,
        ServiceTicket.received_at <= now,
    )
    service_total, service_count = (await db.execute(svc_q)).one()
    service_total = int(service_total or 0)

    items_q = (
        select(SalesItem.product_name, SalesItem.quantity, SalesItem.subtotal_minor, SalesItem.cost_price_minor, SalesInvoice.created_at)
        .join(SalesInvoice, SalesInvoice.id == SalesItem.invoice_id)
        .where(
            SalesInvoice.branch_id == ctx.branch_id,
            SalesInvoice.status == "completed",
            SalesInvoice.created_at >= start,
            SalesInvoice.created_at <= now,
        )
    )
    cogs = 0
    by_product: Dict[str, Dict] = {}
    for row in (await db.execute(items_q)).all():
        cogs += int(row.cost_price_minor or 0) * int(row.quantity)
        entry = by_product.setdefault(row.product_name, {"name": row.product_name, "quantity": 0, "revenue_minor": 0})
        entry["quantity"] += int(row.quantity)
        entry["revenue_minor"] += int(row.subtotal_minor)

    top: List[Dict] = sorted(by_product.values(), key=lambda e: (-e["revenue_minor"], e["name"]))[:TOP_PRODUCTS]

    daily_q = (
        select(SalesInvoice.created_at, SalesInvoice.total_minor)
        .where(
            SalesInvoice.branch_id == ctx.branch_id,
            SalesInvoice.status == "completed",
            SalesInvoice.created_at >= start,
            SalesInvoice.created_at <= now,
        )
        .order_by(SalesInvoice.created_at)
    )
    daily: Dict[str, int] = {}
    for row in (await db.execute(daily_q)).all():
        key = row.created_at.date().isoformat()
        daily[key] = daily.get(key, 0) + int(row.total_minor or 0)

    total_revenue = sales_total + service_total
    return {
        "period": period,
        "start": start,
        "end": now,
        "sales_revenue": _major(sales_total),
        "sales_count": sales_count,
        "service_revenue": _major(service_total),
        "service_count": int(service_count or 0),
        "total_revenue": _major(total_revenue),
        "cogs": _major(cogs),
        "gross_profit": _major(total_revenue - cogs),
        "top_products": [
            {"name": e["name"], "quantity": e["quantity"], "revenue": _major(e["revenue_minor"])} for e in top
        ],
        "daily_sales": [{"date": d, "amount": _major(v)} for d, v in list(daily.items())[-7:]],
    }
