"""
POS checkout.

Prices and costs are read from the product records; the client only sends
product ids, quantities and discounts. Amounts are integer minor units
throughout and converted from/to floats at the edges.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from core.context import Capability, RequestContext
from core.errors import NotFoundError, PosError, TransportError, ValidationError
from db.customer import Customer
from db.product import Product, ProductVariant
from db.sales import SalesInvoice, SalesItem, SalesPayment
from schemas.inventory import StockMovementCreate, StockMovementItemCreate
from schemas.sales import CheckoutCreate
from services.document_numbers import generate_document_number
from services.movement_recorder import check_locations, write_movement

logger = logging.getLogger(__name__)

# One loyalty point per full 10,000 (major units) of invoice total
POINTS_STEP_MINOR = 10_000 * 100


def _minor(amount: Optional[float]) -> int:
    if amount is None:
        return 0
    return int(round(float(amount) * 100))


def _major(minor: Optional[int]) -> float:
    return float(minor or 0) / 100.0


def points_for_total(total_minor: int) -> int:
    return max(0, int(total_minor) // POINTS_STEP_MINOR)


async def _load_lines(db: AsyncSession, ctx: RequestContext, payload: CheckoutCreate) -> List[Dict]:
    if not payload.items:
        raise ValidationError("Cart is empty")

    product_ids = {it.product_id for it in payload.items}
    res = await db.execute(
        select(Product).where(Product.id.in_(product_ids), Product.branch_id == ctx.branch_id)
    )
    products = {p.id: p for p in res.scalars().all()}

    variant_ids = {it.variant_id for it in payload.items if it.variant_id is not None}
    variants: Dict[UUID, ProductVariant] = {}
    if variant_ids:
        vres = await db.execute(select(ProductVariant).where(ProductVariant.id.in_(variant_ids)))
        variants = {v.id: v for v in vres.scalars().all()}

    lines = []
    for it in payload.items:
        if int(it.quantity) <= 0:
            raise ValidationError("quantity must be > 0")
        p = products.get(it.product_id)
        if p is None:
            raise NotFoundError(f"Product {it.product_id} not found")
        if not p.is_active:
            raise ValidationError(f"Product {p.sku} is not for sale")

        priced = p
        name = p.name
        if it.variant_id is not None:
            v = variants.get(it.variant_id)
            if v is None or v.product_id != p.id:
                raise NotFoundError(f"Variant {it.variant_id} not found for product {p.id}")
            if not v.is_active:
                raise ValidationError(f"Variant {v.sku} is not for sale")
            priced = v
            name = f"{p.name} - {v.name}"

        discount_minor = _minor(it.discount)
        if discount_minor < 0:
            raise ValidationError("discount must be >= 0")
        qty = int(it.quantity)
        unit_price_minor = int(priced.sell_price_minor or 0)
        subtotal_minor = qty * unit_price_minor - discount_minor
        if subtotal_minor < 0:
            raise ValidationError(f"Discount exceeds line amount for {name}")

        lines.append(
            {
                "product_id": p.id,
                "variant_id": it.variant_id,
                "product_name": name,
                "quantity": qty,
                "unit_price_minor": unit_price_minor,
                "cost_price_minor": priced.cost_minor,
                "discount_minor": discount_minor,
                "subtotal_minor": subtotal_minor,
            }
        )
    return lines


def compute_totals(lines: List[Dict], discount_minor: int, tax_minor: int, payment_method: str, paid_minor: Optional[int]) -> Dict:
    if discount_minor < 0 or tax_minor < 0:
        raise ValidationError("discount and tax must be >= 0")
    subtotal = sum(int(l["subtotal_minor"]) for l in lines)
    total = subtotal - discount_minor + tax_minor
    if total < 0:
        raise ValidationError("Invoice discount exceeds subtotal")

    if payment_method == "cash":
        if paid_minor is None or paid_minor < total:
            raise ValidationError("Paid amount is less than the total")
        paid = paid_minor
        change = paid_minor - total
    else:
        paid = total
        change = 0
    return {
        "subtotal_minor": subtotal,
        "discount_minor": discount_minor,
        "tax_minor": tax_minor,
        "total_minor": total,
        "paid_minor": paid,
        "change_minor": change,
    }


async def checkout(db: AsyncSession, ctx: RequestContext, payload: CheckoutCreate) -> SalesInvoice:
    ctx.require(Capability.USE_POS)

    lines = await _load_lines(db, ctx, payload)
    paid_minor = _minor(payload.paid_amount) if payload.paid_amount is not None else None
    totals = compute_totals(lines, _minor(payload.discount), _minor(payload.tax), payload.payment_method, paid_minor)

    customer = None
    if payload.customer_id is not None:
        cres = await db.execute(
            select(Customer).where(Customer.id == payload.customer_id, Customer.branch_id == ctx.branch_id)
        )
        customer = cres.scalar_one_or_none()
        if customer is None:
            raise NotFoundError("Customer not found")
    if payload.location_id is not None:
        await check_locations(db, ctx, [payload.location_id])

    try:
        invoice_number = await generate_document_number(db, ctx.branch_id, "INV")
        invoice = SalesInvoice(
            branch_id=ctx.branch_id,
            invoice_number=invoice_number,
            customer_id=payload.customer_id,
            payment_method=payload.payment_method,
            status="completed",
            notes=payload.notes,
            location_id=payload.location_id,
            created_by_user_id=ctx.user_id,
            **totals,
        )
        invoice.items = [SalesItem(**line) for line in lines]
        invoice.payments = [
            SalesPayment(
                payment_method=payload.payment_method,
                amount_minor=totals["paid_minor"],
                reference=payload.payment_reference,
            )
        ]
        db.add(invoice)
        await db.flush()

        if payload.location_id is not None:
            movement = StockMovementCreate(
                movement_type="OUT",
                from_location_id=payload.location_id,
                items=[
                    StockMovementItemCreate(
                        product_id=l["product_id"],
                        variant_id=l["variant_id"],
                        quantity=l["quantity"],
                    )
                    for l in lines
                ],
                reference_type="sales_invoice",
                reference_id=invoice.id,
                notes=f"Sale {invoice_number}",
            )
            recorded = await write_movement(db, ctx, movement)
            invoice.stock_movement_id = recorded.movement.id

        if customer is not None:
            customer.points = int(customer.points or 0) + points_for_total(totals["total_minor"])

        await db.commit()
    except PosError:
        await db.rollback()
        raise
    except (OperationalError, InterfaceError) as e:
        await db.rollback()
        logger.warning("Store error during checkout: %s", e)
        raise TransportError("Sales store unavailable, please retry") from e
    except Exception:
        await db.rollback()
        logger.exception("checkout failed")
        raise

    logger.info("Checkout %s total=%s method=%s", invoice_number, totals["total_minor"], payload.payment_method)
    return await get_invoice(db, ctx, invoice.id)


async def get_invoice(db: AsyncSession, ctx: RequestContext, invoice_id: UUID) -> SalesInvoice:
    res = await db.execute(
        select(SalesInvoice)
        .options(selectinload(SalesInvoice.items), selectinload(SalesInvoice.payments))
        .where(SalesInvoice.id == invoice_id, SalesInvoice.branch_id == ctx.branch_id)
        .execution_options(populate_existing=True)
    )
    inv = res.scalar_one_or_none()
    if not inv:
        raise NotFoundError("Invoice not found")
    return inv


async def list_invoices(
    db: AsyncSession,
    ctx: RequestContext,
    status: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = 100,
) -> List[SalesInvoice]:
    q = (
        select(SalesInvoice)
        .options(selectinload(SalesInvoice.items), selectinload(SalesInvoice.payments))
        .where(SalesInvoice.branch_id == ctx.branch_id)
    )
    if status:
        q = q.where(SalesInvoice.status == status)
    if date_from is not None:
        q = q.where(SalesInvoice.created_at >= date_from)
    if date_to is not None:
        q = q.where(SalesInvoice.created_at < date_to)
    q = q.order_by(SalesInvoice.created_at.desc(), SalesInvoice.invoice_number.desc()).limit(limit)
    res = await db.execute(q)
    return list(res.scalars().all())


async def void_invoice(db: AsyncSession, ctx: RequestContext, invoice_id: UUID) -> SalesInvoice:
    """Mark an invoice voided. Stock taken by the sale is not returned automatically."""
    ctx.require(Capability.VOID_SALES)
    inv = await get_invoice(db, ctx, invoice_id)
    if inv.status == "voided":
        raise ValidationError("Invoice is already voided")
    inv.status = "voided"
    inv.voided_at = func.now()
    await db.commit()
    logger.info("Voided invoice %s", inv.invoice_number)
    return await get_invoice(db, ctx, invoice_id)


def invoice_to_dict(inv: SalesInvoice) -> Dict:
    return {
        "id": inv.id,
        "branch_id": inv.branch_id,
        "invoice_number": inv.invoice_number,
        "customer_id": inv.customer_id,
        "subtotal": _major(inv.subtotal_minor),
        "discount": _major(inv.discount_minor),
        "tax": _major(inv.tax_minor),
        "total": _major(inv.total_minor),
        "paid": _major(inv.paid_minor),
        "change": _major(inv.change_minor),
        "total_minor": int(inv.total_minor or 0),
        "payment_method": inv.payment_method,
        "status": inv.status,
        "notes": inv.notes,
        "location_id": inv.location_id,
        "stock_movement_id": inv.stock_movement_id,
        "created_at": inv.created_at,
        "created_by_user_id": inv.created_by_user_id,
        "items": [
            {
                "id": it.id,
                "product_id": it.product_id,
                "variant_id": it.variant_id,
                "product_name": it.product_name,
                "quantity": int(it.quantity),
                "unit_price": _major(it.unit_price_minor),
                "cost_price": _major(it.cost_price_minor),
                "discount": _major(it.discount_minor),
                "subtotal": _major(it.subtotal_minor),
            }
            for it in inv.items
        ],
        "payments": [
            {
                "id": p.id,
                "payment_method": p.payment_method,
                "amount": _major(p.amount_minor),
                "reference": p.reference,
            }
            for p in inv.payments
        ],
    }
