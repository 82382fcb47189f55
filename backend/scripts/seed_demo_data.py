import asyncio
import logging
import os
import sys
from pathlib import Path

"""
Seed a demo branch (locations, products, opening stock, owner user).

This script can be run from either:
- backend/: `python scripts/seed_demo_data.py`
- repo root: `python backend/scripts/seed_demo_data.py`

Opening stock is booked as IN movements through the movement recorder, so the
balances have a ledger behind them like any other stock.
"""

# Allow running from repo root by ensuring `backend/` is on sys.path
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from sqlalchemy import select

from core.context import RequestContext, Role
from db.branch import Branch
from db.database import async_session_maker, create_db_and_tables
from db.inventory.location import InventoryLocation
from db.product import Product
from db.users import User, UserRole
from schemas.inventory import StockMovementCreate, StockMovementItemCreate
from services.movement_recorder import record_movement

from fastapi_users.password import PasswordHelper

logger = logging.getLogger("seed_demo_data")
password_helper = PasswordHelper()

DEMO_PRODUCTS = [
    # sku, name, category, brand, buy, sell, min_stock, opening qty
    ("CHG-USB-C-20W", "Charger USB-C 20W", "accessories", "Anker", 85_000, 150_000, 5, 20),
    ("CBL-USB-C-1M", "Cable USB-C 1m", "accessories", "Baseus", 20_000, 45_000, 10, 40),
    ("TG-IP13", "Tempered glass iPhone 13", "accessories", None, 8_000, 35_000, 10, 50),
    ("LCD-RN10", "LCD Redmi Note 10", "spareparts", "Xiaomi", 350_000, 550_000, 2, 4),
    ("BAT-A52", "Battery Samsung A52", "spareparts", "Samsung", 180_000, 300_000, 2, 6),
]


async def get_or_create_branch(session, code: str, name: str) -> Branch:
    result = await session.execute(select(Branch).where(Branch.code == code))
    branch = result.scalar_one_or_none()
    if branch:
        return branch
    branch = Branch(code=code, name=name, is_active=True)
    session.add(branch)
    await session.flush()
    return branch


async def get_or_create_location(session, branch_id, code: str, name: str) -> InventoryLocation:
    result = await session.execute(
        select(InventoryLocation).where(InventoryLocation.branch_id == branch_id, InventoryLocation.code == code)
    )
    loc = result.scalar_one_or_none()
    if loc:
        return loc
    loc = InventoryLocation(branch_id=branch_id, code=code, name=name, is_active=True)
    session.add(loc)
    await session.flush()
    return loc


async def get_or_create_owner(session, branch_id, email: str, password: str) -> User:
    result = await session.execute(select(User).where(User.email == email))
    user = result.scalar_one_or_none()
    if not user:
        user = User(
            email=email,
            hashed_password=password_helper.hash(password),
            full_name="Demo Owner",
            branch_id=branch_id,
            is_active=True,
            is_superuser=False,
            is_verified=True,
        )
        session.add(user)
        await session.flush()

    roles = await session.execute(select(UserRole.role).where(UserRole.user_id == user.id))
    if Role.OWNER.value not in roles.scalars().all():
        session.add(UserRole(user_id=user.id, role=Role.OWNER.value))
        await session.flush()
    return user


async def seed():
    await create_db_and_tables()

    async with async_session_maker() as session:
        branch = await get_or_create_branch(session, "JKT01", "KonterHP Jakarta")
        store = await get_or_create_location(session, branch.id, "STORE", "Store front")
        await get_or_create_location(session, branch.id, "WH", "Warehouse")
        await get_or_create_location(session, branch.id, "BENCH", "Service bench")
        owner = await get_or_create_owner(
            session,
            branch.id,
            os.getenv("SEED_OWNER_EMAIL", "owner@example.com"),
            os.getenv("SEED_OWNER_PASSWORD", "changeme"),
        )

        opening = []
        for sku, name, category, brand, buy, sell, min_stock, qty in DEMO_PRODUCTS:
            result = await session.execute(
                select(Product).where(Product.branch_id == branch.id, Product.sku == sku)
            )
            if result.scalar_one_or_none():
                continue
            p = Product(
                branch_id=branch.id,
                sku=sku,
                name=name,
                category=category,
                brand=brand,
                buy_price_minor=buy * 100,
                sell_price_minor=sell * 100,
                avg_cost_minor=buy * 100,
                min_stock=min_stock,
                is_active=True,
            )
            session.add(p)
            await session.flush()
            opening.append(StockMovementItemCreate(product_id=p.id, quantity=qty, unit_cost=float(buy)))

        await session.commit()

        if opening:
            ctx = RequestContext(user_id=owner.id, branch_id=branch.id, roles=frozenset({Role.OWNER}))
            recorded = await record_movement(
                session,
                ctx,
                StockMovementCreate(
                    movement_type="IN",
                    to_location_id=store.id,
                    items=opening,
                    notes="Opening stock",
                    idempotency_key="seed-opening-stock",
                ),
            )
            logger.info("Opening stock %s (%d items)", recorded.movement.movement_number, len(opening))
        else:
            logger.info("Demo data already present")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(seed())
