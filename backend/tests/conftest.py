import os

# Must be set before the app (and its engine) is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LEDGER_BACKOFF_BASE_SECONDS", "0")

from types import SimpleNamespace
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from fastapi_users.password import PasswordHelper
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import db.models  # noqa: F401
from core.auth import current_active_user
from core.context import RequestContext, Role
from db.branch import Branch
from db.database import Base, get_async_session
from db.inventory.location import InventoryLocation
from db.inventory.stock import StockBalance
from db.product import Product
from db.users import User, UserRole
from main import app

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
password_helper = PasswordHelper()


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN itself.
    @event.listens_for(engine.sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(engine) -> AsyncGenerator[AsyncSession, None]:
    session_maker = async_sessionmaker(engine, expire_on_commit=False)
    async with session_maker() as session:
        yield session


def _snapshot(obj, *names) -> SimpleNamespace:
    return SimpleNamespace(**{n: getattr(obj, n) for n in names})


async def _make_user(db: AsyncSession, email: str, branch_id, roles, is_superuser: bool = False) -> User:
    user = User(
        email=email,
        hashed_password=password_helper.hash("secret"),
        full_name=email.split("@")[0].title(),
        branch_id=branch_id,
        is_active=True,
        is_superuser=is_superuser,
        is_verified=True,
    )
    db.add(user)
    await db.flush()
    for r in roles:
        db.add(UserRole(user_id=user.id, role=r.value))
    return user


@pytest_asyncio.fixture
async def shop(db_session: AsyncSession):
    """One branch with two locations, two products and a user per role, plus a second branch."""
    db = db_session
    branch = Branch(code="JKT01", name="Jakarta", is_active=True)
    other_branch = Branch(code="BDG01", name="Bandung", is_active=True)
    db.add_all([branch, other_branch])
    await db.flush()

    store = InventoryLocation(branch_id=branch.id, code="STORE", name="Store front", is_active=True)
    warehouse = InventoryLocation(branch_id=branch.id, code="WH", name="Warehouse", is_active=True)
    other_store = InventoryLocation(branch_id=other_branch.id, code="STORE", name="Bandung store", is_active=True)
    db.add_all([store, warehouse, other_store])

    charger = Product(
        branch_id=branch.id,
        sku="CHG-20W",
        name="Charger 20W",
        category="accessories",
        buy_price_minor=8_500_000,
        sell_price_minor=15_000_000,
        avg_cost_minor=0,
        min_stock=2,
        is_active=True,
    )
    cable = Product(
        branch_id=branch.id,
        sku="CBL-C",
        name="Cable USB-C",
        category="accessories",
        buy_price_minor=2_000_000,
        sell_price_minor=4_500_000,
        avg_cost_minor=2_100_000,
        min_stock=5,
        is_active=True,
    )
    db.add_all([charger, cable])
    await db.flush()

    owner = await _make_user(db, "owner@example.com", branch.id, [Role.OWNER])
    cashier = await _make_user(db, "cashier@example.com", branch.id, [Role.CASHIER])
    warehouse_user = await _make_user(db, "warehouse@example.com", branch.id, [Role.WAREHOUSE])
    technician = await _make_user(db, "tech@example.com", branch.id, [Role.TECHNICIAN])
    await db.commit()

    # Plain snapshots: a rollback expires ORM instances, and touching an expired
    # attribute outside an await would need a lazy load.
    return SimpleNamespace(
        branch=_snapshot(branch, "id", "code"),
        other_branch=_snapshot(other_branch, "id", "code"),
        store=_snapshot(store, "id", "code"),
        warehouse=_snapshot(warehouse, "id", "code"),
        other_store=_snapshot(other_store, "id", "code"),
        charger=_snapshot(charger, "id", "sku", "name", "sell_price_minor", "buy_price_minor"),
        cable=_snapshot(cable, "id", "sku", "name", "sell_price_minor", "avg_cost_minor"),
        owner=_snapshot(owner, "id", "branch_id", "email"),
        cashier=_snapshot(cashier, "id", "branch_id", "email"),
        warehouse_user=_snapshot(warehouse_user, "id", "branch_id", "email"),
        technician=_snapshot(technician, "id", "branch_id", "email"),
    )


def make_ctx(user, *roles: Role) -> RequestContext:
    return RequestContext(user_id=user.id, branch_id=user.branch_id, roles=frozenset(roles))


@pytest.fixture
def owner_ctx(shop) -> RequestContext:
    return make_ctx(shop.owner, Role.OWNER)


@pytest.fixture
def warehouse_ctx(shop) -> RequestContext:
    return make_ctx(shop.warehouse_user, Role.WAREHOUSE)


@pytest.fixture
def cashier_ctx(shop) -> RequestContext:
    return make_ctx(shop.cashier, Role.CASHIER)


@pytest.fixture
def technician_ctx(shop) -> RequestContext:
    return make_ctx(shop.technician, Role.TECHNICIAN)


@pytest.fixture
def balance(db_session: AsyncSession):
    """Async helper: current quantity for (location, product), or None when no row exists."""

    async def _balance(location_id, product_id):
        res = await db_session.execute(
            select(StockBalance.quantity).where(
                StockBalance.location_id == location_id,
                StockBalance.product_id == product_id,
                StockBalance.variant_id.is_(None),
            )
        )
        return res.scalar_one_or_none()

    return _balance


@pytest_asyncio.fixture
async def client(db_session: AsyncSession, shop) -> AsyncGenerator[AsyncClient, None]:
    """
    AsyncClient over the app with the test session and a switchable user.

    `client.act_as(user)` changes who the following requests are made by (owner by default).
    """
    acting = {"user_id": shop.owner.id}

    async def override_get_async_session() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    async def override_current_active_user() -> User:
        return await db_session.get(User, acting["user_id"], populate_existing=True)

    app.dependency_overrides[get_async_session] = override_get_async_session
    app.dependency_overrides[current_active_user] = override_current_active_user

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        ac.act_as = lambda user: acting.__setitem__("user_id", user.id)
        yield ac

    app.dependency_overrides.clear()
