"""
Per-request identity, branch scope and role capabilities.

Every service function takes a `RequestContext` explicitly instead of reading
the current user from anywhere global. Routers get one from
`Depends(get_request_context)` (or `Depends(require_capability(...))`).
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import FrozenSet
from uuid import UUID

from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.auth import current_active_user
from core.errors import PermissionDeniedError
from db.database import get_async_session
from db.users import User, UserRole

logger = logging.getLogger(__name__)


class Role(str, enum.Enum):
    OWNER = "owner"
    ADMIN = "admin"
    CASHIER = "cashier"
    TECHNICIAN = "technician"
    WAREHOUSE = "warehouse"


class Capability(str, enum.Enum):
    VIEW_DASHBOARD = "view_dashboard"
    VIEW_REPORTS = "view_reports"
    USE_POS = "use_pos"
    VOID_SALES = "void_sales"
    MANAGE_SERVICE = "manage_service"
    MANAGE_CUSTOMERS = "manage_customers"
    VIEW_INVENTORY = "view_inventory"
    MANAGE_PRODUCTS = "manage_products"
    RECORD_STOCK_MOVEMENT = "record_stock_movement"
    OVERRIDE_NEGATIVE_STOCK = "override_negative_stock"
    MANAGE_USERS = "manage_users"
    MANAGE_BRANCHES = "manage_branches"


ALL_CAPABILITIES: FrozenSet[Capability] = frozenset(Capability)

ROLE_CAPABILITIES: dict[Role, FrozenSet[Capability]] = {
    Role.OWNER: ALL_CAPABILITIES,
    Role.ADMIN: ALL_CAPABILITIES - {Capability.MANAGE_BRANCHES},
    Role.CASHIER: frozenset(
        {
            Capability.VIEW_DASHBOARD,
            Capability.USE_POS,
            Capability.MANAGE_SERVICE,
            Capability.MANAGE_CUSTOMERS,
        }
    ),
    Role.TECHNICIAN: frozenset({Capability.VIEW_DASHBOARD, Capability.MANAGE_SERVICE}),
    Role.WAREHOUSE: frozenset(
        {
            Capability.VIEW_DASHBOARD,
            Capability.VIEW_INVENTORY,
            Capability.RECORD_STOCK_MOVEMENT,
        }
    ),
}


@dataclass(frozen=True)
class RequestContext:
    user_id: UUID
    branch_id: UUID
    roles: FrozenSet[Role] = field(default_factory=frozenset)
    is_superuser: bool = False

    @property
    def capabilities(self) -> FrozenSet[Capability]:
        if self.is_superuser:
            return ALL_CAPABILITIES
        caps: set[Capability] = set()
        for role in self.roles:
            caps |= ROLE_CAPABILITIES.get(role, frozenset())
        return frozenset(caps)

    def can(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def require(self, capability: Capability) -> None:
        if not self.can(capability):
            raise PermissionDeniedError(f"Missing capability: {capability.value}")


def parse_roles(values) -> FrozenSet[Role]:
    roles = set()
    for v in values:
        try:
            roles.add(Role(v))
        except ValueError:
            logger.warning("Ignoring unknown role %r", v)
    return frozenset(roles)


async def load_request_context(db: AsyncSession, user: User) -> RequestContext:
    """Build the context for `user`. Users with no branch cannot act on anything."""
    if user.branch_id is None:
        raise PermissionDeniedError("User is not assigned to a branch")

    res = await db.execute(select(UserRole.role).where(UserRole.user_id == user.id))
    roles = parse_roles(res.scalars().all())
    return RequestContext(
        user_id=user.id,
        branch_id=user.branch_id,
        roles=roles,
        is_superuser=bool(user.is_superuser),
    )


async def get_request_context(
    user: User = Depends(current_active_user),
    db: AsyncSession = Depends(get_async_session),
) -> RequestContext:
    return await load_request_context(db, user)


def require_capability(capability: Capability):
    """Dependency factory: resolves the context and checks one capability."""

    async def _dep(ctx: RequestContext = Depends(get_request_context)) -> RequestContext:
        ctx.require(capability)
        return ctx

    return _dep
