import logging
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.context import Capability, RequestContext, Role, get_request_context, require_capability
from core.errors import NotFoundError, PermissionDeniedError
from db.branch import Branch as BranchModel
from db.database import get_async_session
from db.users import User, UserRole
from schemas.users import MeOut, UserAccessOut, UserAccessUpdate

# The fastapi-users routers (auth, register, /users/me ...) are included in main.py;
# this router (mounted at /access) holds branch and role assignment on top of them.
router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/me", response_model=MeOut)
async def my_access(ctx: RequestContext = Depends(get_request_context)):
    return {
        "user_id": ctx.user_id,
        "branch_id": ctx.branch_id,
        "roles": sorted(r.value for r in ctx.roles),
        "capabilities": sorted(c.value for c in ctx.capabilities),
    }


@router.put("/users/{user_id}", response_model=UserAccessOut)
async def set_user_access(
    user_id: UUID,
    payload: UserAccessUpdate,
    ctx: RequestContext = Depends(require_capability(Capability.MANAGE_USERS)),
    db: AsyncSession = Depends(get_async_session),
):
    """
    Put a user in a branch and replace their roles.

    Admins may only assign users to their own branch and cannot hand out the
    owner role; owners (manage_branches) can do both.
    """
    is_owner_level = ctx.can(Capability.MANAGE_BRANCHES)
    if not is_owner_level:
        if payload.branch_id != ctx.branch_id:
            raise PermissionDeniedError("Cannot assign users to another branch")
        if Role.OWNER in payload.roles:
            raise PermissionDeniedError("Only owners can grant the owner role")

    bres = await db.execute(select(BranchModel.id).where(BranchModel.id == payload.branch_id))
    if bres.scalar_one_or_none() is None:
        raise NotFoundError("Branch not found")

    ures = await db.execute(select(User).where(User.id == user_id))
    user = ures.scalar_one_or_none()
    if not user:
        raise NotFoundError("User not found")
    if not is_owner_level and user.branch_id not in (None, ctx.branch_id):
        raise PermissionDeniedError("User belongs to another branch")

    user.branch_id = payload.branch_id
    await db.execute(delete(UserRole).where(UserRole.user_id == user_id))
    roles = sorted({r.value for r in payload.roles})
    for r in roles:
        db.add(UserRole(user_id=user_id, role=r))
    await db.commit()

    logger.info("User %s assigned to branch %s with roles %s", user_id, payload.branch_id, roles)
    return {
        "user_id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "branch_id": user.branch_id,
        "roles": roles,
    }


@router.get("/members", response_model=List[UserAccessOut])
async def list_branch_members(
    ctx: RequestContext = Depends(require_capability(Capability.MANAGE_USERS)),
    db: AsyncSession = Depends(get_async_session),
):
    ures = await db.execute(select(User).where(User.branch_id == ctx.branch_id).order_by(User.email))
    users = ures.scalars().all()
    if not users:
        return []
    rres = await db.execute(select(UserRole.user_id, UserRole.role).where(UserRole.user_id.in_([u.id for u in users])))
    roles_by_user: dict = {}
    for uid, role in rres.all():
        roles_by_user.setdefault(uid, []).append(role)
    return [
        {
            "user_id": u.id,
            "email": u.email,
            "full_name": u.full_name,
            "branch_id": u.branch_id,
            "roles": sorted(roles_by_user.get(u.id, [])),
        }
        for u in users
    ]
