# Pydantic schemas for user-related requests/responses
# fastapi-users provides the base schemas; we add profile fields and branch/role access

from typing import List, Optional
from uuid import UUID

from fastapi_users import schemas
from pydantic import BaseModel

from core.context import Role


class UserRead(schemas.BaseUser[UUID]):
    full_name: Optional[str] = None
    phone: Optional[str] = None
    branch_id: Optional[UUID] = None


class UserCreate(schemas.BaseUserCreate):
    full_name: Optional[str] = None
    phone: Optional[str] = None


class UserUpdate(schemas.BaseUserUpdate):
    full_name: Optional[str] = None
    phone: Optional[str] = None


class UserAccessUpdate(BaseModel):
    """Assign a user to a branch and replace their roles."""
    branch_id: UUID
    roles: List[Role]


class UserAccessOut(BaseModel):
    user_id: UUID
    email: str
    full_name: Optional[str] = None
    branch_id: Optional[UUID] = None
    roles: List[Role]


class MeOut(BaseModel):
    user_id: UUID
    branch_id: UUID
    roles: List[Role]
    capabilities: List[str]
