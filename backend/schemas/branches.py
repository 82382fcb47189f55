from typing import Optional
from uuid import UUID

from pydantic import BaseModel, field_validator


class BranchCreate(BaseModel):
    code: str
    name: str
    address: Optional[str] = None
    phone: Optional[str] = None

    @field_validator("code", "name")
    @classmethod
    def _strip_required(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("field is required")
        return v

    @field_validator("code")
    @classmethod
    def _code_format(cls, v: str) -> str:
        v = v.upper()
        if not v.isalnum() or len(v) > 16:
            raise ValueError("code must be alphanumeric, at most 16 characters")
        return v


class BranchOut(BaseModel):
    id: UUID
    code: str
    name: str
    address: Optional[str] = None
    phone: Optional[str] = None
    is_active: bool
