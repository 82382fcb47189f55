"""
Document numbers: STK-<BRANCH>-<YYYYMM>-<NNNN>.

One counter row per (branch, doc type, month), bumped with a single
INSERT ... ON CONFLICT DO UPDATE ... RETURNING so concurrent callers never see
the same value. The counter lives in the caller's transaction: if that rolls
back, the number is not consumed.
"""

from datetime import date
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import NotFoundError, ValidationError
from db.branch import Branch
from db.document_sequence import DocumentSequence

DOC_TYPES = {"STK", "INV", "SRV"}


def _insert_for(db: AsyncSession):
    if db.get_bind().dialect.name == "sqlite":
        return sqlite.insert
    return postgresql.insert


def format_document_number(doc_type: str, branch_code: str, period: str, value: int) -> str:
    return f"{doc_type}-{branch_code}-{period}-{value:04d}"


async def next_sequence_value(db: AsyncSession, branch_id: UUID, doc_type: str, period: str) -> int:
    tbl = DocumentSequence.__table__
    insert = _insert_for(db)
    stmt = (
        insert(tbl)
        .values(branch_id=branch_id, doc_type=doc_type, period=period, last_value=1)
        .on_conflict_do_update(
            index_elements=[tbl.c.branch_id, tbl.c.doc_type, tbl.c.period],
            set_={"last_value": tbl.c.last_value + 1},
        )
        .returning(tbl.c.last_value)
    )
    return int((await db.execute(stmt)).scalar_one())


async def generate_document_number(
    db: AsyncSession,
    branch_id: UUID,
    doc_type: str,
    today: Optional[date] = None,
) -> str:
    doc_type = (doc_type or "").strip().upper()
    if doc_type not in DOC_TYPES:
        raise ValidationError(f"Unknown document type: {doc_type!r}")

    res = await db.execute(select(Branch.code).where(Branch.id == branch_id))
    branch_code = res.scalar_one_or_none()
    if branch_code is None:
        raise NotFoundError("Branch not found")

    period = (today or date.today()).strftime("%Y%m")
    value = await next_sequence_value(db, branch_id, doc_type, period)
    return format_document_number(doc_type, branch_code, period, value)
