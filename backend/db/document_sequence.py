from sqlalchemy import BigInteger, Column, ForeignKey, String, Uuid

from .database import Base


class DocumentSequence(Base):
    """Last issued number per (branch, document type, YYYYMM period)."""
    __tablename__ = "document_sequences"

    branch_id = Column(Uuid, ForeignKey("branches.id", ondelete="CASCADE"), primary_key=True)
    doc_type = Column(String(8), primary_key=True)
    period = Column(String(6), primary_key=True)
    last_value = Column(BigInteger, nullable=False, default=0)
