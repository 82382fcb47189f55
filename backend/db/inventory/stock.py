import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..database import Base


class StockBalance(Base):
    __tablename__ = "stock_balances"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    branch_id = Column(Uuid, ForeignKey("branches.id", ondelete="CASCADE"), nullable=False, index=True)
    location_id = Column(
        Uuid,
        ForeignKey("inventory_locations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    product_id = Column(Uuid, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    variant_id = Column(Uuid, ForeignKey("product_variants.id", ondelete="CASCADE"), nullable=True)

    quantity = Column(Integer, nullable=False, default=0)
    reserved_quantity = Column(Integer, nullable=False, default=0)
    # Bumped on every write; updates are conditional on the version that was read.
    version = Column(Integer, nullable=False, default=1)
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    product = relationship("Product")
    location = relationship("InventoryLocation")


# One balance row per key. Two partial indexes so a NULL variant is still unique.
Index(
    "ux_stock_balances_key",
    StockBalance.branch_id,
    StockBalance.location_id,
    StockBalance.product_id,
    StockBalance.variant_id,
    unique=True,
    postgresql_where=StockBalance.variant_id.isnot(None),
    sqlite_where=StockBalance.variant_id.isnot(None),
)
Index(
    "ux_stock_balances_key_no_variant",
    StockBalance.branch_id,
    StockBalance.location_id,
    StockBalance.product_id,
    unique=True,
    postgresql_where=StockBalance.variant_id.is_(None),
    sqlite_where=StockBalance.variant_id.is_(None),
)
