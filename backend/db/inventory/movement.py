import uuid

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..database import Base


class StockMovement(Base):
    __tablename__ = "stock_movements"
    __table_args__ = (
        UniqueConstraint("branch_id", "movement_number", name="ux_stock_movements_branch_number"),
        UniqueConstraint("branch_id", "idempotency_key", name="ux_stock_movements_branch_idempotency_key"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    branch_id = Column(Uuid, ForeignKey("branches.id", ondelete="CASCADE"), nullable=False, index=True)
    movement_number = Column(String(40), nullable=False)
    movement_type = Column(String(16), nullable=False, index=True)  # 'IN' | 'OUT' | 'ADJUSTMENT' | 'TRANSFER'

    from_location_id = Column(Uuid, ForeignKey("inventory_locations.id", ondelete="RESTRICT"), nullable=True, index=True)
    to_location_id = Column(Uuid, ForeignKey("inventory_locations.id", ondelete="RESTRICT"), nullable=True, index=True)

    reference_type = Column(String(32), nullable=True)  # e.g. 'sales_invoice'
    reference_id = Column(Uuid, nullable=True, index=True)
    notes = Column(Text, nullable=True)
    idempotency_key = Column(String(128), nullable=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now(), index=True)
    created_by_user_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    items = relationship(
        "StockMovementItem",
        back_populates="movement",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    from_location = relationship("InventoryLocation", foreign_keys=[from_location_id])
    to_location = relationship("InventoryLocation", foreign_keys=[to_location_id])


class StockMovementItem(Base):
    __tablename__ = "stock_movement_items"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    movement_id = Column(Uuid, ForeignKey("stock_movements.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Uuid, ForeignKey("products.id", ondelete="RESTRICT"), nullable=False, index=True)
    variant_id = Column(Uuid, ForeignKey("product_variants.id", ondelete="RESTRICT"), nullable=True)

    # Always entered positive; the movement type decides the sign per location.
    quantity = Column(Integer, nullable=False)
    unit_cost_minor = Column(BigInteger, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    movement = relationship("StockMovement", back_populates="items")
    product = relationship("Product")
