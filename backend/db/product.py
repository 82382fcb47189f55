import uuid
from sqlalchemy import BigInteger, Boolean, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (UniqueConstraint("branch_id", "sku", name="ux_products_branch_sku"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    branch_id = Column(Uuid, ForeignKey("branches.id", ondelete="CASCADE"), nullable=False, index=True)

    sku = Column(String(64), nullable=False)
    barcode = Column(String(64), nullable=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String, nullable=False, default="general")
    brand = Column(String, nullable=True)

    # Money in minor units
    buy_price_minor = Column(BigInteger, nullable=False, default=0)
    sell_price_minor = Column(BigInteger, nullable=False, default=0)
    avg_cost_minor = Column(BigInteger, nullable=False, default=0)

    min_stock = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    has_variants = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    variants = relationship("ProductVariant", back_populates="product", cascade="all, delete-orphan")

    @property
    def cost_minor(self) -> int:
        """Cost used for COGS: moving average when known, else the buy price."""
        return int(self.avg_cost_minor or 0) or int(self.buy_price_minor or 0)


class ProductVariant(Base):
    __tablename__ = "product_variants"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    product_id = Column(Uuid, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)

    sku = Column(String(64), nullable=False)
    barcode = Column(String(64), nullable=True)
    name = Column(String, nullable=False)
    buy_price_minor = Column(BigInteger, nullable=False, default=0)
    sell_price_minor = Column(BigInteger, nullable=False, default=0)
    avg_cost_minor = Column(BigInteger, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    product = relationship("Product", back_populates="variants")

    @property
    def cost_minor(self) -> int:
        return int(self.avg_cost_minor or 0) or int(self.buy_price_minor or 0)
