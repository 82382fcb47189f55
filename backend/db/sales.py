import uuid
from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class SalesInvoice(Base):
    __tablename__ = "sales_invoices"
    __table_args__ = (UniqueConstraint("branch_id", "invoice_number", name="ux_sales_invoices_branch_number"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    branch_id = Column(Uuid, ForeignKey("branches.id", ondelete="CASCADE"), nullable=False, index=True)
    invoice_number = Column(String(40), nullable=False)
    customer_id = Column(Uuid, ForeignKey("customers.id", ondelete="SET NULL"), nullable=True, index=True)

    subtotal_minor = Column(BigInteger, nullable=False, default=0)
    discount_minor = Column(BigInteger, nullable=False, default=0)
    tax_minor = Column(BigInteger, nullable=False, default=0)
    total_minor = Column(BigInteger, nullable=False, default=0)
    paid_minor = Column(BigInteger, nullable=False, default=0)
    change_minor = Column(BigInteger, nullable=False, default=0)

    payment_method = Column(String(16), nullable=False, default="cash")  # cash|transfer|qris|split
    status = Column(String(16), nullable=False, default="completed", index=True)  # completed|voided
    notes = Column(Text, nullable=True)

    # Stock location the items were taken from, if stock was deducted
    location_id = Column(Uuid, ForeignKey("inventory_locations.id", ondelete="SET NULL"), nullable=True)
    stock_movement_id = Column(Uuid, ForeignKey("stock_movements.id", ondelete="SET NULL"), nullable=True)

    created_by_user_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now(), index=True)
    voided_at = Column(DateTime, nullable=True)

    customer = relationship("Customer")
    items = relationship("SalesItem", back_populates="invoice", cascade="all, delete-orphan", lazy="selectin")
    payments = relationship("SalesPayment", back_populates="invoice", cascade="all, delete-orphan", lazy="selectin")


class SalesItem(Base):
    __tablename__ = "sales_items"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    invoice_id = Column(Uuid, ForeignKey("sales_invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Uuid, ForeignKey("products.id", ondelete="RESTRICT"), nullable=False, index=True)
    variant_id = Column(Uuid, ForeignKey("product_variants.id", ondelete="RESTRICT"), nullable=True)

    # Snapshot of the product name at sale time
    product_name = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price_minor = Column(BigInteger, nullable=False)
    cost_price_minor = Column(BigInteger, nullable=False, default=0)
    discount_minor = Column(BigInteger, nullable=False, default=0)
    subtotal_minor = Column(BigInteger, nullable=False)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    invoice = relationship("SalesInvoice", back_populates="items")


class SalesPayment(Base):
    __tablename__ = "sales_payments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    invoice_id = Column(Uuid, ForeignKey("sales_invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    payment_method = Column(String(16), nullable=False)
    amount_minor = Column(BigInteger, nullable=False)
    reference = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    invoice = relationship("SalesInvoice", back_populates="payments")
