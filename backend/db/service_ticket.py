import uuid
from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class ServiceTicket(Base):
    __tablename__ = "service_tickets"
    __table_args__ = (UniqueConstraint("branch_id", "ticket_number", name="ux_service_tickets_branch_number"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    branch_id = Column(Uuid, ForeignKey("branches.id", ondelete="CASCADE"), nullable=False, index=True)
    ticket_number = Column(String(40), nullable=False)
    customer_id = Column(Uuid, ForeignKey("customers.id", ondelete="SET NULL"), nullable=True, index=True)

    device_brand = Column(String, nullable=False)
    device_model = Column(String, nullable=True)
    device_imei = Column(String(32), nullable=True, index=True)
    device_color = Column(String, nullable=True)
    complaint = Column(Text, nullable=False)
    diagnosis = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    estimated_cost_minor = Column(BigInteger, nullable=True)
    final_cost_minor = Column(BigInteger, nullable=True)
    deposit_minor = Column(BigInteger, nullable=False, default=0)
    paid_minor = Column(BigInteger, nullable=False, default=0)

    # RECEIVED|DIAGNOSIS|WAITING_PARTS|IN_PROGRESS|COMPLETED|PICKED_UP|CANCELLED
    status = Column(String(16), nullable=False, default="RECEIVED", index=True)
    technician_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    received_by_user_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    received_at = Column(DateTime, nullable=False, server_default=func.now(), index=True)
    completed_at = Column(DateTime, nullable=True)
    picked_up_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    customer = relationship("Customer")
    payments = relationship(
        "ServicePayment",
        back_populates="ticket",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ServicePayment.created_at",
    )


class ServicePayment(Base):
    __tablename__ = "service_payments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    ticket_id = Column(Uuid, ForeignKey("service_tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    payment_type = Column(String(16), nullable=False)  # deposit|settlement
    payment_method = Column(String(16), nullable=False)
    amount_minor = Column(BigInteger, nullable=False)
    reference = Column(String, nullable=True)
    created_by_user_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    ticket = relationship("ServiceTicket",back_populates="payments")
