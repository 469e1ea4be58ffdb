"""Payment model for payments applied against invoices."""

from enum import Enum

from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, String, Text, func

from cadence.core.config import settings
from cadence.core.database import Base
from cadence.models.shared import UUIDType, generate_uuid


class PaymentStatus(str, Enum):
    COMPLETED = "completed"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    BANK_TRANSFER = "bank_transfer"
    CARD = "card"
    UPI = "upi"
    CHEQUE = "cheque"
    CASH = "cash"
    OTHER = "other"


class Payment(Base):
    __tablename__ = "payments"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    tenant_id = Column(
        UUIDType,
        ForeignKey("tenants.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    customer_id = Column(UUIDType, ForeignKey("customers.id", ondelete="RESTRICT"), nullable=False)
    invoice_id = Column(
        UUIDType, ForeignKey("invoices.id", ondelete="RESTRICT"), nullable=True, index=True
    )
    payment_number = Column(String(50), nullable=False)
    method = Column(String(30), nullable=False, default=PaymentMethod.OTHER.value)
    status = Column(String(30), nullable=False, default=PaymentStatus.COMPLETED.value)
    amount_cents = Column(Integer, nullable=False)
    refunded_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default=settings.DEFAULT_CURRENCY)
    reference_number = Column(String(255), nullable=True)
    payment_date = Column(Date, nullable=False)
    refund_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
