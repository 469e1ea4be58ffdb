from enum import Enum

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import relationship

from cadence.core.config import settings
from cadence.core.database import Base
from cadence.models.shared import UUIDType, generate_uuid


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    PARTIALLY_PAID = "partially_paid"
    OVERDUE = "overdue"
    VOID = "void"


# Statuses against which a payment may still be applied
PAYABLE_STATUSES = frozenset(
    {
        InvoiceStatus.DRAFT.value,
        InvoiceStatus.SENT.value,
        InvoiceStatus.PARTIALLY_PAID.value,
        InvoiceStatus.OVERDUE.value,
    }
)


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint("tenant_id", "invoice_number", name="uq_invoices_tenant_number"),
        Index("ix_invoices_subscription_period", "subscription_id", "billing_period_start"),
        Index("ix_invoices_status_due_date", "status", "due_date"),
    )

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    tenant_id = Column(
        UUIDType,
        ForeignKey("tenants.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    customer_id = Column(UUIDType, ForeignKey("customers.id", ondelete="RESTRICT"), nullable=False)
    subscription_id = Column(
        UUIDType, ForeignKey("subscriptions.id", ondelete="RESTRICT"), nullable=True
    )
    invoice_number = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default=InvoiceStatus.DRAFT.value)

    issue_date = Column(Date, nullable=False)
    due_date = Column(Date, nullable=True)
    billing_period_start = Column(DateTime(timezone=True), nullable=True)
    billing_period_end = Column(DateTime(timezone=True), nullable=True)
    currency = Column(String(3), nullable=False, default=settings.DEFAULT_CURRENCY)

    # Amounts in minor units
    subtotal_cents = Column(Integer, nullable=False, default=0)
    discount_percent = Column(Numeric(5, 2), nullable=False, default=0)
    discount_amount_cents = Column(Integer, nullable=False, default=0)
    taxable_amount_cents = Column(Integer, nullable=False, default=0)
    tax_amount_cents = Column(Integer, nullable=False, default=0)
    total_amount_cents = Column(Integer, nullable=False, default=0)
    amount_paid_cents = Column(Integer, nullable=False, default=0)
    amount_due_cents = Column(Integer, nullable=False, default=0)

    notes = Column(Text, nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    voided_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    items = relationship(
        "InvoiceItem", order_by="InvoiceItem.sort_order", cascade="all, delete-orphan"
    )
    taxes = relationship("InvoiceTax", cascade="all, delete-orphan")

    def apply_amount_paid(self, amount_paid_cents: int) -> None:
        """Set amount paid and keep ``amount_due = total - paid`` (never negative)."""
        self.amount_paid_cents = amount_paid_cents
        self.amount_due_cents = max(int(self.total_amount_cents) - amount_paid_cents, 0)
