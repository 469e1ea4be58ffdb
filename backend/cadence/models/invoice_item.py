"""Invoice line items. Immutable once the invoice is created."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, func

from cadence.core.database import Base
from cadence.models.shared import UUIDType, generate_uuid


class InvoiceItem(Base):
    __tablename__ = "invoice_items"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    invoice_id = Column(
        UUIDType, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tenant_id = Column(UUIDType, ForeignKey("tenants.id", ondelete="RESTRICT"), nullable=False)
    item_type = Column(String(30), nullable=False, default="one_time")
    description = Column(String(500), nullable=False)
    quantity = Column(Numeric(12, 4), nullable=False, default=1)
    unit = Column(String(30), nullable=True)
    unit_price_cents = Column(Integer, nullable=False, default=0)
    discount_percent = Column(Numeric(5, 2), nullable=False, default=0)
    discount_amount_cents = Column(Integer, nullable=False, default=0)
    amount_cents = Column(Integer, nullable=False, default=0)
    period_start = Column(DateTime(timezone=True), nullable=True)
    period_end = Column(DateTime(timezone=True), nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
