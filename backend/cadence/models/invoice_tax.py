"""Tax breakdown rows for an invoice. Immutable once the invoice is created."""

from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, func

from cadence.core.database import Base
from cadence.models.shared import UUIDType, generate_uuid


class TaxType(str, Enum):
    CGST = "CGST"
    SGST = "SGST"
    IGST = "IGST"
    OTHER = "other"


class InvoiceTax(Base):
    __tablename__ = "invoice_taxes"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    invoice_id = Column(
        UUIDType, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tenant_id = Column(UUIDType, ForeignKey("tenants.id", ondelete="RESTRICT"), nullable=False)
    tax_name = Column(String(100), nullable=False)
    tax_type = Column(String(10), nullable=False)
    tax_rate = Column(Numeric(6, 3), nullable=False)
    taxable_amount_cents = Column(Integer, nullable=False, default=0)
    tax_amount_cents = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
