from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel

from cadence.models.invoice_tax import TaxType


class LineItemInput(BaseModel):
    description: str
    quantity: Decimal = Decimal("1")
    unit_price_cents: int
    discount_percent: Decimal = Decimal("0")
    item_type: str = "one_time"
    unit: str | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None


class TaxRule(BaseModel):
    """A tax to levy on the invoice's taxable amount.

    GST rules (``tax_type`` unset) are split into CGST/SGST or IGST by
    jurisdiction; ``TaxType.OTHER`` rules are applied as a single line.
    """

    rate: Decimal
    name: str = "GST"
    tax_type: TaxType | None = None


class BillingPeriod(BaseModel):
    start: datetime | None = None
    end: datetime | None = None


class InvoiceResponse(BaseModel):
    id: UUID
    tenant_id: UUID
    invoice_number: str
    customer_id: UUID
    subscription_id: UUID | None
    status: str
    issue_date: date
    due_date: date | None
    billing_period_start: datetime | None
    billing_period_end: datetime | None
    currency: str
    subtotal_cents: int
    discount_amount_cents: int
    taxable_amount_cents: int
    tax_amount_cents: int
    total_amount_cents: int
    amount_paid_cents: int
    amount_due_cents: int

    model_config = {"from_attributes": True}
