from datetime import date
from uuid import UUID

from pydantic import BaseModel

from cadence.models.payment import PaymentMethod


class PaymentCreate(BaseModel):
    invoice_id: UUID
    amount_cents: int
    method: PaymentMethod = PaymentMethod.OTHER
    reference_number: str | None = None
    payment_date: date | None = None


class RefundCreate(BaseModel):
    amount_cents: int
    reason: str | None = None


class PaymentResponse(BaseModel):
    id: UUID
    tenant_id: UUID
    customer_id: UUID
    invoice_id: UUID | None
    payment_number: str
    method: str
    status: str
    amount_cents: int
    refunded_cents: int
    currency: str
    reference_number: str | None
    payment_date: date
    refund_reason: str | None

    model_config = {"from_attributes": True}
