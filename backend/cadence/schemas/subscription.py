from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel


class SubscriptionCreate(BaseModel):
    customer_id: UUID
    plan_id: UUID
    quantity: int = 1
    discount_percent: Decimal = Decimal("0")
    start_date: datetime | None = None
    auto_renew: bool = True
    notes: str | None = None


class PlanChange(BaseModel):
    plan_id: UUID
    reason: str | None = None


class CancelRequest(BaseModel):
    reason: str | None = None
    cancel_at_period_end: bool = True


class SubscriptionResponse(BaseModel):
    id: UUID
    tenant_id: UUID
    customer_id: UUID
    plan_id: UUID
    status: str
    quantity: int
    unit_amount_cents: int
    discount_percent: Decimal
    subtotal_cents: int
    discount_amount_cents: int
    tax_amount_cents: int
    total_amount_cents: int
    currency: str
    billing_cycle: str
    billing_interval: int
    started_at: datetime | None
    trial_ends_at: datetime | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    next_billing_date: datetime | None
    auto_renew: bool
    cancel_at_period_end: bool
    cancelled_at: datetime | None
    cancellation_reason: str | None

    model_config = {"from_attributes": True}
