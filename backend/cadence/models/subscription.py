from enum import Enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)

from cadence.core.config import settings
from cadence.core.database import Base
from cadence.models.plan import BillingCycle
from cadence.models.shared import UUIDType, generate_uuid


class SubscriptionStatus(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_renewal", "status", "auto_renew", "next_billing_date"),
        Index("ix_subscriptions_customer_plan", "customer_id", "plan_id"),
    )

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    tenant_id = Column(
        UUIDType,
        ForeignKey("tenants.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    customer_id = Column(
        UUIDType,
        ForeignKey("customers.id", ondelete="RESTRICT"),
        nullable=False,
    )
    plan_id = Column(
        UUIDType,
        ForeignKey("plans.id", ondelete="RESTRICT"),
        nullable=False,
    )
    status = Column(
        String(20), nullable=False, default=SubscriptionStatus.ACTIVE.value, index=True
    )

    # Pricing snapshot for the current cycle
    quantity = Column(Integer, nullable=False, default=1)
    unit_amount_cents = Column(Integer, nullable=False, default=0)
    discount_percent = Column(Numeric(5, 2), nullable=False, default=0)
    subtotal_cents = Column(Integer, nullable=False, default=0)
    discount_amount_cents = Column(Integer, nullable=False, default=0)
    tax_amount_cents = Column(Integer, nullable=False, default=0)
    total_amount_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default=settings.DEFAULT_CURRENCY)

    billing_cycle = Column(String(20), nullable=False, default=BillingCycle.MONTHLY.value)
    billing_interval = Column(Integer, nullable=False, default=1)

    started_at = Column(DateTime(timezone=True), nullable=True)
    trial_ends_at = Column(DateTime(timezone=True), nullable=True)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    next_billing_date = Column(DateTime(timezone=True), nullable=True)
    last_billed_at = Column(DateTime(timezone=True), nullable=True)

    auto_renew = Column(Boolean, nullable=False, default=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
