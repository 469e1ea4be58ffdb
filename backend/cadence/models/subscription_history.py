"""Append-only audit trail of subscription events."""

from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Index, String, Text, func

from cadence.core.database import Base
from cadence.models.shared import UUIDType, generate_uuid


class SubscriptionEventType(str, Enum):
    TRIAL_STARTED = "trial_started"
    ACTIVATED = "activated"
    RENEWED = "renewed"
    UPGRADED = "upgraded"
    DOWNGRADED = "downgraded"
    PAUSED = "paused"
    RESUMED = "resumed"
    PAST_DUE = "past_due"
    RECOVERED = "recovered"
    CANCELLATION_SCHEDULED = "cancellation_scheduled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class SubscriptionHistory(Base):
    __tablename__ = "subscription_history"
    __table_args__ = (
        Index("ix_subscription_history_subscription_id", "subscription_id", "created_at"),
    )

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    subscription_id = Column(
        UUIDType,
        ForeignKey("subscriptions.id", ondelete="RESTRICT"),
        nullable=False,
    )
    tenant_id = Column(
        UUIDType,
        ForeignKey("tenants.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    event_type = Column(String(50), nullable=False)
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=True)
    from_plan_id = Column(UUIDType, nullable=True)
    to_plan_id = Column(UUIDType, nullable=True)
    performed_by = Column(String(255), nullable=True)
    change_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
