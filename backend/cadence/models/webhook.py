"""Webhook registration model and the closed catalog of deliverable events."""

from enum import Enum

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, func

from cadence.core.config import settings
from cadence.core.database import Base
from cadence.models.shared import UUIDType, generate_uuid


class WebhookEvent(str, Enum):
    INVOICE_CREATED = "invoice.created"
    INVOICE_SENT = "invoice.sent"
    INVOICE_PAID = "invoice.paid"
    INVOICE_OVERDUE = "invoice.overdue"
    INVOICE_VOIDED = "invoice.voided"
    SUBSCRIPTION_ACTIVATED = "subscription.activated"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_UPGRADED = "subscription.upgraded"
    SUBSCRIPTION_DOWNGRADED = "subscription.downgraded"
    SUBSCRIPTION_PAUSED = "subscription.paused"
    SUBSCRIPTION_EXPIRED = "subscription.expired"
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_REFUNDED = "payment.refunded"


class Webhook(Base):
    """A tenant's registered delivery target."""

    __tablename__ = "webhooks"

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    tenant_id = Column(
        UUIDType,
        ForeignKey("tenants.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    url = Column(String(2048), nullable=False)
    secret = Column(String(255), nullable=False)
    description = Column(String(500), nullable=True)
    # List of WebhookEvent values
    events = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    retry_count = Column(Integer, nullable=False, default=settings.WEBHOOK_DEFAULT_RETRY_COUNT)
    timeout_seconds = Column(
        Integer, nullable=False, default=settings.WEBHOOK_DEFAULT_TIMEOUT_SECONDS
    )
    headers = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def subscribes_to(self, event: WebhookEvent) -> bool:
        return event.value in (self.events or [])
