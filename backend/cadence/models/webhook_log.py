"""Delivery log: one row per (registration, fired event)."""

from enum import Enum

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)

from cadence.core.database import Base
from cadence.models.shared import UUIDType, generate_uuid


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    RETRYING = "retrying"
    FAILED = "failed"


class WebhookLog(Base):
    __tablename__ = "webhook_logs"
    __table_args__ = (
        Index("ix_webhook_logs_webhook_id", "webhook_id"),
        Index("ix_webhook_logs_retry", "status", "next_retry_at"),
    )

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    webhook_id = Column(
        UUIDType,
        ForeignKey("webhooks.id", ondelete="RESTRICT"),
        nullable=False,
    )
    tenant_id = Column(
        UUIDType,
        ForeignKey("tenants.id", ondelete="RESTRICT"),
        nullable=False,
    )
    event_type = Column(String(100), nullable=False)
    # Idempotency key sent to the receiver as X-Webhook-ID
    event_id = Column(UUIDType, nullable=False, unique=True, default=generate_uuid)
    payload = Column(JSON, nullable=False)
    status = Column(String(20), nullable=False, default=DeliveryStatus.PENDING.value)
    attempt_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    response_status = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    error_message = Column(String(1000), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
