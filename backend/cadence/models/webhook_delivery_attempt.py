"""WebhookDeliveryAttempt model for tracking individual delivery attempts."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text

from cadence.core.database import Base
from cadence.models.shared import UUIDType, generate_uuid


class WebhookDeliveryAttempt(Base):
    """Records each HTTP attempt made for a delivery log row."""

    __tablename__ = "webhook_delivery_attempts"
    __table_args__ = (Index("ix_webhook_delivery_attempts_log_id", "webhook_log_id"),)

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    webhook_log_id = Column(
        UUIDType,
        ForeignKey("webhook_logs.id", ondelete="CASCADE"),
        nullable=False,
    )
    attempt_number = Column(Integer, nullable=False)
    success = Column(Boolean, nullable=False, default=False)
    http_status = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    error_message = Column(String(1000), nullable=True)
    duration_ms = Column(Integer, nullable=True)
    attempted_at = Column(DateTime(timezone=True), nullable=False)
