"""Delivery log and delivery attempt repository."""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from cadence.models.webhook_delivery_attempt import WebhookDeliveryAttempt
from cadence.models.webhook_log import DeliveryStatus, WebhookLog


class WebhookLogRepository:
    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        webhook_id: UUID,
        tenant_id: UUID,
        event_type: str,
        payload: dict[str, Any],
        event_id: UUID | None = None,
    ) -> WebhookLog:
        """Stage a pending delivery log for one registration."""
        log = WebhookLog(
            webhook_id=webhook_id,
            tenant_id=tenant_id,
            event_type=event_type,
            payload=payload,
            status=DeliveryStatus.PENDING.value,
            attempt_count=0,
        )
        if event_id is not None:
            log.event_id = event_id
        self.db.add(log)
        self.db.flush()
        return log

    def get_by_id(self, log_id: UUID) -> WebhookLog | None:
        return self.db.query(WebhookLog).filter(WebhookLog.id == log_id).first()

    def get_by_webhook(self, tenant_id: UUID, webhook_id: UUID) -> list[WebhookLog]:
        return (
            self.db.query(WebhookLog)
            .filter(WebhookLog.tenant_id == tenant_id, WebhookLog.webhook_id == webhook_id)
            .order_by(WebhookLog.created_at.asc())
            .all()
        )

    def get_due_for_retry(self, now: datetime, limit: int) -> list[tuple[UUID, UUID]]:
        """``(tenant_id, log_id)`` of retrying logs whose backoff has elapsed, oldest first."""
        rows = (
            self.db.query(WebhookLog.tenant_id, WebhookLog.id)
            .filter(
                WebhookLog.status == DeliveryStatus.RETRYING.value,
                WebhookLog.next_retry_at.isnot(None),
                WebhookLog.next_retry_at <= now,
            )
            .order_by(WebhookLog.next_retry_at.asc())
            .limit(limit)
            .all()
        )
        return [(row.tenant_id, row.id) for row in rows]

    def create_delivery_attempt(
        self,
        webhook_log_id: UUID,
        attempt_number: int,
        success: bool,
        attempted_at: datetime,
        http_status: int | None = None,
        response_body: str | None = None,
        error_message: str | None = None,
        duration_ms: int | None = None,
    ) -> WebhookDeliveryAttempt:
        """Record one HTTP attempt for a delivery log."""
        attempt = WebhookDeliveryAttempt(
            webhook_log_id=webhook_log_id,
            attempt_number=attempt_number,
            success=success,
            http_status=http_status,
            response_body=response_body,
            error_message=error_message,
            duration_ms=duration_ms,
            attempted_at=attempted_at,
        )
        self.db.add(attempt)
        self.db.flush()
        return attempt

    def get_delivery_attempts(self, webhook_log_id: UUID) -> list[WebhookDeliveryAttempt]:
        """Attempts for a delivery log, ordered by attempt number."""
        return (
            self.db.query(WebhookDeliveryAttempt)
            .filter(WebhookDeliveryAttempt.webhook_log_id == webhook_log_id)
            .order_by(WebhookDeliveryAttempt.attempt_number.asc())
            .all()
        )
