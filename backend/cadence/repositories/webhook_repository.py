"""Webhook registration repository."""

from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from cadence.models.webhook import Webhook, WebhookEvent


class WebhookRepository:
    """Repository for Webhook registrations."""

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        tenant_id: UUID,
        url: str,
        secret: str,
        events: list[str],
        retry_count: int,
        timeout_seconds: int,
        description: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> Webhook:
        """Stage a new registration."""
        webhook = Webhook(
            tenant_id=tenant_id,
            url=url,
            secret=secret,
            events=events,
            retry_count=retry_count,
            timeout_seconds=timeout_seconds,
            description=description,
            headers=headers,
        )
        self.db.add(webhook)
        self.db.flush()
        return webhook

    def get_by_id(self, tenant_id: UUID, webhook_id: UUID) -> Webhook | None:
        return (
            self.db.query(Webhook)
            .filter(Webhook.id == webhook_id, Webhook.tenant_id == tenant_id)
            .first()
        )

    def get_all(self, tenant_id: UUID, active_only: bool = False) -> list[Webhook]:
        query = self.db.query(Webhook).filter(Webhook.tenant_id == tenant_id)
        if active_only:
            query = query.filter(Webhook.is_active.is_(True))
        return query.order_by(Webhook.created_at.asc()).all()

    def get_subscribed(self, tenant_id: UUID, event: WebhookEvent) -> list[Webhook]:
        """Active registrations of ``tenant_id`` listening for ``event``.

        The events column is a JSON list, so membership is checked in Python.
        """
        hooks = self.get_all(tenant_id, active_only=True)
        return [hook for hook in hooks if hook.subscribes_to(event)]

    def update(self, webhook: Webhook, fields: dict[str, Any]) -> Webhook:
        for key, value in fields.items():
            setattr(webhook, key, value)
        self.db.flush()
        return webhook
