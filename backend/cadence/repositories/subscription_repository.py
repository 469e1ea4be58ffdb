"""Subscription repository for data access.

Write methods only flush; the calling service owns the transaction.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from cadence.models.subscription import Subscription, SubscriptionStatus
from cadence.models.subscription_history import SubscriptionHistory

OPEN_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIAL.value)


class SubscriptionRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, tenant_id: UUID, subscription_id: UUID) -> Subscription | None:
        return (
            self.db.query(Subscription)
            .filter(Subscription.id == subscription_id, Subscription.tenant_id == tenant_id)
            .first()
        )

    def get_for_update(self, tenant_id: UUID, subscription_id: UUID) -> Subscription | None:
        """Load a subscription with a row lock (no-op on SQLite)."""
        return (
            self.db.query(Subscription)
            .filter(Subscription.id == subscription_id, Subscription.tenant_id == tenant_id)
            .with_for_update()
            .first()
        )

    def has_open_subscription(self, tenant_id: UUID, customer_id: UUID, plan_id: UUID) -> bool:
        query = self.db.query(Subscription.id).filter(
            Subscription.tenant_id == tenant_id,
            Subscription.customer_id == customer_id,
            Subscription.plan_id == plan_id,
            Subscription.status.in_(OPEN_STATUSES),
        )
        return query.first() is not None

    def create(self, **fields: Any) -> Subscription:
        subscription = Subscription(**fields)
        self.db.add(subscription)
        self.db.flush()
        return subscription

    def list_due_for_renewal(self, cutoff: datetime) -> list[tuple[UUID, UUID]]:
        """Return ``(tenant_id, subscription_id)`` of subscriptions billing by ``cutoff``.

        Active subscriptions renew. Active or past-due subscriptions with a
        deferred cancellation are included so the sweep can close them at
        their period boundary.
        """
        rows = (
            self.db.query(Subscription.tenant_id, Subscription.id)
            .filter(
                or_(
                    and_(
                        Subscription.status == SubscriptionStatus.ACTIVE.value,
                        Subscription.auto_renew.is_(True),
                    ),
                    and_(
                        Subscription.status.in_(
                            (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value)
                        ),
                        Subscription.cancel_at_period_end.is_(True),
                    ),
                ),
                Subscription.next_billing_date.isnot(None),
                Subscription.next_billing_date <= cutoff,
            )
            .order_by(Subscription.next_billing_date.asc())
            .all()
        )
        return [(row.tenant_id, row.id) for row in rows]

    def list_expired_trials(self, now: datetime) -> list[tuple[UUID, UUID]]:
        rows = (
            self.db.query(Subscription.tenant_id, Subscription.id)
            .filter(
                Subscription.status == SubscriptionStatus.TRIAL.value,
                Subscription.trial_ends_at.isnot(None),
                Subscription.trial_ends_at < now,
            )
            .order_by(Subscription.trial_ends_at.asc())
            .all()
        )
        return [(row.tenant_id, row.id) for row in rows]

    def add_history(
        self,
        subscription: Subscription,
        event_type: str,
        created_at: datetime,
        from_status: str | None = None,
        to_status: str | None = None,
        from_plan_id: UUID | None = None,
        to_plan_id: UUID | None = None,
        performed_by: str | None = None,
        change_reason: str | None = None,
    ) -> SubscriptionHistory:
        entry = SubscriptionHistory(
            subscription_id=subscription.id,
            tenant_id=subscription.tenant_id,
            event_type=event_type,
            from_status=from_status,
            to_status=to_status,
            from_plan_id=from_plan_id,
            to_plan_id=to_plan_id,
            performed_by=performed_by,
            change_reason=change_reason,
            created_at=created_at,
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def get_history(self, tenant_id: UUID, subscription_id: UUID) -> list[SubscriptionHistory]:
        return (
            self.db.query(SubscriptionHistory)
            .filter(
                SubscriptionHistory.tenant_id == tenant_id,
                SubscriptionHistory.subscription_id == subscription_id,
            )
            .order_by(SubscriptionHistory.created_at.asc())
            .all()
        )
