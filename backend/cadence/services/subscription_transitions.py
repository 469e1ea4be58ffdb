"""Subscription state machine table and the single place statuses change."""

from datetime import datetime
from uuid import UUID

from cadence.core.errors import ConflictError
from cadence.models.subscription import Subscription, SubscriptionStatus
from cadence.models.subscription_history import SubscriptionEventType, SubscriptionHistory
from cadence.repositories.subscription_repository import SubscriptionRepository

ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    SubscriptionStatus.TRIAL: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELLED}
    ),
    SubscriptionStatus.ACTIVE: frozenset(
        {
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.PAST_DUE,
            SubscriptionStatus.PAUSED,
            SubscriptionStatus.CANCELLED,
        }
    ),
    SubscriptionStatus.PAST_DUE: frozenset(
        {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED}
    ),
    SubscriptionStatus.PAUSED: frozenset({SubscriptionStatus.ACTIVE}),
    SubscriptionStatus.CANCELLED: frozenset(),
    SubscriptionStatus.EXPIRED: frozenset(),
}


def can_transition(from_status: SubscriptionStatus | str, to_status: SubscriptionStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS[SubscriptionStatus(from_status)]


def transition(
    repo: SubscriptionRepository,
    subscription: Subscription,
    to_status: SubscriptionStatus,
    event_type: SubscriptionEventType,
    at: datetime,
    performed_by: str | None = None,
    change_reason: str | None = None,
    from_plan_id: UUID | None = None,
    to_plan_id: UUID | None = None,
) -> SubscriptionHistory:
    """Move ``subscription`` to ``to_status`` and append the matching history row.

    Raises:
        ConflictError: the table does not allow the move.
    """
    from_status = SubscriptionStatus(subscription.status)
    if not can_transition(from_status, to_status):
        raise ConflictError(
            f"Cannot move subscription {subscription.id} from {from_status.value} "
            f"to {to_status.value}"
        )

    subscription.status = to_status.value
    return repo.add_history(
        subscription,
        event_type.value,
        created_at=at,
        from_status=from_status.value,
        to_status=to_status.value,
        from_plan_id=from_plan_id,
        to_plan_id=to_plan_id,
        performed_by=performed_by,
        change_reason=change_reason,
    )
