"""Subscription lifecycle: creation, plan changes, cancellation, renewal and trials."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from cadence.core.clock import Clock, SystemClock, ensure_utc
from cadence.core.database import tenant_transaction
from cadence.core.errors import ConflictError, NotFoundError, ValidationError
from cadence.core.money import HUNDRED
from cadence.models.customer import Customer
from cadence.models.invoice import Invoice
from cadence.models.plan import Plan
from cadence.models.subscription import Subscription, SubscriptionStatus
from cadence.models.subscription_history import SubscriptionEventType, SubscriptionHistory
from cadence.models.webhook import WebhookEvent
from cadence.repositories.customer_repository import CustomerRepository
from cadence.repositories.invoice_repository import InvoiceRepository
from cadence.repositories.plan_repository import PlanRepository
from cadence.repositories.subscription_repository import SubscriptionRepository
from cadence.repositories.tenant_repository import TenantRepository
from cadence.schemas.invoice import LineItemInput
from cadence.schemas.subscription import (
    CancelRequest,
    PlanChange,
    SubscriptionCreate,
    SubscriptionResponse,
)
from cadence.services.billing_cycle import next_billing_date
from cadence.services.invoice_compositor import InvoiceCompositor
from cadence.services.invoice_service import InvoiceService, default_tax_rules, invoice_payload
from cadence.services.subscription_transitions import transition
from cadence.services.webhook_dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


class RenewalAction(str, Enum):
    RENEWED = "renewed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


@dataclass
class RenewalResult:
    action: RenewalAction
    invoice: Invoice | None = None
    reason: str | None = None


def subscription_payload(subscription: Subscription) -> dict[str, Any]:
    return SubscriptionResponse.model_validate(subscription).model_dump(mode="json")


class SubscriptionLifecycle:
    """Drives subscriptions through their state machine.

    Each operation is one tenant-scoped unit of work; history rows and any
    invoice are committed together, and webhooks fire after the commit.
    """

    def __init__(
        self,
        db: Session,
        clock: Clock | None = None,
        dispatcher: WebhookDispatcher | None = None,
    ):
        self.db = db
        self.clock = clock or SystemClock()
        self.dispatcher = dispatcher or WebhookDispatcher(db, clock=self.clock)
        self.subscription_repo = SubscriptionRepository(db)
        self.customer_repo = CustomerRepository(db)
        self.plan_repo = PlanRepository(db)
        self.tenant_repo = TenantRepository(db)
        self.invoice_repo = InvoiceRepository(db)
        self.invoice_service = InvoiceService(db, clock=self.clock, dispatcher=self.dispatcher)

    def get_subscription(self, tenant_id: UUID, subscription_id: UUID) -> Subscription:
        subscription = self.subscription_repo.get_by_id(tenant_id, subscription_id)
        if not subscription:
            raise NotFoundError("Subscription", subscription_id)
        return subscription

    def get_history(self, tenant_id: UUID, subscription_id: UUID) -> list[SubscriptionHistory]:
        self.get_subscription(tenant_id, subscription_id)
        return self.subscription_repo.get_history(tenant_id, subscription_id)

    def _lock(self, tenant_id: UUID, subscription_id: UUID) -> Subscription:
        subscription = self.subscription_repo.get_for_update(tenant_id, subscription_id)
        if not subscription:
            raise NotFoundError("Subscription", subscription_id)
        return subscription

    def _apply_pricing(
        self,
        subscription: Subscription,
        plan: Plan,
        customer: Customer,
    ) -> None:
        """Snapshot the per-cycle price of ``plan`` onto ``subscription``."""
        tenant = self.tenant_repo.get_by_id(subscription.tenant_id)
        if not tenant:
            raise NotFoundError("Tenant", subscription.tenant_id)

        compositor = InvoiceCompositor(
            tenant_jurisdiction=tenant.state_code,
            customer_jurisdiction=customer.state_code,
        )
        composed = compositor.compose(
            [
                LineItemInput(
                    description=plan.name,
                    quantity=Decimal(int(subscription.quantity)),
                    unit_price_cents=int(plan.price_cents),
                )
            ],
            discount_percent=Decimal(subscription.discount_percent or 0),
            tax_rules=default_tax_rules(),
        )
        subscription.unit_amount_cents = int(plan.price_cents)
        subscription.subtotal_cents = composed.subtotal_cents
        subscription.discount_amount_cents = composed.discount_amount_cents
        subscription.tax_amount_cents = composed.tax_amount_cents
        subscription.total_amount_cents = composed.total_amount_cents
        subscription.currency = plan.currency

    def create_subscription(
        self,
        tenant_id: UUID,
        data: SubscriptionCreate,
        performed_by: str | None = None,
    ) -> Subscription:
        """Subscribe a customer to a plan.

        Starts in ``trial`` when the plan has trial days, otherwise ``active``
        with a first billing period beginning at the start date.

        Raises:
            ValidationError: quantity below 1 or discount outside 0..100.
            NotFoundError: customer or plan missing or inactive.
            ConflictError: the customer already has an open subscription to the plan.
        """
        if data.quantity < 1:
            raise ValidationError(f"Quantity must be at least 1, got {data.quantity}")
        if data.discount_percent < 0 or data.discount_percent > HUNDRED:
            raise ValidationError(
                f"Discount percent must be between 0 and 100, got {data.discount_percent}"
            )

        now = self.clock.now()
        start = ensure_utc(data.start_date) if data.start_date else now

        with tenant_transaction(self.db, tenant_id):
            customer = self.customer_repo.get_active_by_id(tenant_id, data.customer_id)
            if not customer:
                raise NotFoundError("Customer", data.customer_id)
            plan = self.plan_repo.get_active_by_id(tenant_id, data.plan_id)
            if not plan:
                raise NotFoundError("Plan", data.plan_id)
            if self.subscription_repo.has_open_subscription(tenant_id, customer.id, plan.id):
                raise ConflictError(
                    f"Customer {customer.id} already has an open subscription to plan {plan.code}"
                )

            in_trial = int(plan.trial_days or 0) > 0
            if in_trial:
                trial_ends_at = start + timedelta(days=int(plan.trial_days))
                period_end = trial_ends_at
            else:
                trial_ends_at = None
                period_end = next_billing_date(start, plan.billing_cycle, plan.billing_interval)

            status = SubscriptionStatus.TRIAL if in_trial else SubscriptionStatus.ACTIVE
            subscription = self.subscription_repo.create(
                tenant_id=tenant_id,
                customer_id=customer.id,
                plan_id=plan.id,
                status=status.value,
                quantity=data.quantity,
                discount_percent=data.discount_percent,
                billing_cycle=plan.billing_cycle,
                billing_interval=plan.billing_interval,
                started_at=start,
                trial_ends_at=trial_ends_at,
                current_period_start=start,
                current_period_end=period_end,
                next_billing_date=period_end,
                auto_renew=data.auto_renew,
                notes=data.notes,
            )
            self._apply_pricing(subscription, plan, customer)
            self.subscription_repo.add_history(
                subscription,
                (
                    SubscriptionEventType.TRIAL_STARTED
                    if in_trial
                    else SubscriptionEventType.ACTIVATED
                ).value,
                created_at=now,
                to_status=status.value,
                to_plan_id=plan.id,
                performed_by=performed_by,
            )

        logger.info(
            "Created %s subscription %s for customer %s", status.value, subscription.id, customer.id
        )
        if status == SubscriptionStatus.ACTIVE:
            self._notify(subscription, WebhookEvent.SUBSCRIPTION_ACTIVATED)
        return subscription

    def activate(
        self, tenant_id: UUID, subscription_id: UUID, performed_by: str | None = None
    ) -> Subscription:
        """End a trial early and start the first paid billing period now."""
        now = self.clock.now()
        with tenant_transaction(self.db, tenant_id):
            subscription = self._lock(tenant_id, subscription_id)
            if subscription.status != SubscriptionStatus.TRIAL.value:
                raise ConflictError(
                    f"Only trial subscriptions can be activated; {subscription_id} is "
                    f"{subscription.status}"
                )
            transition(
                self.subscription_repo,
                subscription,
                SubscriptionStatus.ACTIVE,
                SubscriptionEventType.ACTIVATED,
                at=now,
                performed_by=performed_by,
            )
            self._start_period(subscription, now)
            subscription.trial_ends_at = now

        self._notify(subscription, WebhookEvent.SUBSCRIPTION_ACTIVATED)
        return subscription

    def change_plan(
        self,
        tenant_id: UUID,
        subscription_id: UUID,
        data: PlanChange,
        performed_by: str | None = None,
    ) -> Subscription:
        """Move an active or trial subscription to another plan, re-pricing it in place.

        Raises:
            ValidationError: the new plan is the current plan.
            NotFoundError: the new plan is missing or inactive.
            ConflictError: the subscription is not active or in trial.
        """
        with tenant_transaction(self.db, tenant_id):
            subscription = self._lock(tenant_id, subscription_id)
            if subscription.status not in (
                SubscriptionStatus.ACTIVE.value,
                SubscriptionStatus.TRIAL.value,
            ):
                raise ConflictError(
                    f"Cannot change plan of subscription {subscription_id} in status "
                    f"{subscription.status}"
                )
            if subscription.plan_id == data.plan_id:
                raise ValidationError("New plan must be different from current plan")

            new_plan = self.plan_repo.get_active_by_id(tenant_id, data.plan_id)
            if not new_plan:
                raise NotFoundError("Plan", data.plan_id)
            customer = self.customer_repo.get_by_id(tenant_id, subscription.customer_id)
            if not customer:
                raise NotFoundError("Customer", subscription.customer_id)

            is_upgrade = int(new_plan.price_cents) > int(subscription.unit_amount_cents)
            event_type = (
                SubscriptionEventType.UPGRADED if is_upgrade else SubscriptionEventType.DOWNGRADED
            )
            old_plan_id = subscription.plan_id

            subscription.plan_id = new_plan.id
            subscription.billing_cycle = new_plan.billing_cycle
            subscription.billing_interval = new_plan.billing_interval
            self._apply_pricing(subscription, new_plan, customer)
            self.subscription_repo.add_history(
                subscription,
                event_type.value,
                created_at=self.clock.now(),
                from_status=subscription.status,
                to_status=subscription.status,
                from_plan_id=old_plan_id,
                to_plan_id=new_plan.id,
                performed_by=performed_by,
                change_reason=data.reason,
            )

        logger.info(
            "Subscription %s %s to plan %s", subscription_id, event_type.value, new_plan.code
        )
        self._notify(
            subscription,
            (
                WebhookEvent.SUBSCRIPTION_UPGRADED
                if is_upgrade
                else WebhookEvent.SUBSCRIPTION_DOWNGRADED
            ),
            previous_plan_id=str(old_plan_id),
        )
        return subscription

    def pause(
        self,
        tenant_id: UUID,
        subscription_id: UUID,
        reason: str | None = None,
        performed_by: str | None = None,
    ) -> Subscription:
        with tenant_transaction(self.db, tenant_id):
            subscription = self._lock(tenant_id, subscription_id)
            if subscription.status != SubscriptionStatus.ACTIVE.value:
                raise ConflictError(
                    f"Only active subscriptions can be paused; {subscription_id} is "
                    f"{subscription.status}"
                )
            transition(
                self.subscription_repo,
                subscription,
                SubscriptionStatus.PAUSED,
                SubscriptionEventType.PAUSED,
                at=self.clock.now(),
                performed_by=performed_by,
                change_reason=reason,
            )

        self._notify(subscription, WebhookEvent.SUBSCRIPTION_PAUSED)
        return subscription

    def resume(
        self, tenant_id: UUID, subscription_id: UUID, performed_by: str | None = None
    ) -> Subscription:
        """Resume a paused subscription.

        If the paused period has already ended, a fresh period starts now so
        the pause is never billed.
        """
        now = self.clock.now()
        with tenant_transaction(self.db, tenant_id):
            subscription = self._lock(tenant_id, subscription_id)
            if subscription.status != SubscriptionStatus.PAUSED.value:
                raise ConflictError(
                    f"Only paused subscriptions can be resumed; {subscription_id} is "
                    f"{subscription.status}"
                )
            transition(
                self.subscription_repo,
                subscription,
                SubscriptionStatus.ACTIVE,
                SubscriptionEventType.RESUMED,
                at=now,
                performed_by=performed_by,
            )
            period_end = subscription.current_period_end
            if period_end is None or ensure_utc(period_end) <= now:
                self._start_period(subscription, now)

        self._notify(subscription, WebhookEvent.SUBSCRIPTION_ACTIVATED)
        return subscription

    def cancel(
        self,
        tenant_id: UUID,
        subscription_id: UUID,
        data: CancelRequest | None = None,
        performed_by: str | None = None,
    ) -> Subscription:
        """Cancel now, or at the end of the current period (the default).

        A deferred cancellation only sets ``cancel_at_period_end``; the
        renewal sweep (or trial expiry) closes the subscription at the boundary.
        """
        data = data or CancelRequest()
        now = self.clock.now()
        with tenant_transaction(self.db, tenant_id):
            subscription = self._lock(tenant_id, subscription_id)
            if subscription.status not in (
                SubscriptionStatus.ACTIVE.value,
                SubscriptionStatus.PAST_DUE.value,
                SubscriptionStatus.TRIAL.value,
            ):
                raise ConflictError(
                    f"Cannot cancel subscription {subscription_id} in status {subscription.status}"
                )

            subscription.cancellation_reason = data.reason
            if data.cancel_at_period_end:
                subscription.cancel_at_period_end = True
                self.subscription_repo.add_history(
                    subscription,
                    SubscriptionEventType.CANCELLATION_SCHEDULED.value,
                    created_at=now,
                    from_status=subscription.status,
                    to_status=subscription.status,
                    performed_by=performed_by,
                    change_reason=data.reason,
                )
            else:
                self._close(subscription, now, performed_by, data.reason)

        if data.cancel_at_period_end:
            logger.info("Subscription %s will cancel at period end", subscription_id)
        else:
            self._notify(subscription, WebhookEvent.SUBSCRIPTION_CANCELLED)
        return subscription

    def renew(
        self,
        tenant_id: UUID,
        subscription_id: UUID,
        now: datetime | None = None,
    ) -> RenewalResult:
        """Bill the next period in advance and roll the subscription onto it.

        A subscription with a deferred cancellation is cancelled instead once
        its period has ended; past-due subscriptions only go this way. When
        the next period is already invoiced, the subscription is rolled onto
        it without a new invoice and the result is reported as skipped.
        """
        now = now or self.clock.now()
        with tenant_transaction(self.db, tenant_id):
            subscription = self._lock(tenant_id, subscription_id)
            closable = (
                subscription.status == SubscriptionStatus.PAST_DUE.value
                and subscription.cancel_at_period_end
            )
            if not closable and subscription.status not in (
                SubscriptionStatus.ACTIVE.value,
                SubscriptionStatus.TRIAL.value,
            ):
                raise ConflictError(
                    f"Cannot renew subscription {subscription_id} in status {subscription.status}"
                )
            if subscription.current_period_end is None:
                raise ConflictError(f"Subscription {subscription_id} has no billing period")
            period_end = ensure_utc(subscription.current_period_end)

            if subscription.cancel_at_period_end:
                if period_end > now:
                    return RenewalResult(RenewalAction.SKIPPED, reason="cancellation pending")
                self._close(subscription, now, SYSTEM_ACTOR, subscription.cancellation_reason)
                result = RenewalResult(RenewalAction.CANCELLED)
            else:
                new_start = period_end
                new_end = next_billing_date(
                    new_start, subscription.billing_cycle, subscription.billing_interval
                )
                if self.invoice_repo.exists_for_period(subscription.id, new_start):
                    logger.warning(
                        "Subscription %s already invoiced from %s; advancing without billing",
                        subscription_id,
                        new_start.isoformat(),
                    )
                    subscription.current_period_start = new_start
                    subscription.current_period_end = new_end
                    subscription.next_billing_date = new_end
                    return RenewalResult(RenewalAction.SKIPPED, reason="period already invoiced")

                invoice = self.invoice_service.stage_subscription_invoice(
                    subscription, new_start, new_end
                )
                transition(
                    self.subscription_repo,
                    subscription,
                    SubscriptionStatus.ACTIVE,
                    SubscriptionEventType.RENEWED,
                    at=now,
                    performed_by=SYSTEM_ACTOR,
                )
                subscription.current_period_start = new_start
                subscription.current_period_end = new_end
                subscription.next_billing_date = new_end
                subscription.last_billed_at = now
                result = RenewalResult(RenewalAction.RENEWED, invoice=invoice)

        if result.action == RenewalAction.CANCELLED:
            logger.info("Subscription %s cancelled at period end", subscription_id)
            self._notify(subscription, WebhookEvent.SUBSCRIPTION_CANCELLED)
        elif result.invoice is not None:
            logger.info(
                "Renewed subscription %s with invoice %s",
                subscription_id,
                result.invoice.invoice_number,
            )
            self.dispatcher.fire(
                tenant_id, WebhookEvent.INVOICE_CREATED, invoice_payload(result.invoice)
            )
        return result

    def expire_trial(
        self,
        tenant_id: UUID,
        subscription_id: UUID,
        now: datetime | None = None,
    ) -> Subscription:
        """Close a trial whose end has passed: ``expired``, or ``cancelled`` if one was requested.

        Raises:
            ConflictError: not in trial, or the trial has not ended yet.
        """
        now = now or self.clock.now()
        with tenant_transaction(self.db, tenant_id):
            subscription = self._lock(tenant_id, subscription_id)
            if subscription.status != SubscriptionStatus.TRIAL.value:
                raise ConflictError(
                    f"Subscription {subscription_id} is not in trial ({subscription.status})"
                )
            if subscription.trial_ends_at is None or ensure_utc(subscription.trial_ends_at) >= now:
                raise ConflictError(f"Trial of subscription {subscription_id} has not ended")

            if subscription.cancel_at_period_end:
                self._close(subscription, now, SYSTEM_ACTOR, subscription.cancellation_reason)
                event = WebhookEvent.SUBSCRIPTION_CANCELLED
            else:
                transition(
                    self.subscription_repo,
                    subscription,
                    SubscriptionStatus.EXPIRED,
                    SubscriptionEventType.EXPIRED,
                    at=now,
                    performed_by=SYSTEM_ACTOR,
                    change_reason="Trial ended",
                )
                subscription.next_billing_date = None
                event = WebhookEvent.SUBSCRIPTION_EXPIRED

        logger.info("Trial of subscription %s ended (%s)", subscription_id, subscription.status)
        self._notify(subscription, event)
        return subscription

    def mark_past_due(
        self, tenant_id: UUID, subscription_id: UUID, reason: str | None = None
    ) -> Subscription:
        with tenant_transaction(self.db, tenant_id):
            subscription = self._lock(tenant_id, subscription_id)
            transition(
                self.subscription_repo,
                subscription,
                SubscriptionStatus.PAST_DUE,
                SubscriptionEventType.PAST_DUE,
                at=self.clock.now(),
                performed_by=SYSTEM_ACTOR,
                change_reason=reason,
            )
        return subscription

    def recover(
        self, tenant_id: UUID, subscription_id: UUID, reason: str | None = None
    ) -> Subscription:
        """Restore a past-due subscription to active."""
        with tenant_transaction(self.db, tenant_id):
            subscription = self._lock(tenant_id, subscription_id)
            if subscription.status != SubscriptionStatus.PAST_DUE.value:
                raise ConflictError(
                    f"Subscription {subscription_id} is not past due ({subscription.status})"
                )
            transition(
                self.subscription_repo,
                subscription,
                SubscriptionStatus.ACTIVE,
                SubscriptionEventType.RECOVERED,
                at=self.clock.now(),
                performed_by=SYSTEM_ACTOR,
                change_reason=reason,
            )
        return subscription

    def _start_period(self, subscription: Subscription, start: datetime) -> None:
        end = next_billing_date(start, subscription.billing_cycle, subscription.billing_interval)
        subscription.current_period_start = start
        subscription.current_period_end = end
        subscription.next_billing_date = end

    def _close(
        self,
        subscription: Subscription,
        now: datetime,
        performed_by: str | None,
        reason: str | None,
    ) -> None:
        transition(
            self.subscription_repo,
            subscription,
            SubscriptionStatus.CANCELLED,
            SubscriptionEventType.CANCELLED,
            at=now,
            performed_by=performed_by,
            change_reason=reason,
        )
        subscription.cancelled_at = now
        subscription.auto_renew = False
        subscription.next_billing_date = None

    def _notify(self, subscription: Subscription, event: WebhookEvent, **extra: Any) -> None:
        data = subscription_payload(subscription)
        data.update(extra)
        self.dispatcher.fire(subscription.tenant_id, event, data)
