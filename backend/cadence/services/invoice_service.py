"""Invoice persistence and status changes."""

import logging
from collections.abc import Sequence
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from cadence.core.clock import Clock, SystemClock, ensure_utc
from cadence.core.config import settings
from cadence.core.database import tenant_transaction
from cadence.core.errors import ConflictError, NotFoundError
from cadence.models.customer import Customer
from cadence.models.invoice import Invoice, InvoiceStatus
from cadence.models.subscription import Subscription, SubscriptionStatus
from cadence.models.subscription_history import SubscriptionEventType
from cadence.models.webhook import WebhookEvent
from cadence.repositories.customer_repository import CustomerRepository
from cadence.repositories.invoice_repository import InvoiceRepository
from cadence.repositories.plan_repository import PlanRepository
from cadence.repositories.subscription_repository import SubscriptionRepository
from cadence.repositories.tenant_repository import TenantRepository
from cadence.schemas.invoice import BillingPeriod, InvoiceResponse, LineItemInput, TaxRule
from cadence.services.invoice_compositor import InvoiceCompositor
from cadence.services.subscription_transitions import transition
from cadence.services.webhook_dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)


def default_tax_rules() -> list[TaxRule]:
    """Tax applied to subscription billing: the configured GST rate for every customer."""
    return [TaxRule(rate=settings.DEFAULT_TAX_RATE, name=settings.DEFAULT_TAX_NAME)]


def invoice_payload(invoice: Invoice) -> dict[str, Any]:
    return InvoiceResponse.model_validate(invoice).model_dump(mode="json")


class InvoiceService:
    """Creates invoices atomically and moves them through their statuses.

    Webhooks are fired only after the unit of work has committed.
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
        self.invoice_repo = InvoiceRepository(db)
        self.customer_repo = CustomerRepository(db)
        self.tenant_repo = TenantRepository(db)
        self.plan_repo = PlanRepository(db)
        self.subscription_repo = SubscriptionRepository(db)

    def get_invoice(self, tenant_id: UUID, invoice_id: UUID) -> Invoice:
        invoice = self.invoice_repo.get_by_id(tenant_id, invoice_id)
        if not invoice:
            raise NotFoundError("Invoice", invoice_id)
        return invoice

    def list_invoices(
        self,
        tenant_id: UUID,
        subscription_id: UUID | None = None,
        customer_id: UUID | None = None,
        status: InvoiceStatus | None = None,
    ) -> list[Invoice]:
        return self.invoice_repo.get_all(
            tenant_id, subscription_id=subscription_id, customer_id=customer_id, status=status
        )

    def create_invoice(
        self,
        tenant_id: UUID,
        customer_id: UUID,
        items: Sequence[LineItemInput],
        discount_percent: Decimal = Decimal("0"),
        tax_rules: Sequence[TaxRule] = (),
        period: BillingPeriod | None = None,
        subscription_id: UUID | None = None,
        issue_date: date | None = None,
        notes: str | None = None,
    ) -> Invoice:
        """Compose and persist a draft invoice with its items and tax rows.

        Raises:
            NotFoundError: unknown customer or subscription.
            ConflictError: a non-void invoice already covers this subscription period.
            ValidationError: the items, discount or period are malformed.
        """
        with tenant_transaction(self.db, tenant_id):
            customer = self.customer_repo.get_by_id(tenant_id, customer_id)
            if not customer:
                raise NotFoundError("Customer", customer_id)
            if subscription_id is not None:
                subscription = self.subscription_repo.get_by_id(tenant_id, subscription_id)
                if not subscription or subscription.customer_id != customer.id:
                    raise NotFoundError("Subscription", subscription_id)

            invoice = self.stage_invoice(
                tenant_id,
                customer,
                items,
                discount_percent=discount_percent,
                tax_rules=tax_rules,
                period=period,
                subscription_id=subscription_id,
                issue_date=issue_date,
                notes=notes,
            )

        self.dispatcher.fire(tenant_id, WebhookEvent.INVOICE_CREATED, invoice_payload(invoice))
        return invoice

    def stage_invoice(
        self,
        tenant_id: UUID,
        customer: Customer,
        items: Sequence[LineItemInput],
        discount_percent: Decimal = Decimal("0"),
        tax_rules: Sequence[TaxRule] = (),
        period: BillingPeriod | None = None,
        subscription_id: UUID | None = None,
        issue_date: date | None = None,
        notes: str | None = None,
    ) -> Invoice:
        """Add an invoice to the current unit of work without committing it."""
        period = period or BillingPeriod()
        if (
            subscription_id is not None
            and period.start is not None
            and self.invoice_repo.exists_for_period(subscription_id, period.start)
        ):
            raise ConflictError(
                f"Subscription {subscription_id} already has an invoice for the period "
                f"starting {period.start.isoformat()}"
            )

        tenant = self.tenant_repo.get_by_id(tenant_id)
        if not tenant:
            raise NotFoundError("Tenant", tenant_id)

        compositor = InvoiceCompositor(
            tenant_jurisdiction=tenant.state_code,
            customer_jurisdiction=customer.state_code,
        )
        composed = compositor.compose(items, discount_percent, tax_rules, period)

        issue_date = issue_date or self.clock.today()
        terms = customer.payment_terms
        if terms is None:
            terms = tenant.net_payment_term
        if terms is None:
            terms = settings.DEFAULT_PAYMENT_TERMS_DAYS

        invoice_number = self.invoice_repo.next_invoice_number(
            tenant_id,
            tenant.invoice_prefix or settings.INVOICE_PREFIX,
            settings.INVOICE_NUMBER_START,
        )
        invoice = self.invoice_repo.add_composed(
            tenant_id=tenant_id,
            customer_id=customer.id,
            composed=composed,
            invoice_number=invoice_number,
            issue_date=issue_date,
            due_date=issue_date + timedelta(days=int(terms)),
            currency=customer.currency or tenant.default_currency,
            subscription_id=subscription_id,
            notes=notes,
        )
        logger.info(
            "Created invoice %s for customer %s (total %d)",
            invoice_number,
            customer.id,
            composed.total_amount_cents,
        )
        return invoice

    def stage_subscription_invoice(
        self,
        subscription: Subscription,
        period_start: datetime,
        period_end: datetime,
    ) -> Invoice:
        """Stage the invoice billing ``subscription`` for one period at its price snapshot."""
        customer = self.customer_repo.get_by_id(subscription.tenant_id, subscription.customer_id)
        if not customer:
            raise NotFoundError("Customer", subscription.customer_id)
        plan = self.plan_repo.get_by_id(subscription.tenant_id, subscription.plan_id)
        if not plan:
            raise NotFoundError("Plan", subscription.plan_id)

        period_start = ensure_utc(period_start)
        period_end = ensure_utc(period_end)
        item = LineItemInput(
            description=f"{plan.name} ({period_start:%d %b %Y} - {period_end:%d %b %Y})",
            quantity=Decimal(int(subscription.quantity)),
            unit_price_cents=int(subscription.unit_amount_cents),
            item_type="subscription",
            unit="seat",
            period_start=period_start,
            period_end=period_end,
        )
        return self.stage_invoice(
            subscription.tenant_id,
            customer,
            [item],
            discount_percent=Decimal(subscription.discount_percent or 0),
            tax_rules=default_tax_rules(),
            period=BillingPeriod(start=period_start, end=period_end),
            subscription_id=subscription.id,
        )

    def generate_from_subscription(self, tenant_id: UUID, subscription_id: UUID) -> Invoice:
        """Bill a subscription's current period.

        Raises:
            NotFoundError: unknown subscription.
            ConflictError: the subscription is not billable, or the period is
                already invoiced.
        """
        with tenant_transaction(self.db, tenant_id):
            subscription = self.subscription_repo.get_for_update(tenant_id, subscription_id)
            if not subscription:
                raise NotFoundError("Subscription", subscription_id)
            if subscription.status not in (
                SubscriptionStatus.ACTIVE.value,
                SubscriptionStatus.PAST_DUE.value,
            ):
                raise ConflictError(
                    f"Cannot bill subscription {subscription_id} in status {subscription.status}"
                )
            if subscription.current_period_start is None or subscription.current_period_end is None:
                raise ConflictError(f"Subscription {subscription_id} has no billing period")

            invoice = self.stage_subscription_invoice(
                subscription,
                subscription.current_period_start,
                subscription.current_period_end,
            )
            subscription.last_billed_at = self.clock.now()

        self.dispatcher.fire(tenant_id, WebhookEvent.INVOICE_CREATED, invoice_payload(invoice))
        return invoice

    def send(self, tenant_id: UUID, invoice_id: UUID) -> Invoice:
        """Issue a draft invoice to the customer."""
        with tenant_transaction(self.db, tenant_id):
            invoice = self.get_invoice(tenant_id, invoice_id)
            if invoice.status != InvoiceStatus.DRAFT.value:
                raise ConflictError(
                    f"Only draft invoices can be sent; {invoice_id} is {invoice.status}"
                )
            invoice.status = InvoiceStatus.SENT.value
            invoice.sent_at = self.clock.now()

        self.dispatcher.fire(tenant_id, WebhookEvent.INVOICE_SENT, invoice_payload(invoice))
        return invoice

    def void(self, tenant_id: UUID, invoice_id: UUID, reason: str | None = None) -> Invoice:
        with tenant_transaction(self.db, tenant_id):
            invoice = self.get_invoice(tenant_id, invoice_id)
            if invoice.status in (InvoiceStatus.PAID.value, InvoiceStatus.VOID.value):
                raise ConflictError(f"Cannot void invoice {invoice_id} in status {invoice.status}")
            invoice.status = InvoiceStatus.VOID.value
            invoice.voided_at = self.clock.now()
            if reason:
                invoice.notes = f"{invoice.notes}\n{reason}" if invoice.notes else reason

        logger.info("Voided invoice %s", invoice.invoice_number)
        self.dispatcher.fire(tenant_id, WebhookEvent.INVOICE_VOIDED, invoice_payload(invoice))
        return invoice

    def mark_overdue(self, tenant_id: UUID, invoice_id: UUID) -> Invoice:
        """Flag a sent invoice past its due date as overdue.

        An active subscription billed by the invoice moves to ``past_due`` in
        the same transaction.
        """
        with tenant_transaction(self.db, tenant_id):
            invoice = self.get_invoice(tenant_id, invoice_id)
            if invoice.status != InvoiceStatus.SENT.value:
                raise ConflictError(
                    f"Only sent invoices can become overdue; {invoice_id} is {invoice.status}"
                )
            invoice.status = InvoiceStatus.OVERDUE.value

            if invoice.subscription_id is not None:
                subscription = self.subscription_repo.get_for_update(
                    tenant_id, invoice.subscription_id
                )
                if subscription and subscription.status == SubscriptionStatus.ACTIVE.value:
                    transition(
                        self.subscription_repo,
                        subscription,
                        SubscriptionStatus.PAST_DUE,
                        SubscriptionEventType.PAST_DUE,
                        at=self.clock.now(),
                        performed_by="system",
                        change_reason=f"Invoice {invoice.invoice_number} overdue",
                    )

        logger.info("Invoice %s is overdue", invoice.invoice_number)
        self.dispatcher.fire(tenant_id, WebhookEvent.INVOICE_OVERDUE, invoice_payload(invoice))
        return invoice
