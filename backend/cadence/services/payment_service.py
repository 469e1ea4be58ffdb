"""Applies payments and refunds to invoices."""

import logging
from uuid import UUID

from sqlalchemy.orm import Session

from cadence.core.clock import Clock, SystemClock
from cadence.core.config import settings
from cadence.core.database import tenant_transaction
from cadence.core.errors import BusinessRuleError, NotFoundError, ValidationError
from cadence.models.invoice import PAYABLE_STATUSES, Invoice, InvoiceStatus
from cadence.models.payment import Payment, PaymentStatus
from cadence.models.subscription import SubscriptionStatus
from cadence.models.subscription_history import SubscriptionEventType
from cadence.models.webhook import WebhookEvent
from cadence.repositories.invoice_repository import InvoiceRepository
from cadence.repositories.payment_repository import PaymentRepository
from cadence.repositories.subscription_repository import SubscriptionRepository
from cadence.schemas.payment import PaymentCreate, PaymentResponse, RefundCreate
from cadence.services.invoice_service import invoice_payload
from cadence.services.subscription_transitions import transition
from cadence.services.webhook_dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)


class PaymentService:
    """Service for recording payments and refunds against invoices."""

    def __init__(
        self,
        db: Session,
        clock: Clock | None = None,
        dispatcher: WebhookDispatcher | None = None,
    ):
        self.db = db
        self.clock = clock or SystemClock()
        self.dispatcher = dispatcher or WebhookDispatcher(db, clock=self.clock)
        self.payment_repo = PaymentRepository(db)
        self.invoice_repo = InvoiceRepository(db)
        self.subscription_repo = SubscriptionRepository(db)

    def record_payment(
        self,
        tenant_id: UUID,
        data: PaymentCreate,
        performed_by: str | None = None,
    ) -> Payment:
        """Apply a payment to an open invoice.

        Settling the last overdue invoice of a past-due subscription, in one
        payment or several, restores it to active in the same transaction.

        Raises:
            ValidationError: amount is not positive.
            NotFoundError: the invoice does not exist or is not payable.
            BusinessRuleError: amount exceeds what is due.
        """
        if data.amount_cents <= 0:
            raise ValidationError("Payment amount must be positive")

        with tenant_transaction(self.db, tenant_id):
            invoice = self.invoice_repo.get_by_id(tenant_id, data.invoice_id)
            if not invoice or invoice.status not in PAYABLE_STATUSES:
                raise NotFoundError("Payable invoice", data.invoice_id)
            if data.amount_cents > int(invoice.amount_due_cents):
                raise BusinessRuleError(
                    f"Payment of {data.amount_cents} exceeds amount due "
                    f"{invoice.amount_due_cents} on invoice {invoice.invoice_number}"
                )

            payment = self.payment_repo.create(
                tenant_id=tenant_id,
                customer_id=invoice.customer_id,
                invoice_id=invoice.id,
                payment_number=self.payment_repo.next_payment_number(
                    tenant_id, settings.PAYMENT_PREFIX, settings.INVOICE_NUMBER_START
                ),
                method=data.method.value,
                status=PaymentStatus.COMPLETED.value,
                amount_cents=data.amount_cents,
                currency=invoice.currency,
                reference_number=data.reference_number,
                payment_date=data.payment_date or self.clock.today(),
            )

            invoice.apply_amount_paid(int(invoice.amount_paid_cents) + data.amount_cents)
            fully_paid = invoice.amount_due_cents == 0
            if fully_paid:
                invoice.status = InvoiceStatus.PAID.value
                invoice.paid_at = self.clock.now()
            else:
                invoice.status = InvoiceStatus.PARTIALLY_PAID.value
            self.db.flush()

            if fully_paid:
                self._recover_subscription(invoice, performed_by)

        logger.info(
            "Recorded payment %s of %d on invoice %s",
            payment.payment_number,
            data.amount_cents,
            invoice.invoice_number,
        )
        self.dispatcher.fire(
            tenant_id,
            WebhookEvent.PAYMENT_COMPLETED,
            PaymentResponse.model_validate(payment).model_dump(mode="json"),
        )
        if fully_paid:
            self.dispatcher.fire(tenant_id, WebhookEvent.INVOICE_PAID, invoice_payload(invoice))
        return payment

    def refund_payment(
        self,
        tenant_id: UUID,
        payment_id: UUID,
        data: RefundCreate,
    ) -> Payment:
        """Refund all or part of a payment and reopen its invoice.

        Raises:
            ValidationError: amount is not positive.
            NotFoundError: unknown payment.
            BusinessRuleError: amount exceeds what remains refundable.
        """
        if data.amount_cents <= 0:
            raise ValidationError("Refund amount must be positive")

        with tenant_transaction(self.db, tenant_id):
            payment = self.payment_repo.get_by_id(tenant_id, payment_id)
            if not payment:
                raise NotFoundError("Payment", payment_id)

            refundable = int(payment.amount_cents) - int(payment.refunded_cents)
            if data.amount_cents > refundable:
                raise BusinessRuleError(
                    f"Refund of {data.amount_cents} exceeds refundable amount {refundable}"
                )

            payment.refunded_cents = int(payment.refunded_cents) + data.amount_cents
            payment.refund_reason = data.reason
            payment.status = (
                PaymentStatus.REFUNDED.value
                if payment.refunded_cents == payment.amount_cents
                else PaymentStatus.PARTIALLY_REFUNDED.value
            )

            if payment.invoice_id is not None:
                invoice = self.invoice_repo.get_by_id(tenant_id, payment.invoice_id)
                if invoice and invoice.status != InvoiceStatus.VOID.value:
                    self._reopen_invoice(invoice, data.amount_cents)

        logger.info("Refunded %d of payment %s", data.amount_cents, payment.payment_number)
        self.dispatcher.fire(
            tenant_id,
            WebhookEvent.PAYMENT_REFUNDED,
            PaymentResponse.model_validate(payment).model_dump(mode="json"),
        )
        return payment

    def _reopen_invoice(self, invoice: Invoice, refunded_cents: int) -> None:
        """Put a refunded invoice back in the open status matching what is still paid.

        An active subscription billed by an invoice that reopens past its due
        date becomes past due, as it would through the overdue sweep.
        """
        invoice.apply_amount_paid(max(int(invoice.amount_paid_cents) - refunded_cents, 0))
        past_due = invoice.due_date is not None and invoice.due_date < self.clock.today()
        if invoice.amount_paid_cents > 0:
            invoice.status = InvoiceStatus.PARTIALLY_PAID.value
        elif past_due:
            invoice.status = InvoiceStatus.OVERDUE.value
        else:
            invoice.status = InvoiceStatus.SENT.value
        invoice.paid_at = None

        if past_due and invoice.subscription_id is not None:
            subscription = self.subscription_repo.get_for_update(
                invoice.tenant_id, invoice.subscription_id
            )
            if subscription and subscription.status == SubscriptionStatus.ACTIVE.value:
                transition(
                    self.subscription_repo,
                    subscription,
                    SubscriptionStatus.PAST_DUE,
                    SubscriptionEventType.PAST_DUE,
                    at=self.clock.now(),
                    performed_by="system",
                    change_reason=f"Invoice {invoice.invoice_number} reopened by refund",
                )

    def _recover_subscription(self, invoice: Invoice, performed_by: str | None) -> None:
        if invoice.subscription_id is None:
            return
        subscription = self.subscription_repo.get_for_update(
            invoice.tenant_id, invoice.subscription_id
        )
        if not subscription or subscription.status != SubscriptionStatus.PAST_DUE.value:
            return
        if self.invoice_repo.has_overdue_for_subscription(subscription.id, self.clock.today()):
            return
        transition(
            self.subscription_repo,
            subscription,
            SubscriptionStatus.ACTIVE,
            SubscriptionEventType.RECOVERED,
            at=self.clock.now(),
            performed_by=performed_by or "system",
            change_reason=f"Invoice {invoice.invoice_number} paid",
        )
        logger.info("Subscription %s recovered from past due", subscription.id)
