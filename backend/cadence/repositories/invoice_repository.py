"""Invoice repository for data access.

Write methods only flush; the calling service owns the transaction.
"""

from datetime import date, datetime
from uuid import UUID

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from cadence.models.invoice import Invoice, InvoiceStatus
from cadence.models.invoice_item import InvoiceItem
from cadence.models.invoice_tax import InvoiceTax
from cadence.services.invoice_compositor import ComposedInvoice


class InvoiceRepository:
    def __init__(self, db: Session):
        self.db = db

    def next_invoice_number(self, tenant_id: UUID, prefix: str, start: int) -> str:
        """Generate the next ``PREFIX-NNNNNN`` number for a tenant."""
        result = (
            self.db.query(Invoice.invoice_number)
            .filter(
                Invoice.tenant_id == tenant_id,
                Invoice.invoice_number.like(f"{prefix}-%"),
            )
            .order_by(func.length(Invoice.invoice_number).desc(), Invoice.invoice_number.desc())
            .first()
        )

        new_num = start
        if result:
            try:
                new_num = int(result[0].split("-")[-1]) + 1
            except (ValueError, IndexError):
                new_num = start

        return f"{prefix}-{new_num:06d}"

    def get_by_id(self, tenant_id: UUID, invoice_id: UUID) -> Invoice | None:
        return (
            self.db.query(Invoice)
            .filter(Invoice.id == invoice_id, Invoice.tenant_id == tenant_id)
            .first()
        )

    def get_all(
        self,
        tenant_id: UUID,
        subscription_id: UUID | None = None,
        customer_id: UUID | None = None,
        status: InvoiceStatus | None = None,
    ) -> list[Invoice]:
        query = self.db.query(Invoice).filter(Invoice.tenant_id == tenant_id)
        if subscription_id:
            query = query.filter(Invoice.subscription_id == subscription_id)
        if customer_id:
            query = query.filter(Invoice.customer_id == customer_id)
        if status:
            query = query.filter(Invoice.status == status.value)
        return query.order_by(Invoice.invoice_number.asc()).all()

    def exists_for_period(self, subscription_id: UUID, period_start: datetime) -> bool:
        """Check the (subscription, period start) idempotency key, ignoring void invoices."""
        query = self.db.query(Invoice.id).filter(
            Invoice.subscription_id == subscription_id,
            Invoice.billing_period_start == period_start,
            Invoice.status != InvoiceStatus.VOID.value,
        )
        return query.first() is not None

    def has_overdue_for_subscription(self, subscription_id: UUID, today: date) -> bool:
        """Whether an invoice of the subscription is overdue or partly paid past its due date."""
        query = self.db.query(Invoice.id).filter(
            Invoice.subscription_id == subscription_id,
            or_(
                Invoice.status == InvoiceStatus.OVERDUE.value,
                and_(
                    Invoice.status == InvoiceStatus.PARTIALLY_PAID.value,
                    Invoice.due_date.isnot(None),
                    Invoice.due_date < today,
                ),
            ),
        )
        return query.first() is not None

    def list_overdue_candidates(self, today: date) -> list[tuple[UUID, UUID]]:
        """Return ``(tenant_id, invoice_id)`` of sent invoices past their due date."""
        rows = (
            self.db.query(Invoice.tenant_id, Invoice.id)
            .filter(
                Invoice.status == InvoiceStatus.SENT.value,
                Invoice.due_date.isnot(None),
                Invoice.due_date < today,
            )
            .order_by(Invoice.due_date.asc())
            .all()
        )
        return [(row.tenant_id, row.id) for row in rows]

    def add_composed(
        self,
        tenant_id: UUID,
        customer_id: UUID,
        composed: ComposedInvoice,
        invoice_number: str,
        issue_date: date,
        due_date: date | None,
        currency: str,
        subscription_id: UUID | None = None,
        notes: str | None = None,
    ) -> Invoice:
        """Stage an invoice with its line items and tax rows in the session."""
        invoice = Invoice(
            tenant_id=tenant_id,
            customer_id=customer_id,
            subscription_id=subscription_id,
            invoice_number=invoice_number,
            status=InvoiceStatus.DRAFT.value,
            issue_date=issue_date,
            due_date=due_date,
            billing_period_start=composed.period_start,
            billing_period_end=composed.period_end,
            currency=currency,
            subtotal_cents=composed.subtotal_cents,
            discount_percent=composed.discount_percent,
            discount_amount_cents=composed.discount_amount_cents,
            taxable_amount_cents=composed.taxable_amount_cents,
            tax_amount_cents=composed.tax_amount_cents,
            total_amount_cents=composed.total_amount_cents,
            notes=notes,
        )
        invoice.apply_amount_paid(0)

        for line in composed.items:
            invoice.items.append(
                InvoiceItem(
                    tenant_id=tenant_id,
                    item_type=line.item_type,
                    description=line.description,
                    quantity=line.quantity,
                    unit=line.unit,
                    unit_price_cents=line.unit_price_cents,
                    discount_percent=line.discount_percent,
                    discount_amount_cents=line.discount_amount_cents,
                    amount_cents=line.amount_cents,
                    period_start=line.period_start,
                    period_end=line.period_end,
                    sort_order=line.sort_order,
                )
            )

        for entry in composed.taxes:
            invoice.taxes.append(
                InvoiceTax(
                    tenant_id=tenant_id,
                    tax_name=entry.name,
                    tax_type=entry.tax_type.value,
                    tax_rate=entry.rate,
                    taxable_amount_cents=entry.taxable_amount_cents,
                    tax_amount_cents=entry.tax_amount_cents,
                )
            )

        self.db.add(invoice)
        self.db.flush()
        return invoice
