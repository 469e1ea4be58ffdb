"""Prices line items, discount and tax rules into a draft invoice."""

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from cadence.core.errors import ValidationError
from cadence.core.money import HUNDRED, percent_of, round_cents
from cadence.schemas.invoice import BillingPeriod, LineItemInput, TaxRule
from cadence.services.tax_engine import TaxBreakdownEntry, split_tax


@dataclass(frozen=True)
class ComposedLineItem:
    description: str
    item_type: str
    quantity: Decimal
    unit: str | None
    unit_price_cents: int
    discount_percent: Decimal
    discount_amount_cents: int
    amount_cents: int
    period_start: datetime | None
    period_end: datetime | None
    sort_order: int


@dataclass
class ComposedInvoice:
    """A fully priced invoice that has not been persisted yet."""

    subtotal_cents: int
    discount_percent: Decimal
    discount_amount_cents: int
    taxable_amount_cents: int
    tax_amount_cents: int
    total_amount_cents: int
    period_start: datetime | None = None
    period_end: datetime | None = None
    items: list[ComposedLineItem] = field(default_factory=list)
    taxes: list[TaxBreakdownEntry] = field(default_factory=list)


def _check_percent(value: Decimal, label: str) -> None:
    if value < 0 or value > HUNDRED:
        raise ValidationError(f"{label} must be between 0 and 100, got {value}")


def price_line_item(item: LineItemInput, sort_order: int = 0) -> ComposedLineItem:
    """Price one line: ``quantity * unit_price * (1 - discount%)``."""
    if not item.description.strip():
        raise ValidationError("Line item description is required")
    if item.quantity <= 0:
        raise ValidationError(f"Line item quantity must be positive, got {item.quantity}")
    if item.unit_price_cents < 0:
        raise ValidationError("Line item unit price cannot be negative")
    _check_percent(item.discount_percent, "Line item discount percent")

    gross = item.quantity * Decimal(item.unit_price_cents)
    net = round_cents(gross * (HUNDRED - item.discount_percent) / HUNDRED)
    return ComposedLineItem(
        description=item.description,
        item_type=item.item_type,
        quantity=item.quantity,
        unit=item.unit,
        unit_price_cents=item.unit_price_cents,
        discount_percent=item.discount_percent,
        discount_amount_cents=round_cents(gross) - net,
        amount_cents=net,
        period_start=item.period_start,
        period_end=item.period_end,
        sort_order=sort_order,
    )


class InvoiceCompositor:
    """Composes a priced invoice from line items, a discount and tax rules.

    Everything is computed in integer minor units and rounded half-up at each
    monetary step, so ``taxable = subtotal - discount`` and
    ``total = taxable + tax`` hold exactly.
    """

    def __init__(
        self,
        tenant_jurisdiction: str | None = None,
        customer_jurisdiction: str | None = None,
    ):
        self.tenant_jurisdiction = tenant_jurisdiction
        self.customer_jurisdiction = customer_jurisdiction

    def compose(
        self,
        items: Sequence[LineItemInput],
        discount_percent: Decimal = Decimal("0"),
        tax_rules: Sequence[TaxRule] = (),
        period: BillingPeriod | None = None,
    ) -> ComposedInvoice:
        """Price ``items`` and apply the invoice-level discount and taxes.

        Raises:
            ValidationError: no items, a malformed item, a discount outside
                0..100, a negative tax rate, or a period ending before it starts.
        """
        if not items:
            raise ValidationError("An invoice needs at least one line item")
        discount_percent = Decimal(discount_percent)
        _check_percent(discount_percent, "Discount percent")

        period = period or BillingPeriod()
        if period.start and period.end and period.end < period.start:
            raise ValidationError("Billing period end is before its start")

        priced = [price_line_item(item, index) for index, item in enumerate(items)]
        subtotal = sum(line.amount_cents for line in priced)
        discount_amount = percent_of(subtotal, discount_percent)
        taxable = subtotal - discount_amount

        taxes: list[TaxBreakdownEntry] = []
        tax_amount = 0
        for rule in tax_rules:
            breakdown = split_tax(
                taxable,
                rule.rate,
                self.tenant_jurisdiction,
                self.customer_jurisdiction,
                name=rule.name,
                tax_type=rule.tax_type,
            )
            taxes.extend(breakdown.entries)
            tax_amount += breakdown.total_tax_cents

        return ComposedInvoice(
            subtotal_cents=subtotal,
            discount_percent=discount_percent,
            discount_amount_cents=discount_amount,
            taxable_amount_cents=taxable,
            tax_amount_cents=tax_amount,
            total_amount_cents=taxable + tax_amount,
            period_start=period.start,
            period_end=period.end,
            items=priced,
            taxes=taxes,
        )
