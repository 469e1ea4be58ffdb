"""Tests for InvoiceCompositor pricing."""

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from cadence.core.errors import ValidationError
from cadence.models.invoice_tax import TaxType
from cadence.schemas.invoice import BillingPeriod, LineItemInput, TaxRule
from cadence.services.invoice_compositor import InvoiceCompositor, price_line_item

GST = [TaxRule(rate=Decimal("18"))]


def _item(**overrides) -> LineItemInput:
    fields = {"description": "Pro plan", "unit_price_cents": 49900}
    fields.update(overrides)
    return LineItemInput(**fields)


class TestPriceLineItem:
    def test_plain_item(self):
        line = price_line_item(_item(), sort_order=2)
        assert line.amount_cents == 49900
        assert line.discount_amount_cents == 0
        assert line.sort_order == 2

    def test_item_discount(self):
        line = price_line_item(
            _item(quantity=Decimal("3"), unit_price_cents=333, discount_percent=Decimal("10"))
        )
        # 999 gross, 899.1 net
        assert line.amount_cents == 899
        assert line.discount_amount_cents == 100

    def test_fractional_quantity_rounds_half_up(self):
        line = price_line_item(_item(quantity=Decimal("1.5"), unit_price_cents=999))
        assert line.amount_cents == 1499

    @pytest.mark.parametrize(
        "overrides",
        [
            {"quantity": Decimal("0")},
            {"quantity": Decimal("-1")},
            {"unit_price_cents": -1},
            {"discount_percent": Decimal("101")},
            {"discount_percent": Decimal("-1")},
            {"description": "   "},
        ],
    )
    def test_invalid_items(self, overrides):
        with pytest.raises(ValidationError):
            price_line_item(_item(**overrides))


class TestCompose:
    def test_intra_state_invoice(self):
        composed = InvoiceCompositor("KA", "KA").compose([_item()], tax_rules=GST)

        assert composed.subtotal_cents == 49900
        assert composed.discount_amount_cents == 0
        assert composed.taxable_amount_cents == 49900
        assert composed.tax_amount_cents == 8982
        assert composed.total_amount_cents == 58882
        assert [t.tax_type for t in composed.taxes] == [TaxType.CGST, TaxType.SGST]
        assert [t.tax_amount_cents for t in composed.taxes] == [4491, 4491]

    def test_inter_state_invoice_has_same_total(self):
        composed = InvoiceCompositor("KA", "MH").compose([_item()], tax_rules=GST)

        assert composed.total_amount_cents == 58882
        assert [t.tax_type for t in composed.taxes] == [TaxType.IGST]
        assert composed.taxes[0].tax_amount_cents == 8982

    def test_invoice_discount_applies_before_tax(self):
        composed = InvoiceCompositor("KA", "MH").compose(
            [_item()], discount_percent=Decimal("10"), tax_rules=GST
        )

        assert composed.discount_amount_cents == 4990
        assert composed.taxable_amount_cents == 44910
        assert composed.tax_amount_cents == 8084
        assert composed.total_amount_cents == 52994

    def test_multiple_items_and_tax_rules(self):
        composed = InvoiceCompositor("KA", "KA").compose(
            [_item(), _item(description="Setup fee", unit_price_cents=10000)],
            tax_rules=GST + [TaxRule(rate=Decimal("1"), name="Cess", tax_type=TaxType.OTHER)],
        )

        assert composed.subtotal_cents == 59900
        # 10782 GST + 599 cess
        assert composed.tax_amount_cents == 11381
        assert composed.total_amount_cents == 71281
        assert [t.name for t in composed.taxes] == ["CGST", "SGST", "Cess"]
        assert [i.sort_order for i in composed.items] == [0, 1]

    def test_no_tax_rules(self):
        composed = InvoiceCompositor().compose([_item()])
        assert composed.tax_amount_cents == 0
        assert composed.total_amount_cents == 49900
        assert composed.taxes == []

    def test_period_is_carried(self):
        period = BillingPeriod(
            start=datetime(2026, 3, 15, tzinfo=UTC), end=datetime(2026, 4, 15, tzinfo=UTC)
        )
        composed = InvoiceCompositor().compose([_item()], period=period)
        assert composed.period_start == period.start
        assert composed.period_end == period.end

    def test_empty_items(self):
        with pytest.raises(ValidationError):
            InvoiceCompositor().compose([])

    @pytest.mark.parametrize("discount", [Decimal("-0.01"), Decimal("100.01")])
    def test_discount_out_of_range(self, discount):
        with pytest.raises(ValidationError):
            InvoiceCompositor().compose([_item()], discount_percent=discount)

    def test_full_discount(self):
        composed = InvoiceCompositor().compose(
            [_item()], discount_percent=Decimal("100"), tax_rules=GST
        )
        assert composed.taxable_amount_cents == 0
        assert composed.total_amount_cents == 0

    def test_period_end_before_start(self):
        period = BillingPeriod(
            start=datetime(2026, 4, 15, tzinfo=UTC), end=datetime(2026, 3, 15, tzinfo=UTC)
        )
        with pytest.raises(ValidationError):
            InvoiceCompositor().compose([_item()], period=period)
