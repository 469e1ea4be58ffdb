"""Tests for GST tax splitting."""

import logging
from decimal import Decimal

import pytest

from cadence.core.errors import ValidationError
from cadence.models.invoice_tax import TaxType
from cadence.services.tax_engine import split_tax


class TestIntraState:
    def test_same_state_splits_cgst_sgst(self, gst_rate):
        breakdown = split_tax(49900, gst_rate, "KA", "KA")

        assert breakdown.total_tax_cents == 8982
        assert breakdown.is_intra_state
        cgst = breakdown.by_type(TaxType.CGST)
        sgst = breakdown.by_type(TaxType.SGST)
        assert cgst.tax_amount_cents == 4491
        assert sgst.tax_amount_cents == 4491
        assert cgst.rate == Decimal("9")
        assert sgst.rate == Decimal("9")
        assert cgst.taxable_amount_cents == 49900

    def test_odd_total_keeps_sum_exact(self, gst_rate):
        breakdown = split_tax(150, gst_rate, "KA", "KA")

        assert breakdown.total_tax_cents == 27
        assert breakdown.by_type(TaxType.CGST).tax_amount_cents == 14
        assert breakdown.by_type(TaxType.SGST).tax_amount_cents == 13
        assert sum(e.tax_amount_cents for e in breakdown.entries) == 27

    def test_jurisdiction_codes_are_normalized(self, gst_rate):
        breakdown = split_tax(10000, gst_rate, " ka", "KA ")
        assert breakdown.is_intra_state


class TestInterState:
    def test_different_states_use_igst(self, gst_rate):
        breakdown = split_tax(49900, gst_rate, "KA", "MH")

        assert breakdown.total_tax_cents == 8982
        assert not breakdown.is_intra_state
        assert len(breakdown.entries) == 1
        igst = breakdown.by_type(TaxType.IGST)
        assert igst.tax_amount_cents == 8982
        assert igst.rate == Decimal("18")

    def test_missing_jurisdiction_falls_back_to_igst(self, gst_rate, caplog):
        with caplog.at_level(logging.WARNING, logger="cadence.services.tax_engine"):
            breakdown = split_tax(49900, gst_rate, "KA", None)

        assert breakdown.by_type(TaxType.IGST).tax_amount_cents == 8982
        assert "Missing jurisdiction" in caplog.text

    def test_blank_jurisdiction_is_missing(self, gst_rate):
        breakdown = split_tax(49900, gst_rate, "  ", "  ")
        assert breakdown.by_type(TaxType.IGST) is not None


class TestOtherTaxes:
    def test_other_tax_is_single_named_entry(self):
        breakdown = split_tax(49900, Decimal("1"), "KA", "KA", name="Cess", tax_type=TaxType.OTHER)

        assert breakdown.total_tax_cents == 499
        assert len(breakdown.entries) == 1
        assert breakdown.entries[0].name == "Cess"
        assert breakdown.entries[0].tax_type == TaxType.OTHER

    def test_half_paisa_rounds_up(self, gst_rate):
        assert split_tax(25, gst_rate, "KA", "MH").total_tax_cents == 5

    def test_zero_rate(self):
        breakdown = split_tax(49900, Decimal("0"), "KA", "KA")
        assert breakdown.total_tax_cents == 0


class TestValidation:
    def test_negative_amount(self, gst_rate):
        with pytest.raises(ValidationError):
            split_tax(-1, gst_rate, "KA", "KA")

    def test_negative_rate(self):
        with pytest.raises(ValidationError):
            split_tax(100, Decimal("-5"), "KA", "KA")
