"""GST tax splitting.

The total tax is rounded once; the per-component amounts are derived from
that total so the breakdown always sums exactly to it.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal

from cadence.core.errors import ValidationError
from cadence.core.money import percent_of
from cadence.models.invoice_tax import TaxType

logger = logging.getLogger(__name__)

TWO = Decimal("2")


@dataclass(frozen=True)
class TaxBreakdownEntry:
    name: str
    tax_type: TaxType
    rate: Decimal
    taxable_amount_cents: int
    tax_amount_cents: int


@dataclass
class TaxBreakdown:
    total_tax_cents: int
    entries: list[TaxBreakdownEntry] = field(default_factory=list)

    @property
    def is_intra_state(self) -> bool:
        return any(entry.tax_type == TaxType.CGST for entry in self.entries)

    def by_type(self, tax_type: TaxType) -> TaxBreakdownEntry | None:
        for entry in self.entries:
            if entry.tax_type == tax_type:
                return entry
        return None


def _normalize_jurisdiction(code: str | None) -> str | None:
    if code is None:
        return None
    code = code.strip().upper()
    return code or None


def split_tax(
    taxable_amount_cents: int,
    rate: Decimal,
    tenant_jurisdiction: str | None,
    customer_jurisdiction: str | None,
    name: str = "GST",
    tax_type: TaxType | None = None,
) -> TaxBreakdown:
    """Compute the tax on ``taxable_amount_cents`` at ``rate`` percent.

    Same jurisdiction gives CGST + SGST at half the rate each; different
    jurisdictions give a single IGST entry. A missing code on either side
    falls back to IGST with a warning. Passing ``tax_type=TaxType.OTHER``
    produces one entry named ``name`` regardless of jurisdiction.
    """
    rate = Decimal(rate)
    if taxable_amount_cents < 0:
        raise ValidationError("Taxable amount cannot be negative")
    if rate < 0:
        raise ValidationError("Tax rate cannot be negative")

    total = percent_of(taxable_amount_cents, rate)

    if tax_type == TaxType.OTHER:
        return TaxBreakdown(
            total_tax_cents=total,
            entries=[TaxBreakdownEntry(name, TaxType.OTHER, rate, taxable_amount_cents, total)],
        )

    tenant_code = _normalize_jurisdiction(tenant_jurisdiction)
    customer_code = _normalize_jurisdiction(customer_jurisdiction)

    if tenant_code is None or customer_code is None:
        logger.warning(
            "Missing jurisdiction (tenant=%r, customer=%r); applying IGST",
            tenant_jurisdiction,
            customer_jurisdiction,
        )
    elif tenant_code == customer_code:
        half_rate = rate / TWO
        # CGST takes the odd paisa so the pair always sums to the total
        sgst = total // 2
        cgst = total - sgst
        return TaxBreakdown(
            total_tax_cents=total,
            entries=[
                TaxBreakdownEntry("CGST", TaxType.CGST, half_rate, taxable_amount_cents, cgst),
                TaxBreakdownEntry("SGST", TaxType.SGST, half_rate, taxable_amount_cents, sgst),
            ],
        )

    return TaxBreakdown(
        total_tax_cents=total,
        entries=[TaxBreakdownEntry("IGST", TaxType.IGST, rate, taxable_amount_cents, total)],
    )
