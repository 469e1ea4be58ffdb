"""Integer minor-unit money helpers.

Amounts are carried as ``int`` cents (paise for INR) everywhere inside the
core. ``Decimal`` is only used for rates, quantities and at the formatting
boundary.
"""

from decimal import ROUND_HALF_UP, Decimal

HUNDRED = Decimal("100")


def round_cents(value: Decimal) -> int:
    """Round a fractional minor-unit amount half-up to whole cents."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def percent_of(amount_cents: int, percent: Decimal) -> int:
    """Return ``percent`` % of ``amount_cents``, rounded half-up."""
    return round_cents(Decimal(amount_cents) * Decimal(percent) / HUNDRED)


def to_cents(amount: Decimal | int | str) -> int:
    """Convert a major-unit amount (e.g. ``"499.00"``) to minor units."""
    return round_cents(Decimal(str(amount)) * HUNDRED)


def from_cents(amount_cents: int) -> Decimal:
    """Convert minor units to a two-place major-unit ``Decimal``."""
    return (Decimal(amount_cents) / HUNDRED).quantize(Decimal("0.01"))


def format_amount(amount_cents: int, currency: str) -> str:
    """Render an amount for display, e.g. ``INR 588.82``."""
    return f"{currency} {from_cents(amount_cents):,}"
