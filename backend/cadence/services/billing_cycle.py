"""Billing-cycle date arithmetic."""

import calendar as cal
from datetime import date, timedelta
from typing import TypeVar

from cadence.core.errors import InvalidCycleError, ValidationError
from cadence.models.plan import BillingCycle

D = TypeVar("D", bound=date)

# Months per cycle step; weekly is handled in days
_CYCLE_MONTHS = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.QUARTERLY: 3,
    BillingCycle.YEARLY: 12,
}


def _coerce_cycle(cycle: BillingCycle | str) -> BillingCycle:
    try:
        return BillingCycle(cycle)
    except ValueError:
        raise InvalidCycleError(cycle) from None


def _add_months(value: D, months: int) -> D:
    """Add months to a date or datetime, clamping to last day of month."""
    month = value.month - 1 + months
    year = value.year + month // 12
    month = month % 12 + 1
    max_day = cal.monthrange(year, month)[1]
    day = min(value.day, max_day)
    return value.replace(year=year, month=month, day=day)


def _step(value: D, cycle: BillingCycle | str, interval: int, direction: int) -> D:
    billing_cycle = _coerce_cycle(cycle)
    if interval < 1:
        raise ValidationError(f"Billing interval must be at least 1, got {interval}")

    if billing_cycle == BillingCycle.WEEKLY:
        return value + timedelta(days=7 * interval * direction)
    return _add_months(value, _CYCLE_MONTHS[billing_cycle] * interval * direction)


def next_billing_date(value: D, cycle: BillingCycle | str, interval: int = 1) -> D:
    """Return the date one billing step after ``value``.

    Month-based cycles clamp to the end of the target month, so Jan 31
    monthly gives Feb 28 (or 29) rather than rolling into March.

    Raises:
        InvalidCycleError: ``cycle`` is not a known billing cycle.
        ValidationError: ``interval`` is below 1.
    """
    return _step(value, cycle, interval, 1)


def previous_billing_date(value: D, cycle: BillingCycle | str, interval: int = 1) -> D:
    """Return the date one billing step before ``value``."""
    return _step(value, cycle, interval, -1)


def period_bounds(start: D, cycle: BillingCycle | str, interval: int = 1) -> tuple[D, D]:
    """Return ``(start, end)`` of the billing period beginning at ``start``."""
    return start, next_billing_date(start, cycle, interval)
