"""Tests for billing-cycle date arithmetic."""

from datetime import UTC, date, datetime

import pytest

from cadence.core.errors import InvalidCycleError, ValidationError
from cadence.models.plan import BillingCycle
from cadence.services.billing_cycle import (
    next_billing_date,
    period_bounds,
    previous_billing_date,
)


class TestNextBillingDate:
    def test_monthly(self):
        assert next_billing_date(date(2026, 3, 15), BillingCycle.MONTHLY) == date(2026, 4, 15)

    def test_monthly_clamps_to_month_end(self):
        assert next_billing_date(date(2026, 1, 31), "monthly") == date(2026, 2, 28)

    def test_monthly_clamps_to_leap_day(self):
        assert next_billing_date(date(2024, 1, 31), "monthly") == date(2024, 2, 29)

    def test_monthly_rolls_over_year(self):
        assert next_billing_date(date(2025, 12, 10), "monthly") == date(2026, 1, 10)

    def test_quarterly(self):
        assert next_billing_date(date(2025, 11, 30), "quarterly") == date(2026, 2, 28)

    def test_yearly_from_leap_day(self):
        assert next_billing_date(date(2024, 2, 29), "yearly") == date(2025, 2, 28)

    def test_weekly(self):
        assert next_billing_date(date(2026, 3, 15), "weekly") == date(2026, 3, 22)

    def test_weekly_with_interval(self):
        assert next_billing_date(date(2026, 3, 15), "weekly", interval=2) == date(2026, 3, 29)

    def test_monthly_with_interval(self):
        assert next_billing_date(date(2026, 1, 15), "monthly", interval=3) == date(2026, 4, 15)

    def test_datetime_keeps_time_and_zone(self):
        start = datetime(2026, 1, 31, 9, 30, tzinfo=UTC)
        assert next_billing_date(start, "monthly") == datetime(2026, 2, 28, 9, 30, tzinfo=UTC)

    def test_unknown_cycle(self):
        with pytest.raises(InvalidCycleError) as exc_info:
            next_billing_date(date(2026, 3, 15), "daily")
        assert isinstance(exc_info.value, ValidationError)
        assert "daily" in exc_info.value.message

    @pytest.mark.parametrize("interval", [0, -1])
    def test_interval_below_one(self, interval):
        with pytest.raises(ValidationError):
            next_billing_date(date(2026, 3, 15), "monthly", interval=interval)


class TestPreviousBillingDate:
    def test_monthly_clamps(self):
        assert previous_billing_date(date(2026, 3, 31), "monthly") == date(2026, 2, 28)

    def test_weekly(self):
        assert previous_billing_date(date(2026, 3, 15), "weekly") == date(2026, 3, 8)

    def test_yearly(self):
        assert previous_billing_date(date(2026, 3, 15), "yearly") == date(2025, 3, 15)


class TestPeriodBounds:
    def test_period_bounds(self):
        start = datetime(2026, 3, 15, tzinfo=UTC)
        assert period_bounds(start, "quarterly") == (start, datetime(2026, 6, 15, tzinfo=UTC))
