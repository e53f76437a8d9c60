"""Due-ness and bounds evaluation for accrual rules (pure functions)."""

from datetime import date, timedelta

import pytest

from ledger_services._accrual_types import AccrualFrequency
from ledger_services.accrual_schedule import is_due, last_day_of_month, within_bounds


class TestIsDue:
    def test_daily_always_due(self):
        start = date(2026, 1, 1)
        assert all(
            is_due(AccrualFrequency.DAILY, start, start + timedelta(days=n)) for n in range(40)
        )

    def test_weekly_matches_start_weekday(self):
        start = date(2026, 1, 7)  # Wednesday
        assert is_due(AccrualFrequency.WEEKLY, start, date(2026, 1, 14))
        assert not is_due(AccrualFrequency.WEEKLY, start, date(2026, 1, 15))

    def test_weekly_without_start_is_monday(self):
        assert is_due(AccrualFrequency.WEEKLY, None, date(2026, 1, 12))
        assert not is_due(AccrualFrequency.WEEKLY, None, date(2026, 1, 13))

    def test_monthly_matches_start_day(self):
        start = date(2026, 1, 15)
        assert is_due(AccrualFrequency.MONTHLY, start, date(2026, 3, 15))
        assert not is_due(AccrualFrequency.MONTHLY, start, date(2026, 3, 16))

    def test_monthly_without_start_is_first(self):
        assert is_due(AccrualFrequency.MONTHLY, None, date(2026, 5, 1))
        assert not is_due(AccrualFrequency.MONTHLY, None, date(2026, 5, 2))

    @pytest.mark.parametrize(
        "as_of,expected",
        [
            (date(2026, 2, 28), True),
            (date(2026, 2, 27), False),
            (date(2028, 2, 29), True),
            (date(2028, 2, 28), False),
            (date(2026, 4, 30), True),
            (date(2026, 5, 31), True),
            (date(2026, 5, 30), False),
        ],
    )
    def test_monthly_anchor_clamped_to_month_end(self, as_of, expected):
        assert is_due(AccrualFrequency.MONTHLY, date(2026, 1, 31), as_of) is expected

    @pytest.mark.parametrize("frequency", [AccrualFrequency.PERIOD_END, AccrualFrequency.ON_DEMAND])
    def test_unscheduled_frequencies_never_due(self, frequency):
        assert not is_due(frequency, date(2026, 1, 1), date(2026, 1, 31))

    def test_accepts_string_frequency(self):
        assert is_due("DAILY", None, date(2026, 1, 1))

    def test_last_day_of_month(self):
        assert last_day_of_month(2026, 2) == 28
        assert last_day_of_month(2028, 2) == 29
        assert last_day_of_month(2026, 12) == 31


class TestWithinBounds:
    def test_unbounded(self):
        assert within_bounds(None, None, date(2026, 1, 1)) is None

    def test_bounds_are_inclusive(self):
        start, end = date(2026, 1, 10), date(2026, 1, 20)
        assert within_bounds(start, end, start) is None
        assert within_bounds(start, end, end) is None

    def test_before_start(self):
        assert within_bounds(date(2026, 1, 10), None, date(2026, 1, 9)) == "Before rule start_date"

    def test_after_end(self):
        assert within_bounds(None, date(2026, 1, 20), date(2026, 1, 21)) == "After rule end_date"
