"""Tests for natural-language accounting date helpers."""

from datetime import date

import pytest

from src.tools.date_utils import (
    add_business_days,
    days_between,
    format_display,
    is_overdue,
    parse_date,
    parse_date_range,
)

# Fixed reference date: Wednesday, 2026-02-11
FIXED_TODAY = date(2026, 2, 11)


class TestExplicitDates:
    def test_iso_date_returned_as_is(self):
        assert parse_date("2026-02-14", today=FIXED_TODAY) == "2026-02-14"

    def test_iso_date_with_whitespace(self):
        assert parse_date("  2026-02-14  ", today=FIXED_TODAY) == "2026-02-14"

    def test_us_slash_format(self):
        assert parse_date("03/15/2024", today=FIXED_TODAY) == "2024-03-15"

    def test_abbreviated_month_name(self):
        assert parse_date("Mar 15, 2024", today=FIXED_TODAY) == "2024-03-15"

    def test_full_month_name(self):
        assert parse_date("March 15, 2024", today=FIXED_TODAY) == "2024-03-15"

    def test_impossible_date_raises(self):
        with pytest.raises(ValueError):
            parse_date("2026-02-30", today=FIXED_TODAY)


class TestRelativeDays:
    def test_today(self):
        assert parse_date("today", today=FIXED_TODAY) == "2026-02-11"

    def test_yesterday(self):
        assert parse_date("yesterday", today=FIXED_TODAY) == "2026-02-10"

    def test_tomorrow(self):
        assert parse_date("Tomorrow", today=FIXED_TODAY) == "2026-02-12"


class TestPeriods:
    def test_this_month(self):
        assert parse_date("this month", today=FIXED_TODAY) == "2026-02-01"

    def test_last_month_crosses_year(self):
        assert parse_date("last month", today=date(2026, 1, 20)) == "2025-12-01"

    def test_previous_month_alias(self):
        assert parse_date("previous month", today=FIXED_TODAY) == "2026-01-01"

    def test_next_month(self):
        assert parse_date("next month", today=FIXED_TODAY) == "2026-03-01"

    def test_this_quarter(self):
        assert parse_date("this quarter", today=date(2026, 5, 20)) == "2026-04-01"

    def test_last_quarter(self):
        assert parse_date("last quarter", today=FIXED_TODAY) == "2025-10-01"

    def test_bare_quarter_uses_current_year(self):
        assert parse_date("Q3", today=FIXED_TODAY) == "2026-07-01"

    def test_quarter_with_year(self):
        assert parse_date("Q2 2024", today=FIXED_TODAY) == "2024-04-01"

    def test_this_and_last_year(self):
        assert parse_date("this year", today=FIXED_TODAY) == "2026-01-01"
        assert parse_date("last year", today=FIXED_TODAY) == "2025-01-01"

    def test_ytd(self):
        assert parse_date("year to date", today=FIXED_TODAY) == "2026-01-01"

    def test_fiscal_year(self):
        assert parse_date("fiscal year 2024", today=FIXED_TODAY) == "2024-01-01"
        assert parse_date("FY2023", today=FIXED_TODAY) == "2023-01-01"

    def test_month_name_alone(self):
        assert parse_date("march", today=FIXED_TODAY) == "2026-03-01"

    def test_month_name_with_year(self):
        assert parse_date("September 2024", today=FIXED_TODAY) == "2024-09-01"


class TestInvalidInput:
    def test_unparseable_raises(self):
        with pytest.raises(ValueError, match="Cannot parse date"):
            parse_date("whenever", today=FIXED_TODAY)

    def test_empty_raises(self):
        with pytest.raises(ValueError):
            parse_date("", today=FIXED_TODAY)


class TestParseDateRange:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("this month", ("2026-02-01", "2026-02-28")),
            ("last month", ("2026-01-01", "2026-01-31")),
            ("this quarter", ("2026-01-01", "2026-03-31")),
            ("last quarter", ("2025-10-01", "2025-12-31")),
            ("this year", ("2026-01-01", "2026-12-31")),
            ("last year", ("2025-01-01", "2025-12-31")),
            ("ytd", ("2026-01-01", "2026-02-11")),
            ("month to date", ("2026-02-01", "2026-02-11")),
            ("qtd", ("2026-01-01", "2026-02-11")),
            ("last 30 days", ("2026-01-12", "2026-02-11")),
            ("last 3 months", ("2025-11-11", "2026-02-11")),
            ("last 1 year", ("2025-02-11", "2026-02-11")),
            ("Q4 2025", ("2025-10-01", "2025-12-31")),
            ("fiscal year 2024", ("2024-01-01", "2024-12-31")),
        ],
    )
    def test_ranges(self, text, expected):
        assert parse_date_range(text, today=FIXED_TODAY) == expected

    def test_last_month_clamps_to_short_month(self):
        assert parse_date_range("last month", today=date(2024, 3, 31)) == (
            "2024-02-01",
            "2024-02-29",
        )

    def test_unknown_range_raises(self):
        with pytest.raises(ValueError, match="Cannot parse date range"):
            parse_date_range("sometime soon", today=FIXED_TODAY)


class TestDaysBetween:
    def test_counts_days_across_leap_february(self):
        assert days_between("2024-01-01", "2024-03-01") == 60

    def test_is_absolute(self):
        assert days_between(date(2024, 3, 1), "2024-01-01") == 60

    def test_accepts_datetime_strings(self):
        assert days_between("2024-01-01T10:00:00", "2024-01-02") == 1


class TestIsOverdue:
    def test_past_due_date(self):
        assert is_overdue("2026-02-10", today=FIXED_TODAY) is True

    def test_due_today_is_not_overdue(self):
        assert is_overdue(FIXED_TODAY, today=FIXED_TODAY) is False


class TestAddBusinessDays:
    def test_friday_plus_one_is_monday(self):
        assert add_business_days("2026-02-13", 1) == "2026-02-16"

    def test_thirty_business_days_is_six_weeks(self):
        assert add_business_days(FIXED_TODAY, 30) == "2026-03-25"

    def test_negative_goes_backwards(self):
        assert add_business_days("2026-02-16", -1) == "2026-02-13"

    def test_zero_is_identity(self):
        assert add_business_days("2026-02-14", 0) == "2026-02-14"


class TestFormatDisplay:
    def test_formats_date(self):
        assert format_display(date(2024, 3, 5)) == "Mar 05, 2024"

    def test_formats_iso_string(self):
        assert format_display("2024-12-25") == "Dec 25, 2024"

    def test_none(self):
        assert format_display(None) == "N/A"

    def test_unparseable_returned_unchanged(self):
        assert format_display("not a date") == "not a date"
