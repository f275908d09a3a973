"""Date parsing helpers for natural-language accounting periods."""

import calendar
import re
from datetime import date, datetime, timedelta

# Month name/abbreviation → month int
_MONTH_NAMES: dict[str, int] = {
    "jan": 1, "january": 1, "feb": 2, "february": 2, "mar": 3, "march": 3,
    "apr": 4, "april": 4, "may": 5, "jun": 6, "june": 6,
    "jul": 7, "july": 7, "aug": 8, "august": 8, "sep": 9, "sept": 9, "september": 9,
    "oct": 10, "october": 10, "nov": 11, "november": 11, "dec": 12, "december": 12,
}

# Explicit formats tried in order after the keyword patterns
_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m-%d-%Y", "%b %d, %Y", "%B %d, %Y")

_ALIASES: dict[str, str] = {
    "current month": "this month",
    "previous month": "last month",
    "current quarter": "this quarter",
    "previous quarter": "last quarter",
    "current year": "this year",
    "previous year": "last year",
    "year to date": "ytd",
    "month to date": "mtd",
    "quarter to date": "qtd",
}

DateLike = date | str


def _start_of_month(d: date) -> date:
    return d.replace(day=1)


def _end_of_month(d: date) -> date:
    return d.replace(day=calendar.monthrange(d.year, d.month)[1])


def _shift_months(d: date, months: int) -> date:
    """Move *d* by whole months, clamping the day to the target month's length."""
    index = d.year * 12 + (d.month - 1) + months
    year, month = divmod(index, 12)
    day = min(d.day, calendar.monthrange(year, month + 1)[1])
    return date(year, month + 1, day)


def _start_of_quarter(d: date) -> date:
    return date(d.year, 3 * ((d.month - 1) // 3) + 1, 1)


def _end_of_quarter(d: date) -> date:
    return _end_of_month(_shift_months(_start_of_quarter(d), 2))


def _normalise(text: str) -> str:
    cleaned = " ".join(text.strip().lower().split())
    return _ALIASES.get(cleaned, cleaned)


def _coerce(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value.strip()[:10])


def parse_date(text: str, today: date | None = None) -> str:
    """Parse a natural-language date string into YYYY-MM-DD format.

    Period expressions resolve to the first day of the period.

    Supported formats:
    - "today", "yesterday", "tomorrow"
    - "this month", "last month", "next month"
    - "this quarter", "last quarter", "Q3", "Q3 2024"
    - "this year", "last year", "ytd", "fiscal year 2024" / "FY2024"
    - Month name with optional year: "March", "march 2024"
    - Explicit dates: "2024-03-15", "03/15/2024", "Mar 15, 2024"

    Args:
        text: The date string to parse.
        today: Override for today's date (for testing).

    Returns:
        Date string in YYYY-MM-DD format.

    Raises:
        ValueError: If the string cannot be parsed.
    """
    today = today or date.today()
    cleaned = _normalise(text)

    if cleaned == "today":
        return today.isoformat()
    if cleaned == "yesterday":
        return (today - timedelta(days=1)).isoformat()
    if cleaned == "tomorrow":
        return (today + timedelta(days=1)).isoformat()

    if cleaned == "this month":
        return _start_of_month(today).isoformat()
    if cleaned == "last month":
        return _shift_months(_start_of_month(today), -1).isoformat()
    if cleaned == "next month":
        return _shift_months(_start_of_month(today), 1).isoformat()

    if cleaned == "this quarter":
        return _start_of_quarter(today).isoformat()
    if cleaned == "last quarter":
        return _shift_months(_start_of_quarter(today), -3).isoformat()
    quarter = re.match(r"q([1-4])(?:\s*(\d{4}))?$", cleaned)
    if quarter:
        year = int(quarter.group(2)) if quarter.group(2) else today.year
        return date(year, 3 * (int(quarter.group(1)) - 1) + 1, 1).isoformat()

    if cleaned in ("this year", "ytd"):
        return date(today.year, 1, 1).isoformat()
    if cleaned == "last year":
        return date(today.year - 1, 1, 1).isoformat()
    # Fiscal year is treated as the calendar year
    fiscal = re.match(r"(?:fiscal year|fy)\s*(\d{4})?$", cleaned)
    if fiscal:
        year = int(fiscal.group(1)) if fiscal.group(1) else today.year
        return date(year, 1, 1).isoformat()

    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date().isoformat()
        except ValueError:
            continue

    # "March" / "march 2024" → first of that month
    month_year = re.match(r"([a-z]+)(?:\s+(\d{4}))?$", cleaned)
    if month_year and month_year.group(1) in _MONTH_NAMES:
        year = int(month_year.group(2)) if month_year.group(2) else today.year
        return date(year, _MONTH_NAMES[month_year.group(1)], 1).isoformat()

    raise ValueError(f"Cannot parse date: '{text}'")


def parse_date_range(text: str, today: date | None = None) -> tuple[str, str]:
    """Parse a period expression into an inclusive (start, end) pair.

    Supported: this/last month, this/last quarter, this/last year, ytd, mtd,
    qtd, "last N days|months|years", "Q2 [2024]", "fiscal year 2024".

    Raises:
        ValueError: If the string is not a recognised period.
    """
    today = today or date.today()
    cleaned = _normalise(text)

    if cleaned == "this month":
        return _start_of_month(today).isoformat(), _end_of_month(today).isoformat()
    if cleaned == "last month":
        start = _shift_months(_start_of_month(today), -1)
        return start.isoformat(), _end_of_month(start).isoformat()
    if cleaned == "this quarter":
        return _start_of_quarter(today).isoformat(), _end_of_quarter(today).isoformat()
    if cleaned == "last quarter":
        start = _shift_months(_start_of_quarter(today), -3)
        return start.isoformat(), _end_of_quarter(start).isoformat()
    if cleaned == "this year":
        return date(today.year, 1, 1).isoformat(), date(today.year, 12, 31).isoformat()
    if cleaned == "last year":
        return date(today.year - 1, 1, 1).isoformat(), date(today.year - 1, 12, 31).isoformat()
    if cleaned == "ytd":
        return date(today.year, 1, 1).isoformat(), today.isoformat()
    if cleaned == "mtd":
        return _start_of_month(today).isoformat(), today.isoformat()
    if cleaned == "qtd":
        return _start_of_quarter(today).isoformat(), today.isoformat()

    last_n = re.match(r"last (\d+) (day|month|year)s?$", cleaned)
    if last_n:
        n, unit = int(last_n.group(1)), last_n.group(2)
        if unit == "day":
            start = today - timedelta(days=n)
        elif unit == "month":
            start = _shift_months(today, -n)
        else:
            start = _shift_months(today, -12 * n)
        return start.isoformat(), today.isoformat()

    quarter = re.match(r"q([1-4])(?:\s*(\d{4}))?$", cleaned)
    if quarter:
        year = int(quarter.group(2)) if quarter.group(2) else today.year
        start = date(year, 3 * (int(quarter.group(1)) - 1) + 1, 1)
        return start.isoformat(), _end_of_quarter(start).isoformat()

    fiscal = re.match(r"(?:fiscal year|fy)\s*(\d{4})?$", cleaned)
    if fiscal:
        year = int(fiscal.group(1)) if fiscal.group(1) else today.year
        return date(year, 1, 1).isoformat(), date(year, 12, 31).isoformat()

    raise ValueError(f"Cannot parse date range: '{text}'")


def days_between(start: DateLike, end: DateLike) -> int:
    """Absolute number of days between two dates."""
    return abs((_coerce(end) - _coerce(start)).days)


def is_overdue(due: DateLike, today: date | None = None) -> bool:
    """True if *due* is strictly before today."""
    return _coerce(due) < (today or date.today())


def add_business_days(start: DateLike, days: int) -> str:
    """Move *days* weekdays from *start* (negative goes backwards). Weekends are skipped."""
    current = _coerce(start)
    step = 1 if days >= 0 else -1
    remaining = abs(days)
    while remaining > 0:
        current += timedelta(days=step)
        if current.weekday() < 5:
            remaining -= 1
    return current.isoformat()


def format_display(value: DateLike | None, fmt: str = "%b %d, %Y") -> str:
    """Format a date for display, e.g. ``Mar 05, 2024``.

    Unparseable strings are returned unchanged.
    """
    if value is None:
        return "N/A"
    try:
        return _coerce(value).strftime(fmt)
    except ValueError:
        return str(value)
