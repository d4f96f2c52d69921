import calendar
import re
from datetime import date, datetime, time, timedelta
from typing import List, Optional, Tuple

import dateparser
import pytz

from flightfinder.obs.logger import log_event

ONE_WAY = "one-way"
# Never resolves; lets callers exercise the unparseable-date path on purpose
RESERVED_INVALID_EXPRESSION = "invalid-date-for-testing"

_ISO_SHAPE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_WEEKDAY_RX = re.compile(
    r"^(?:(?P<qual>next|this)-)?(?P<day>monday|tuesday|wednesday|thursday|friday|saturday|sunday)$"
)
WEEKDAYS = {
    "monday": 0, "tuesday": 1, "wednesday": 2, "thursday": 3,
    "friday": 4, "saturday": 5, "sunday": 6,
}


class DateExpressionError(ValueError):
    """Raised for date expressions that are malformed rather than merely unknown."""

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f"{reason}: {expression}")


def get_current_datetime(tz: str = "UTC") -> datetime:
    """Get current datetime with timezone"""
    return datetime.now(pytz.timezone(tz))


def today_in(tz: str = "UTC") -> date:
    return get_current_datetime(tz).date()


def normalise_expression(text: str) -> str:
    return re.sub(r"[\s_]+", "-", text.strip().lower())


def parse_iso_date(text: str) -> date:
    if not _ISO_SHAPE.match(text):
        raise DateExpressionError(text, "Date must be in YYYY-MM-DD format")
    try:
        return date.fromisoformat(text)
    except ValueError:
        raise DateExpressionError(text, "Not a calendar date")


def days_between(start: date, end: date) -> List[date]:
    """Inclusive list of days from start to end."""
    return [start + timedelta(days=i) for i in range((end - start).days + 1)]


def _weekday_date(qualifier: Optional[str], day_name: str, today: date) -> date:
    days_until = (WEEKDAYS[day_name] - today.weekday()) % 7
    if qualifier == "this":
        # "this Friday" when today is Friday means today
        return today + timedelta(days=days_until)
    # "next Friday" or bare "Friday" on a Friday means a week out
    if days_until == 0:
        days_until = 7
    return today + timedelta(days=days_until)


def _upcoming_saturday(today: date) -> date:
    days_until = (5 - today.weekday()) % 7
    return today + timedelta(days=days_until or 7)


def _end_of_month(d: date) -> date:
    return d.replace(day=calendar.monthrange(d.year, d.month)[1])


def expression_span(expression: str, today: date) -> Optional[Tuple[date, date]]:
    """Return the (first, last) days covered by a named relative expression.

    Returns None when the expression is not one of the named forms.
    Weeks start on Monday.
    """
    expr = normalise_expression(expression)
    weekday = today.weekday()

    if expr == "today":
        return today, today
    if expr == "tomorrow":
        tomorrow = today + timedelta(days=1)
        return tomorrow, tomorrow
    if expr == "this-week":
        return today, today + timedelta(days=6 - weekday)
    if expr == "next-week":
        return today + timedelta(days=1), today + timedelta(days=7)
    if expr == "this-weekend":
        if weekday == 6:
            return today, today
        saturday = today + timedelta(days=5 - weekday)
        return saturday, saturday + timedelta(days=1)
    if expr == "next-weekend":
        saturday = _upcoming_saturday(today)
        return saturday, saturday + timedelta(days=1)
    if expr == "following-weekend":
        saturday = _upcoming_saturday(today) + timedelta(days=7)
        return saturday, saturday + timedelta(days=1)
    if expr == "this-month":
        return today, _end_of_month(today)
    if expr == "next-month":
        first = _end_of_month(today) + timedelta(days=1)
        return first, _end_of_month(first)

    m = _WEEKDAY_RX.match(expr)
    if m:
        d = _weekday_date(m.group("qual"), m.group("day"), today)
        return d, d
    return None


def _parse_free_text(expression: str, today: date) -> Optional[date]:
    base = datetime.combine(today, time(12, 0))
    dt = dateparser.parse(
        expression,
        settings={"RELATIVE_BASE": base, "PREFER_DATES_FROM": "future"},
    )
    return dt.date() if dt else None


def resolve_date_expression(expression: str, today: Optional[date] = None,
                            expand_range: bool = False, tz: str = "UTC") -> List[date]:
    """Resolve an exact or relative date expression to calendar days.

    With ``expand_range`` every day of a relative span is returned
    (``next-weekend`` -> Saturday and Sunday); otherwise only its first day.
    ``one-way`` resolves to an empty list. Unknown free text falls back to
    dateparser and then to tomorrow, logging a warning.
    """
    if expression is None or not str(expression).strip():
        raise DateExpressionError(str(expression), "Empty date expression")
    raw = str(expression).strip()
    expr = normalise_expression(raw)
    if today is None:
        today = today_in(tz)

    if expr == RESERVED_INVALID_EXPRESSION:
        raise DateExpressionError(raw, "Unparseable date expression")
    if expr == ONE_WAY:
        return []
    if re.match(r"^\d{4}-\d{1,2}-\d{1,2}$", expr):
        return [parse_iso_date(expr)]

    span = expression_span(expr, today)
    if span is not None:
        start, end = span
        return days_between(start, end) if expand_range else [start]

    parsed = _parse_free_text(raw, today)
    if parsed is not None:
        return [parsed]

    fallback = today + timedelta(days=1)
    log_event(
        "date_expression_defaulted",
        level="WARNING",
        expression=raw,
        resolved=fallback.isoformat(),
    )
    return [fallback]


def with_flexibility(dates: List[date], days: Optional[int]) -> List[date]:
    """Widen each date into a +/- window; result is deduplicated and sorted."""
    if not days:
        return sorted(set(dates))
    widened = set()
    for d in dates:
        for delta in range(-days, days + 1):
            widened.add(d + timedelta(days=delta))
    return sorted(widened)
