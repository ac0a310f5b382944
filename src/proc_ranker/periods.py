"""Date parsing and named period helpers shared by the CLI and storage."""

import calendar
from datetime import date, datetime, timedelta

DAY_FORMAT = "%Y-%m-%d"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

PERIODS = (
    "total",
    "this-year",
    "last-year",
    "this-month",
    "last-month",
    "this-week",
    "last-week",
    "today",
    "yesterday",
)
RETENTION_PRESETS = ("1week", "1month", "3months")


class QueryValidationError(ValueError):
    """Raised when a query argument cannot be interpreted."""


def parse_day(value: date | datetime | str) -> date:
    """Parse a calendar day from a date, datetime or 'YYYY-MM-DD' string."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(value.strip(), DAY_FORMAT).date()
    except (AttributeError, ValueError) as e:
        raise QueryValidationError(f"Invalid day {value!r}, expected YYYY-MM-DD") from e


def parse_timestamp(value: datetime | str) -> datetime:
    """Parse a flush timestamp ('YYYY-MM-DD HH:MM:SS' or ISO 8601)."""
    if isinstance(value, datetime):
        return value.replace(microsecond=0)
    try:
        return datetime.fromisoformat(value.strip()).replace(microsecond=0)
    except (AttributeError, ValueError) as e:
        raise QueryValidationError(
            f"Invalid timestamp {value!r}, expected YYYY-MM-DD HH:MM:SS"
        ) from e


def format_timestamp(value: datetime) -> str:
    """Format a datetime the way flush timestamps are stored."""
    return value.strftime(TIMESTAMP_FORMAT)


def format_day(value: date) -> str:
    """Format a date the way leaderboard days are stored."""
    return value.isoformat()


def add_months(day: date, months: int) -> date:
    """Shift a date by whole calendar months, clamping the day of month."""
    month_index = day.year * 12 + (day.month - 1) + months
    year, month = divmod(month_index, 12)
    last_day = calendar.monthrange(year, month + 1)[1]
    return date(year, month + 1, min(day.day, last_day))


def resolve_period(name: str, today: date | None = None) -> tuple[date, date]:
    """Return the inclusive (start, end) days for a named period.

    Weeks start on Monday. Open-ended periods (this-*, today) end today;
    'total' spans every representable day.
    """
    today = today or date.today()
    week_start = today - timedelta(days=today.weekday())
    month_start = today.replace(day=1)

    if name == "total":
        return date.min, date.max
    if name == "this-year":
        return date(today.year, 1, 1), today
    if name == "last-year":
        return date(today.year - 1, 1, 1), date(today.year - 1, 12, 31)
    if name == "this-month":
        return month_start, today
    if name == "last-month":
        return add_months(month_start, -1), month_start - timedelta(days=1)
    if name == "this-week":
        return week_start, today
    if name == "last-week":
        start = week_start - timedelta(days=7)
        return start, start + timedelta(days=6)
    if name == "today":
        return today, today
    if name == "yesterday":
        yesterday = today - timedelta(days=1)
        return yesterday, yesterday
    raise QueryValidationError(f"Unknown period: {name!r}. Valid periods: {list(PERIODS)}")


def retention_cutoff(name: str, today: date | None = None) -> date:
    """Return the cutoff day for a retention preset (data before it is pruned)."""
    today = today or date.today()
    if name == "1week":
        return today - timedelta(days=7)
    if name == "1month":
        return add_months(today, -1)
    if name == "3months":
        return add_months(today, -3)
    raise QueryValidationError(
        f"Unknown retention preset: {name!r}. Valid presets: {list(RETENTION_PRESETS)}"
    )
