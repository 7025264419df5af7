"""UTC day arithmetic shared by the timeline handlers."""

from datetime import UTC, date, datetime, time, timedelta

ONE_DAY = timedelta(days=1)

# Regenerating this date means "every stale day of the user"
ALL_DAYS = date(1970, 1, 1)


def utc_now() -> datetime:
    return datetime.now(UTC)


def start_of_day(ts: datetime) -> datetime:
    """Midnight UTC of the day containing ts."""
    return datetime.combine(ts.astimezone(UTC).date(), time.min, tzinfo=UTC)


def day_bounds(day: date) -> tuple[datetime, datetime]:
    """The half-open UTC interval [day 00:00, next day 00:00)."""
    start = datetime.combine(day, time.min, tzinfo=UTC)
    return start, start + ONE_DAY


def days_in_range(start: datetime, end: datetime) -> list[date]:
    """UTC dates touched by [start, end)."""
    if end <= start:
        return []
    first = start.astimezone(UTC).date()
    last = (end - timedelta(microseconds=1)).astimezone(UTC).date()
    return [first + timedelta(days=i) for i in range((last - first).days + 1)]


def is_whole_day(start: datetime, end: datetime) -> bool:
    return start == start_of_day(start) and end - start == ONE_DAY
