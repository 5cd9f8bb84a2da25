"""Date parsing helpers. Stored timestamps are naive UTC."""
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional, Tuple


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_datetime(value: Any) -> Optional[datetime]:
    """Accept datetimes, dates, epoch milliseconds and ISO strings (with a trailing Z)."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    if isinstance(value, (int, float)):
        return datetime.utcfromtimestamp(value / 1000)
    text = str(value).strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    return to_naive_utc(datetime.fromisoformat(text))


def utc_day_bounds(value: Any) -> Tuple[datetime, datetime]:
    """[start, end) of the UTC calendar day containing ``value``."""
    moment = parse_datetime(value)
    if moment is None:
        raise ValueError("A date is required")
    start = datetime.combine(moment.date(), time.min)
    return start, start + timedelta(days=1)
