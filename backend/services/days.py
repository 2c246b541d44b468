"""UTC calendar-day helpers.

A "day" is always a UTC calendar date; on the wire it is `YYYY-MM-DD`.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def today_utc(now: Optional[datetime] = None) -> date:
    return (now or utc_now()).astimezone(timezone.utc).date()


def day_from_timestamp(value: Optional[str]) -> Optional[date]:
    """Day prefix of a Graph timestamp such as `2024-05-01T07:00:00+0000`."""
    if not value or len(value) < 10:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def parse_graph_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a Graph timestamp, which uses `+0000` rather than `+00:00`."""
    if not value:
        return None
    try:
        normalized = value.replace("Z", "+00:00")
        if len(normalized) >= 5 and normalized[-5] in "+-" and ":" not in normalized[-5:]:
            normalized = f"{normalized[:-2]}:{normalized[-2:]}"
        parsed = datetime.fromisoformat(normalized)
    except (ValueError, TypeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def window(days: int, today: date) -> tuple[date, date]:
    """Inclusive `[today - (days - 1), today]`."""
    return today - timedelta(days=days - 1), today


def iter_days(start: date, end: date) -> list[date]:
    """Every day from start to end inclusive."""
    return [start + timedelta(days=i) for i in range((end - start).days + 1)]


def to_epoch(day: date) -> int:
    """Midnight UTC of `day` as a unix timestamp."""
    return int(datetime(day.year, day.month, day.day, tzinfo=timezone.utc).timestamp())
