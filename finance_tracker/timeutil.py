from __future__ import annotations

from datetime import date, datetime, time, timezone

from finance_tracker.errors import InvalidInput


def utc_now() -> datetime:
    """Return an aware UTC timestamp."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def end_of_day(day: date) -> datetime:
    """Last instant of a calendar day in UTC."""
    return datetime.combine(day, time.max, tzinfo=timezone.utc)


def parse_as_of(value: str | datetime | date | None) -> datetime:
    """Resolve an optional query time; dates mean the end of that day."""
    if value is None:
        return utc_now()
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return end_of_day(value)
    text = value.strip()
    # fromisoformat only accepts a "Z" suffix from Python 3.11 on.
    if text[-1:] in ("Z", "z"):
        text = text[:-1] + "+00:00"
    try:
        if len(text) == 10:
            return end_of_day(date.fromisoformat(text))
        return as_utc(datetime.fromisoformat(text))
    except ValueError as exc:
        raise InvalidInput(f"Invalid as_of: {value!r}") from exc
