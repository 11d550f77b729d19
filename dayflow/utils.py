from datetime import date, datetime, time, timezone


def now_utc() -> datetime:
    """Return current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def parse_iso_datetime(s: str | None) -> datetime | None:
    """Parse an ISO date or datetime string.

    Accepts a trailing 'Z'. Date-only strings become midnight. Naive values are
    returned naive; callers decide which timezone they belong to. Raises
    ValueError for unparseable input.
    """
    if not s:
        return None
    s = s.strip()
    if s.endswith('Z'):
        s = s[:-1] + '+00:00'
    if len(s) == 10:
        return datetime.combine(date.fromisoformat(s), time.min)
    return datetime.fromisoformat(s)


def to_calendar_day(value, tz=None) -> date:
    """Truncate a date/datetime to its calendar day.

    Aware datetimes are first converted to `tz` when one is given so the day
    is the one observed in that timezone.
    """
    if isinstance(value, datetime):
        if tz is not None and value.tzinfo is not None:
            value = value.astimezone(tz)
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        parsed = parse_iso_datetime(value)
        if parsed is None:
            raise ValueError('empty date string')
        return to_calendar_day(parsed, tz)
    raise TypeError(f'cannot convert {type(value).__name__} to a calendar day')


def at_time_of(day: date, anchor: datetime) -> datetime:
    """Return `day` at the anchor's wall-clock time and timezone."""
    return datetime.combine(day, anchor.timetz())


def ordinal(n: int) -> str:
    if 10 <= n % 100 <= 20:
        suffix = 'th'
    else:
        suffix = {1: 'st', 2: 'nd', 3: 'rd'}.get(n % 10, 'th')
    return f'{n}{suffix}'
