"""Occurrence generation for recurring task templates.

All stepping goes through a single dateutil rrule (or rruleset) built from
the template's anchor day. Requests for a window drop candidates before the
window and stop after it; earlier occurrences are never computed by a
separate loop, so every window sees the same anchor-aligned dates.

Rules are built on naive midnight datetimes: the engine works in calendar
days and re-applies the anchor's time of day (and timezone) afterwards.
"""
from __future__ import annotations

import calendar
import itertools
import logging
from datetime import date, datetime, time
from typing import Iterator, Optional

from dateutil import rrule as _rrule

from .recurrence import RecurrencePattern, RecurrenceRule, RecurrenceValidationError
from .utils import at_time_of, to_calendar_day

logger = logging.getLogger(__name__)

# Sunday=0 .. Saturday=6, as stored on the rule
_WEEKDAYS = (_rrule.SU, _rrule.MO, _rrule.TU, _rrule.WE, _rrule.TH, _rrule.FR, _rrule.SA)


def _midnight(day: date) -> datetime:
    return datetime.combine(day, time.min)


def _clamped_month_day(anchor_day: date, freq: int, **params):
    """Rule that lands on the anchor's day of month or the month's last day."""
    return _rrule.rrule(freq, bymonthday=(anchor_day.day, -1), bysetpos=1, **params)


def build_rrule(rule: RecurrenceRule, anchor_day: date):
    """Build the lazy candidate sequence for `rule` anchored at `anchor_day`.

    - weekly rules count Sunday-aligned weeks from the anchor's week
    - explicit day/month filters expand to every listed day of each visited
      period; listed month days that do not exist in a month are skipped
    - plain monthly/yearly stepping clamps to the last day of short months
    """
    params = {
        'dtstart': _midnight(anchor_day),
        'interval': rule.interval,
        'until': _midnight(rule.end_date) if rule.end_date else None,
    }
    pattern = rule.pattern
    if pattern is RecurrencePattern.DAILY:
        return _rrule.rrule(_rrule.DAILY, **params)
    if pattern is RecurrencePattern.WEEKLY:
        byweekday = [_WEEKDAYS[d] for d in rule.weekday_filter] or None
        return _rrule.rrule(_rrule.WEEKLY, wkst=_rrule.SU, byweekday=byweekday, **params)
    if pattern is RecurrencePattern.MONTHLY:
        if rule.month_day_filter:
            return _rrule.rrule(_rrule.MONTHLY, bymonthday=rule.month_day_filter, **params)
        if anchor_day.day > 28:
            return _clamped_month_day(anchor_day, _rrule.MONTHLY, **params)
        return _rrule.rrule(_rrule.MONTHLY, **params)
    if pattern is RecurrencePattern.YEARLY:
        months = rule.month_filter or [anchor_day.month]
        if anchor_day.day <= 28:
            return _rrule.rrule(_rrule.YEARLY, bymonth=months, bymonthday=anchor_day.day, **params)
        # bysetpos selects per period, so each month needs its own rule
        rset = _rrule.rruleset()
        for month in months:
            rset.rrule(_clamped_month_day(anchor_day, _rrule.YEARLY, bymonth=month, **params))
        return rset
    raise RecurrenceValidationError(f'unsupported recurrence pattern: {pattern!r}')


def _anchor_of(template) -> datetime:
    anchor = template.scheduled_date
    if anchor is None:
        raise RecurrenceValidationError('recurring task has no scheduled date to anchor occurrences')
    if isinstance(anchor, date) and not isinstance(anchor, datetime):
        anchor = _midnight(anchor)
    return anchor


def iter_occurrence_days(rule: RecurrenceRule, anchor_day: date, first: Optional[date] = None) -> Iterator[date]:
    """Yield occurrence days in order, starting at `first` (default: anchor)."""
    candidates = (dt.date() for dt in build_rrule(rule, anchor_day))
    if first is None or first <= anchor_day:
        return candidates
    return itertools.dropwhile(lambda d: d < first, candidates)


def expand_occurrence_days(template, window_start, window_end,
                           max_total: Optional[int] = None,
                           rule: Optional[RecurrenceRule] = None) -> tuple[list[date], bool]:
    """Return (days, truncated) for a recurring template inside a window.

    Window bounds are inclusive calendar days; datetimes are truncated to the
    day observed in the anchor's timezone. When more than `max_total` days
    fall in the window, the first `max_total` are returned and truncated is
    True. `rule` defaults to the template's parsed recurrence.
    """
    if rule is None:
        rule = template.recurrence
    if rule is None:
        raise RecurrenceValidationError('template is not recurring')
    anchor = _anchor_of(template)
    anchor_day = anchor.date()
    first = to_calendar_day(window_start, anchor.tzinfo)
    stop = to_calendar_day(window_end, anchor.tzinfo)
    if rule.end_date is not None and rule.end_date < stop:
        stop = rule.end_date
    if first > stop or anchor_day > stop:
        return [], False

    in_window = itertools.takewhile(lambda d: d <= stop, iter_occurrence_days(rule, anchor_day, first))
    if max_total is None:
        return list(in_window), False
    days = list(itertools.islice(in_window, max_total + 1))
    if len(days) > max_total:
        logger.info('occurrence expansion truncated at %d for task id=%s window=%s..%s',
                    max_total, getattr(template, 'id', None), first, stop)
        return days[:max_total], True
    return days, False


def generate_occurrences(template, window_start, window_end,
                         max_total: Optional[int] = None) -> list[datetime]:
    """Ordered occurrence datetimes of `template` inside the window.

    Each occurrence is the generated day at the anchor's time of day. A
    non-recurring template yields its own scheduled date, whatever the window.
    """
    if template.recurrence is None:
        return [template.scheduled_date] if template.scheduled_date is not None else []
    anchor = _anchor_of(template)
    days, _ = expand_occurrence_days(template, window_start, window_end, max_total)
    return [at_time_of(d, anchor) for d in days]


def _months_between(a: date, b: date) -> int:
    return (b.year - a.year) * 12 + (b.month - a.month)


def _clamp_day(year: int, month: int, day: int) -> int:
    return min(day, calendar.monthrange(year, month)[1])


def _sunday_week_start(d: date) -> date:
    # date.weekday(): Monday=0; convert to Sunday-based offset
    return date.fromordinal(d.toordinal() - (d.weekday() + 1) % 7)


def is_occurrence_day(rule: RecurrenceRule, anchor, day: date) -> bool:
    """Check a single day against the rule without iterating.

    Used to verify materialized dates; must agree with build_rrule().
    """
    anchor_day = to_calendar_day(anchor)
    if day < anchor_day:
        return False
    if rule.end_date is not None and day > rule.end_date:
        return False
    n = rule.interval
    pattern = rule.pattern
    if pattern is RecurrencePattern.DAILY:
        return (day - anchor_day).days % n == 0
    if pattern is RecurrencePattern.WEEKLY:
        if not rule.weekday_filter:
            return (day - anchor_day).days % (7 * n) == 0
        weeks = (_sunday_week_start(day) - _sunday_week_start(anchor_day)).days // 7
        return weeks % n == 0 and (day.weekday() + 1) % 7 in rule.weekday_filter
    if pattern is RecurrencePattern.MONTHLY:
        if _months_between(anchor_day, day) % n != 0:
            return False
        if rule.month_day_filter:
            return day.day in rule.month_day_filter
        return day.day == _clamp_day(day.year, day.month, anchor_day.day)
    if pattern is RecurrencePattern.YEARLY:
        if (day.year - anchor_day.year) % n != 0:
            return False
        if day.month not in (rule.month_filter or [anchor_day.month]):
            return False
        return day.day == _clamp_day(day.year, day.month, anchor_day.day)
    return False


def _aligned(instant: datetime, anchor: datetime) -> datetime:
    """Make `instant` comparable with `anchor` (both naive or both aware)."""
    if anchor.tzinfo is None and instant.tzinfo is not None:
        return instant.replace(tzinfo=None)
    if anchor.tzinfo is not None and instant.tzinfo is None:
        return instant.replace(tzinfo=anchor.tzinfo)
    return instant


def next_occurrence(template, after: datetime) -> Optional[datetime]:
    """First occurrence strictly after `after`, or None once the rule ended."""
    rule = template.recurrence
    if rule is None:
        return None
    anchor = _anchor_of(template)
    after = _aligned(after, anchor)
    first = to_calendar_day(after, anchor.tzinfo)
    for day in iter_occurrence_days(rule, anchor.date(), first):
        candidate = at_time_of(day, anchor)
        if candidate > after:
            return candidate
    return None
