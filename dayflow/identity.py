"""Stable identities for recurring task instances.

An instance is identified by its template id and the calendar day it falls
on, e.g. ``42-2024-01-15``. Time of day is not part of the identity: every
supported pattern yields at most one occurrence per day per template.
"""
import re
from datetime import date

from .utils import to_calendar_day

_IDENTITY_RE = re.compile(r'^(?P<task_id>0|[1-9]\d*)-(?P<day>\d{4}-\d{2}-\d{2})$')


class InvalidIdentityError(ValueError):
    """Raised when an instance identity string cannot be parsed."""


def instance_day(value) -> date:
    """Calendar day of a date, datetime or ISO string."""
    return to_calendar_day(value)


def instance_identity(task_id: int, day) -> str:
    if isinstance(task_id, bool) or not isinstance(task_id, int) or task_id < 0:
        raise InvalidIdentityError(f'task id must be a non-negative integer, got {task_id!r}')
    return f'{task_id}-{instance_day(day).isoformat()}'


def parse_instance_identity(identity: str) -> tuple[int, date]:
    m = _IDENTITY_RE.match(identity or '')
    if not m:
        raise InvalidIdentityError(f'invalid instance identity: {identity!r}')
    try:
        day = date.fromisoformat(m.group('day'))
    except ValueError as exc:
        raise InvalidIdentityError(f'invalid instance date in identity: {identity!r}') from exc
    return int(m.group('task_id')), day
