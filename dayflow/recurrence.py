"""Recurrence rules attached to task templates.

A rule is stored on the task row as a small JSON document written by the UI:

    {"pattern": "weekly", "interval": 2, "daysOfWeek": [1, 3],
     "daysOfMonth": [], "monthsOfYear": [], "endDate": "2024-12-31"}

Weekday indices are Sunday=0 .. Saturday=6. Filter lists that do not belong
to the rule's pattern are kept as written but never consulted.
"""
from __future__ import annotations

import json
from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .utils import ordinal

WEEKDAY_NAMES = ['Sun', 'Mon', 'Tue', 'Wed', 'Thu', 'Fri', 'Sat']
MONTH_NAMES = ['Jan', 'Feb', 'Mar', 'Apr', 'May', 'Jun', 'Jul', 'Aug', 'Sep', 'Oct', 'Nov', 'Dec']


class RecurrenceValidationError(ValueError):
    """Raised when a recurrence rule cannot be used for generation."""


class RecurrencePattern(str, Enum):
    DAILY = 'daily'
    WEEKLY = 'weekly'
    MONTHLY = 'monthly'
    YEARLY = 'yearly'


def _normalize_set(values, low: int, high: int, label: str) -> list[int]:
    out = set()
    for v in values or []:
        if isinstance(v, bool) or not isinstance(v, int):
            raise ValueError(f'{label} must contain integers, got {v!r}')
        if v < low or v > high:
            raise ValueError(f'{label} value {v} outside {low}..{high}')
        out.add(v)
    return sorted(out)


class RecurrenceRule(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    pattern: RecurrencePattern
    interval: int = 1
    days_of_week: list[int] = Field(default_factory=list, alias='daysOfWeek')
    days_of_month: list[int] = Field(default_factory=list, alias='daysOfMonth')
    months_of_year: list[int] = Field(default_factory=list, alias='monthsOfYear')
    end_date: Optional[date] = Field(default=None, alias='endDate')

    @field_validator('interval')
    @classmethod
    def _positive_interval(cls, v: int) -> int:
        if v < 1:
            raise ValueError('interval must be >= 1')
        return v

    @field_validator('days_of_week', mode='before')
    @classmethod
    def _weekdays(cls, v):
        return _normalize_set(v, 0, 6, 'daysOfWeek')

    @field_validator('days_of_month', mode='before')
    @classmethod
    def _month_days(cls, v):
        return _normalize_set(v, 1, 31, 'daysOfMonth')

    @field_validator('months_of_year', mode='before')
    @classmethod
    def _months(cls, v):
        return _normalize_set(v, 1, 12, 'monthsOfYear')

    @field_validator('end_date', mode='before')
    @classmethod
    def _end_date(cls, v):
        # the UI stores full ISO timestamps; only the calendar day matters
        if isinstance(v, datetime):
            return v.date()
        if isinstance(v, str) and len(v) > 10:
            return v[:10]
        return v or None

    @property
    def weekday_filter(self) -> list[int]:
        return self.days_of_week if self.pattern is RecurrencePattern.WEEKLY else []

    @property
    def month_day_filter(self) -> list[int]:
        return self.days_of_month if self.pattern is RecurrencePattern.MONTHLY else []

    @property
    def month_filter(self) -> list[int]:
        return self.months_of_year if self.pattern is RecurrencePattern.YEARLY else []

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


def parse_recurrence(value) -> RecurrenceRule | None:
    """Build a RecurrenceRule from a dict, a JSON string or an existing rule.

    Returns None for empty input. Raises RecurrenceValidationError when the
    rule is malformed so generation never starts on bad input.
    """
    if value is None or value == '' or value == {}:
        return None
    if isinstance(value, RecurrenceRule):
        return value
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as exc:
            raise RecurrenceValidationError(f'invalid recurrence JSON: {exc}') from exc
        if value is None:
            return None
    if not isinstance(value, dict):
        raise RecurrenceValidationError(f'recurrence must be an object, got {type(value).__name__}')
    try:
        return RecurrenceRule.model_validate(value)
    except ValidationError as exc:
        raise RecurrenceValidationError(str(exc)) from exc


def describe_recurrence(rule: RecurrenceRule | None) -> str:
    """Human readable summary shown next to recurring tasks."""
    if rule is None:
        return ''
    n = rule.interval
    if rule.pattern is RecurrencePattern.DAILY:
        text = 'Daily' if n == 1 else f'Every {n} days'
    elif rule.pattern is RecurrencePattern.WEEKLY:
        text = 'Weekly' if n == 1 else f'Every {n} weeks'
        if rule.weekday_filter:
            text += ' on ' + ', '.join(WEEKDAY_NAMES[d] for d in rule.weekday_filter)
    elif rule.pattern is RecurrencePattern.MONTHLY:
        text = 'Monthly' if n == 1 else f'Every {n} months'
        if rule.month_day_filter:
            text += ' on the ' + ', '.join(ordinal(d) for d in rule.month_day_filter)
    else:
        text = 'Yearly' if n == 1 else f'Every {n} years'
        if rule.month_filter:
            text += ' in ' + ', '.join(MONTH_NAMES[m - 1] for m in rule.month_filter)
    if rule.end_date:
        text += f' until {rule.end_date.isoformat()}'
    return text
