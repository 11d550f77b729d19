"""Turn generated dates into Occurrence objects with per-instance completion."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Mapping, Optional

from . import config
from .identity import instance_identity
from .models import CompletionRecord, Occurrence, TaskStatus
from .occurrences import expand_occurrence_days, is_occurrence_day
from .recurrence import RecurrenceRule
from .utils import at_time_of, to_calendar_day

logger = logging.getLogger(__name__)


class OccurrenceInvariantError(AssertionError):
    """A date was materialized that the template's rule never produces."""


@dataclass
class OccurrenceWindow:
    occurrences: list[Occurrence] = field(default_factory=list)
    truncated: bool = False


def _strict(strict: Optional[bool]) -> bool:
    return config.DEV_MODE if strict is None else strict


def materialize(template, day, completion_map: Mapping[str, CompletionRecord],
                rule: Optional[RecurrenceRule] = None) -> Occurrence:
    """Build the concrete occurrence of `template` on `day`.

    Completion comes only from `completion_map`. A template marked done at
    the template level does not make its occurrences done. Pass the already
    parsed `rule` when materializing many days of one template.
    """
    if rule is None:
        rule = template.recurrence
    if rule is None:
        # non-recurring tasks are their own single occurrence
        return Occurrence(**template.model_dump(), template_id=template.id)

    anchor = template.scheduled_date
    day = to_calendar_day(day, getattr(anchor, 'tzinfo', None))
    if anchor is None or not is_occurrence_day(rule, anchor, day):
        raise OccurrenceInvariantError(
            f'task id={template.id} has no occurrence on {day.isoformat()}')

    identity = instance_identity(template.id, day)
    data = template.model_dump()
    data.update(
        scheduled_date=at_time_of(day, anchor),
        template_id=template.id,
        identity=identity,
        instance_date=day,
        is_recurring_instance=True,
    )
    record = completion_map.get(identity)
    if record is not None and record.completed:
        data.update(
            status=TaskStatus.DONE.value,
            progress_percentage=100,
            completed_at=record.completed_at,
        )
    else:
        data.update(completed_at=None, progress_percentage=0, time_spent=0)
        if data.get('status') == TaskStatus.DONE.value:
            data['status'] = config.DEFAULT_OPEN_STATUS
    return Occurrence(**data)


def materialize_days(template, days: list[date], completion_map: Mapping[str, CompletionRecord],
                     *, strict: Optional[bool] = None,
                     rule: Optional[RecurrenceRule] = None) -> list[Occurrence]:
    """Materialize each day; invariant violations raise in strict mode, else skip."""
    if rule is None:
        rule = template.recurrence
    out = []
    for day in days:
        try:
            out.append(materialize(template, day, completion_map, rule))
        except OccurrenceInvariantError:
            if _strict(strict):
                raise
            logger.warning('skipping invalid occurrence task id=%s day=%s', template.id, day)
    return out


def materialize_window(template, window_start, window_end,
                       completion_map: Mapping[str, CompletionRecord],
                       *, max_total: Optional[int] = None,
                       strict: Optional[bool] = None) -> OccurrenceWindow:
    """Occurrences of one template inside an inclusive window of calendar days."""
    rule = template.recurrence
    if rule is None:
        return OccurrenceWindow([materialize(template, None, completion_map)])
    days, truncated = expand_occurrence_days(template, window_start, window_end, max_total, rule=rule)
    return OccurrenceWindow(materialize_days(template, days, completion_map, strict=strict, rule=rule), truncated)
